'''
Table preparation, generating CREATE TABLE statements from templates.
'''

from typing import TYPE_CHECKING, Optional, Self, Sequence

from .base import ForeignKeyAction, StorageType
from .columns import ColumnConstraint, quote
from .schema import Schema
from .util import indent, logger

if TYPE_CHECKING:
    from .db import Database

__all__ = [
    'CreateTable',
    'create_statement',
    'prepare'
]

def _names(columns: str|Sequence[str]):
    if isinstance(columns, str):
        columns = [columns]
    return ', '.join(map(quote, columns))

class CreateTable:
    '''Fluent builder for a CREATE TABLE statement.'''

    name: str
    db: Optional['Database']
    if_not_exists: bool
    columns: list[str]
    '''Rendered column clauses.'''
    constraints: list[str]
    '''Rendered table constraints, which always follow the columns.'''

    def __init__(self, name: str, db: Optional['Database']=None, *, if_not_exists: bool=False):
        self.name = name
        self.db = db
        self.if_not_exists = if_not_exists
        self.columns = []
        self.constraints = []

    def column(self, name: str, type: StorageType, *constraints: ColumnConstraint|str) -> Self:
        self.columns.append(" ".join([quote(name), type, *map(str, constraints)]))
        return self

    def primary_key(self, *columns: str) -> Self:
        return self.constraint(f"PRIMARY KEY({_names(columns)})")

    def unique(self, *columns: str) -> Self:
        return self.constraint(f"UNIQUE({_names(columns)})")

    def foreign_key(self,
        columns: str|Sequence[str],
        table: str,
        references: str|Sequence[str],
        *,
        on_delete: Optional[ForeignKeyAction]=None,
        on_update: Optional[ForeignKeyAction]=None
    ) -> Self:
        return self.constraint(
            f"FOREIGN KEY({_names(columns)}) REFERENCES {quote(table)}({_names(references)})" +
                (on_delete and f" ON DELETE {on_delete}" or "") +
                (on_update and f" ON UPDATE {on_update}" or "")
        )

    def constraint(self, sql: ColumnConstraint|str) -> Self:
        '''Append a raw table constraint.'''
        self.constraints.append(str(sql))
        return self

    def schema(self) -> str:
        if not self.columns:
            raise ValueError(f"Table {self.name} has no columns")

        ine = " IF NOT EXISTS" if self.if_not_exists else ""
        body = ",\n".join([*self.columns, *self.constraints])
        return f"CREATE TABLE{ine} {quote(self.name)} (\n{indent(body)}\n)"

    def __str__(self): return self.schema()

    async def run(self):
        if self.db is None:
            raise RuntimeError(f"CREATE TABLE {self.name} isn't bound to a database")
        await self.db.execute(self.schema())

def create_statement(schema: type[Schema], db: Optional['Database']=None, *, if_not_exists: bool=False) -> CreateTable:
    '''
    Build the CREATE TABLE for a schema: its columns in declaration order,
    then one FOREIGN KEY per foreign key column, then the table constraint
    steps in the order declared.
    '''

    template = schema.template()
    table = CreateTable(schema.__tablename__, db, if_not_exists=if_not_exists)

    for col in template.columns:
        table.column(col.name, col.storage_type, *col.clauses())

    for fk in template.foreign_keys:
        table.constraint(fk.table_constraint())

    for step in template.steps:
        step.apply(table, schema)

    return table

async def prepare(db: 'Database', *schemas: type[Schema], if_not_exists: bool=False):
    '''
    Create tables in the given order. SQLite accepts foreign keys to tables
    which don't exist yet, so mutually referencing schemas need no ordering.
    '''

    for schema in schemas:
        logger.info("preparing: %s", schema.__tablename__)
        await create_statement(schema, db, if_not_exists=if_not_exists).run()
