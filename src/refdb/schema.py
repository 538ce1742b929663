'''
Schema declarations and their templates. A schema is a pure declaration of
fields, it owns no row data; rows are handled through Ref. The first time a
schema's template is requested its fields are introspected ("hydrated") and
cached for the lifetime of the process.
'''

from abc import abstractmethod
from dataclasses import dataclass, field
from functools import cached_property
from threading import RLock
from types import FunctionType
from typing import TYPE_CHECKING, Any, ClassVar, Iterable, Iterator, Mapping, Optional, Sequence, TypeAliasType

from .base import ForeignKeyAction, MissingPrimaryKey
from .columns import Column, Field, ForeignKey, PrimaryKey, Relation
from .util import Defer, logger, resolve_ref, typename

if TYPE_CHECKING:
    from .db import Database
    from .ddl import CreateTable
    from .ref import Ref

__all__ = [
    'TableStep',
    'PrimaryKeyGroup',
    'UniqueGroup',
    'ForeignKeyGroup',
    'TableConstraints',
    'Template',
    'TemplateCache',
    'templates',
    'properties',
    'hydrate',
    'Schema'
]

type ColumnRef = Column|str
'''A column descriptor or the name of a column.'''

def column_names(columns: Iterable[ColumnRef]) -> list[str]:
    return [c.name if isinstance(c, Column) else c for c in columns]

class TableStep:
    '''One step of a table constraints block.'''

    columns: tuple[ColumnRef, ...]

    def __init__(self, *columns: ColumnRef):
        if not columns:
            raise TypeError(f"{typename(self)} needs at least one column")
        self.columns = columns

    @property
    def names(self) -> list[str]:
        return column_names(self.columns)

    @abstractmethod
    def apply(self, table: 'CreateTable', owner: type['Schema']):
        '''Add the constraint to a table being created.'''

    def __repr__(self):
        return f"{typename(self)}({', '.join(self.names)})"

class PrimaryKeyGroup(TableStep):
    '''Composite primary key.'''

    def apply(self, table, owner):
        table.primary_key(*self.names)

class UniqueGroup(TableStep):
    '''Composite unique constraint.'''

    def apply(self, table, owner):
        table.unique(*self.names)

class ForeignKeyGroup(TableStep):
    '''
    Composite foreign key. The referenced columns default to the referenced
    schema's key columns (its primary key or primary key group).
    '''

    references: Defer[type['Schema']]|str
    referencing: tuple[ColumnRef, ...]
    on_delete: Optional[ForeignKeyAction]
    on_update: Optional[ForeignKeyAction]

    def __init__(self,
        *columns: ColumnRef,
        references: Defer[type['Schema']]|str,
        referencing: Sequence[ColumnRef]=(),
        on_delete: Optional[ForeignKeyAction]=None,
        on_update: Optional[ForeignKeyAction]=None
    ):
        super().__init__(*columns)
        self.references = references
        self.referencing = tuple(referencing)
        self.on_delete = on_delete
        self.on_update = on_update

    def apply(self, table, owner):
        ref = resolve_ref(self.references, owner)
        # Referenced descriptors only have names once hydrated
        template = ref.template()
        refs = column_names(self.referencing) or template.key_columns()
        if len(refs) != len(self.columns):
            raise TypeError(
                f"{typename(owner)} foreign key group has {len(self.columns)} columns but references {len(refs)}"
            )
        table.foreign_key(
            self.names, ref.__tablename__, refs,
            on_delete=self.on_delete, on_update=self.on_update
        )

class TableConstraints(Field):
    '''
    Ordered multi-column constraints, applied after the column clauses
    since SQL requires them to come last. Declare as __table_args__ or as
    any attribute of the schema.
    '''

    steps: tuple[TableStep, ...]

    def __init__(self, *steps: TableStep):
        self.steps = steps

    def __iter__(self) -> Iterator[TableStep]:
        return iter(self.steps)

    def __repr__(self):
        return f"TableConstraints({', '.join(map(repr, self.steps))})"

@dataclass
class Template:
    '''Hydrated metadata of a schema.'''

    schema: type['Schema']
    fields: dict[str, Field] = field(default_factory=dict)
    '''Recognized fields by attribute label.'''
    columns: list[Column] = field(default_factory=list)
    relations: list[Relation] = field(default_factory=list)
    constraints: list[TableConstraints] = field(default_factory=list)
    primary_key: Optional[PrimaryKey] = None
    by_name: dict[str, Column] = field(default_factory=dict)
    '''Columns by column name.'''

    @property
    def foreign_keys(self) -> list[ForeignKey]:
        return [c for c in self.columns if isinstance(c, ForeignKey)]

    @property
    def steps(self) -> list[TableStep]:
        return [step for tc in self.constraints for step in tc]

    def key_columns(self) -> list[str]:
        '''Names of the columns identifying a row.'''

        if self.primary_key is not None:
            return [self.primary_key.name]
        for step in self.steps:
            if isinstance(step, PrimaryKeyGroup):
                return step.names
        raise MissingPrimaryKey(f"{typename(self.schema)} has no primary key")

def properties(schema: type['Schema']) -> Iterator[tuple[str, Any]]:
    '''
    Candidate fields of a schema, base classes first. Private names, methods,
    properties and nested types are never fields.
    '''

    seen: dict[str, Any] = {}
    for cls in reversed(schema.__mro__):
        if cls is object or cls is Schema:
            continue
        for label, value in vars(cls).items():
            if label.startswith("_"):
                continue
            if isinstance(value, (
                FunctionType, classmethod, staticmethod, property,
                cached_property, type, TypeAliasType
            )):
                continue
            # Subclasses can override (or retype) inherited fields
            seen.pop(label, None)
            seen[label] = value

    yield from seen.items()

def hydrate(schema: type['Schema']) -> Template:
    '''
    Classify a schema's fields and fill empty column names from their
    labels. Unrecognized fields are warned about and excluded. Hydrating
    twice is harmless since names are only filled when empty.
    '''

    template = Template(schema)

    args = getattr(schema, "__table_args__", None)
    if isinstance(args, TableConstraints):
        template.constraints.append(args)
    elif args:
        template.constraints.append(TableConstraints(*args))

    for label, value in properties(schema):
        match value:
            case Column():
                if not value.name:
                    value.name = label
                if value.name in template.by_name:
                    raise TypeError(f"{typename(schema)} has two columns named {value.name!r}")

                if isinstance(value, PrimaryKey):
                    if template.primary_key is not None:
                        raise TypeError(
                            f"{typename(schema)} has more than one PrimaryKey ({template.primary_key.label}, {label}), use a PrimaryKeyGroup"
                        )
                    template.primary_key = value

                template.columns.append(value)
                template.by_name[value.name] = value

            case Relation():
                template.relations.append(value)

            case TableConstraints():
                template.constraints.append(value)

            case _:
                logger.warning(
                    "incompatible schema property: %s.%s: %s",
                    typename(schema), label, typename(value)
                )
                continue

        template.fields[label] = value

    return template

class TemplateCache:
    '''
    Process-wide cache of hydrated templates. Population is first-write-wins
    and entries are never evicted.
    '''

    def __init__(self):
        self._templates: dict[type[Schema], Template] = {}
        self._lock = RLock()

    def __contains__(self, schema: type['Schema']):
        return schema in self._templates

    def get(self, schema: type['Schema']) -> Template:
        if (template := self._templates.get(schema)) is not None:
            return template

        with self._lock:
            if (template := self._templates.get(schema)) is None:
                logger.debug("Hydrating %s", typename(schema))
                template = hydrate(schema)
                self._templates[schema] = template
            return template

    def clear(self):
        '''Forget all templates.'''
        with self._lock:
            self._templates.clear()

templates = TemplateCache()
'''Default template cache.'''

class Schema:
    '''
    Base class of table declarations. The table name defaults to the
    lowercased class name, override with __tablename__.
    '''

    __tablename__: ClassVar[str]
    __table_args__: ClassVar[Optional[TableConstraints|Sequence[TableStep]]] = None

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if "__tablename__" not in vars(cls):
            cls.__tablename__ = cls.__name__.lower()

        for label, value in vars(cls).items():
            if isinstance(value, Field) and hasattr(Schema, label):
                raise TypeError(f"{typename(cls)}.{label} shadows Schema.{label}")

    def __init__(self):
        raise TypeError(f"{typename(self)} is a declaration, use {typename(self)}.new(db) for rows")

    @classmethod
    def template(cls) -> Template:
        '''Hydrated metadata of the schema.'''
        return templates.get(cls)

    @classmethod
    def columns(cls) -> list[Column]:
        return cls.template().columns

    @classmethod
    def relations(cls) -> list[Relation]:
        return cls.template().relations

    @classmethod
    def primary_key(cls) -> Optional[PrimaryKey]:
        return cls.template().primary_key

    @classmethod
    def require_primary_key(cls) -> PrimaryKey:
        if (pk := cls.template().primary_key) is None:
            raise MissingPrimaryKey(f"{typename(cls)} has no PrimaryKey")
        return pk

    @classmethod
    def table_constraints(cls) -> list[TableStep]:
        return cls.template().steps

    @classmethod
    def field(cls, label: str) -> Field:
        '''Get a recognized field by its attribute label.'''
        try:
            return cls.template().fields[label]
        except KeyError:
            raise AttributeError(f"{typename(cls)} has no field {label!r}") from None

    @classmethod
    def column(cls, col: ColumnRef) -> Column:
        '''Resolve a column descriptor, attribute label or column name.'''

        # Descriptors only have names once hydrated
        template = cls.template()
        if isinstance(col, Column):
            return col
        if (c := template.by_name.get(col)) is not None:
            return c
        if isinstance(c := template.fields.get(col), Column):
            return c
        raise AttributeError(f"{typename(cls)} has no column {col!r}")

    # Rows

    @classmethod
    def new(cls, db: 'Database') -> 'Ref[Any]':
        '''Create an unsaved row.'''
        from .ref import Ref
        return Ref(cls, db)

    @classmethod
    def wrap(cls, db: 'Database', rows: Iterable[Mapping[str, Any]]) -> 'list[Ref[Any]]':
        '''Wrap query results as existing rows.'''
        from .ref import Ref
        return [Ref(cls, db, row, exists=True) for row in rows]

    @classmethod
    async def create(cls, db: 'Database', **values) -> 'Ref[Any]':
        '''Create and save a row with the given fields by label.'''
        ref = cls.new(db)
        ref.set(**values)
        await ref.save()
        return ref

    @classmethod
    async def make(cls,
        db: 'Database',
        columns: Sequence[ColumnRef],
        rows: Iterable[Sequence[Any]]
    ) -> 'list[Ref[Any]]':
        '''
        Create and save one row per sequence of values. Rows are saved one at
        a time, so a failure leaves the preceding rows committed.
        '''

        cols = [cls.column(c) for c in columns]
        refs = []
        for row in rows:
            if len(row) != len(cols):
                raise ValueError(f"Expected {len(cols)} values, got {len(row)}")
            ref = cls.new(db)
            for col, value in zip(cols, row):
                ref[col] = value
            await ref.save()
            refs.append(ref)
        return refs

    @classmethod
    async def load(cls, db: 'Database', id: Any) -> 'Optional[Ref[Any]]':
        '''Load a row by primary key.'''

        pk = cls.require_primary_key()
        rows = await db.select(cls.__tablename__, {pk.name: pk.encode(id)}, limit=1)
        if rows:
            return cls.wrap(db, rows)[0]
        return None

    @classmethod
    async def load_many(cls, db: 'Database', ids: Iterable[Any]) -> 'list[Ref[Any]]':
        '''Load rows by primary keys, missing ids are skipped.'''

        pk = cls.require_primary_key()
        rows = await db.select(
            cls.__tablename__, within={pk.name: [pk.encode(id) for id in ids]}
        )
        return cls.wrap(db, rows)

    @classmethod
    async def load_all(cls,
        db: 'Database',
        where: Optional[Mapping[ColumnRef, Any]]=None
    ) -> 'list[Ref[Any]]':
        '''Load all rows, optionally where columns equal values.'''

        rows = await db.select(cls.__tablename__, cls._encode_where(where))
        return cls.wrap(db, rows)

    @classmethod
    async def load_first(cls, db: 'Database', column: ColumnRef, value: Any) -> 'Optional[Ref[Any]]':
        '''Load the first row where column equals value.'''

        rows = await db.select(
            cls.__tablename__, cls._encode_where({column: value}), limit=1
        )
        if rows:
            return cls.wrap(db, rows)[0]
        return None

    @classmethod
    async def load_in(cls, db: 'Database', column: ColumnRef, values: Iterable[Any]) -> 'list[Ref[Any]]':
        '''Load rows where column is one of values.'''

        col = cls.column(column)
        rows = await db.select(
            cls.__tablename__, within={col.name: [col.encode(v) for v in values]}
        )
        return cls.wrap(db, rows)

    @classmethod
    async def load_containing(cls, db: 'Database', column: ColumnRef, text: str) -> 'list[Ref[Any]]':
        '''Load rows where a text column contains text.'''

        col = cls.column(column)
        rows = await db.select(cls.__tablename__, like={col.name: text})
        return cls.wrap(db, rows)

    @classmethod
    async def prepare(cls, db: 'Database', if_not_exists: bool=False):
        '''Create the schema's table.'''
        from .ddl import prepare
        await prepare(db, cls, if_not_exists=if_not_exists)

    @classmethod
    def _encode_where(cls, where: Optional[Mapping[ColumnRef, Any]]) -> Optional[dict[str, Any]]:
        if not where:
            return None
        return {
            (col := cls.column(k)).name: col.encode(v)
            for k, v in where.items()
        }
