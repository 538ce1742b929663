'''
Column descriptors. Schemas declare these as class attributes, eg

    class Hero(Schema):
        id = PrimaryKey(str)
        name = Column(str)
        nickname = Column(Optional[str])
        equipped = ForeignKey(lambda: Item)

Names are left empty and filled from the attribute label when the schema's
template is hydrated, unless given explicitly. Descriptors are shared by
every Ref of the schema, so they never hold row data themselves.
'''

from abc import abstractmethod
from datetime import date, datetime, time
from decimal import Decimal
from functools import cached_property
from types import NoneType, UnionType
from typing import TYPE_CHECKING, Annotated, Any, Literal, NewType, Optional, Self, TypeAliasType, Union, get_args, get_origin, override
import uuid

from pydantic import BaseModel, TypeAdapter

from .base import ForeignKeyAction, PrimaryKeyKind, StorageType, Value
from .util import NOT_GIVEN, Defer, deferred_property, logger, resolve_ref, typename

if TYPE_CHECKING:
    from .schema import Schema

__all__ = [
    'ColumnConstraint',
    'NotNullConstraint',
    'UniqueConstraint',
    'PrimaryKeyConstraint',
    'ForeignKeyConstraint',
    'DefaultConstraint',
    'CheckConstraint',
    'CollateConstraint',
    'CustomConstraint',
    'Field',
    'Column',
    'Unique',
    'PrimaryKey',
    'ForeignKey',
    'Relation',
    'classify'
]

def quote(name: str) -> str:
    '''Quote an SQL identifier.'''
    return '"' + name.replace('"', '""') + '"'

def literal(value: Value) -> str:
    '''Render a value as an SQL literal.'''

    match value:
        case None: return "NULL"
        case bool(v): return str(int(v))
        case int(v)|float(v): return repr(v)
        case str(v): return "'" + v.replace("'", "''") + "'"
        case bytes(v): return f"X'{v.hex()}'"

        case v:
            raise TypeError(f"Unsupported literal type {typename(v)}")

class ColumnConstraint:
    '''Base class for constraints which appear inline in a column clause.'''

    @abstractmethod
    def schema(self) -> str: '''Get the SQL representation of the constraint.'''
    def __str__(self): return self.schema()
    def __repr__(self): return f"{typename(self)}()"

class NotNullConstraint(ColumnConstraint):
    def schema(self): return "NOT NULL"

class UniqueConstraint(ColumnConstraint):
    def schema(self): return "UNIQUE"

class PrimaryKeyConstraint(ColumnConstraint):
    autoincrement: bool

    def __init__(self, autoincrement: bool=False):
        self.autoincrement = autoincrement

    def schema(self):
        if self.autoincrement:
            return "PRIMARY KEY AUTOINCREMENT"
        return "PRIMARY KEY"

    def __repr__(self): return f"PrimaryKeyConstraint(autoincrement={self.autoincrement})"

class ForeignKeyConstraint(ColumnConstraint):
    '''
    Foreign key reference. SQL requires these after the column list when a
    table has more than one, so they render as table constraints instead.
    '''

    column: str
    table: str
    references: str
    on_delete: Optional[ForeignKeyAction]
    on_update: Optional[ForeignKeyAction]

    def __init__(self,
        column: str,
        table: str,
        references: str,
        on_delete: Optional[ForeignKeyAction]=None,
        on_update: Optional[ForeignKeyAction]=None
    ):
        self.column = column
        self.table = table
        self.references = references
        self.on_delete = on_delete
        self.on_update = on_update

    def schema(self):
        return (
            f"FOREIGN KEY({quote(self.column)}) REFERENCES {quote(self.table)}({quote(self.references)})" +
                (self.on_delete and f" ON DELETE {self.on_delete}" or "") +
                (self.on_update and f" ON UPDATE {self.on_update}" or "")
        )

    def __repr__(self):
        return f"ForeignKeyConstraint({self.column}, references={self.table}.{self.references})"

class DefaultConstraint(ColumnConstraint):
    value: Value

    def __init__(self, value: Value):
        self.value = value

    def schema(self): return f"DEFAULT {literal(self.value)}"
    def __repr__(self): return f"DefaultConstraint({self.value!r})"

class CheckConstraint(ColumnConstraint):
    expr: str

    def __init__(self, expr: str):
        self.expr = expr

    def schema(self): return f"CHECK({self.expr})"
    def __repr__(self): return f"CheckConstraint({self.expr!r})"

class CollateConstraint(ColumnConstraint):
    collation: str

    def __init__(self, collation: str):
        self.collation = collation

    def schema(self): return f"COLLATE {self.collation}"
    def __repr__(self): return f"CollateConstraint({self.collation!r})"

class CustomConstraint(ColumnConstraint):
    '''Raw SQL appended to the column clause, use with care.'''

    sql: str

    def __init__(self, sql: str):
        self.sql = sql

    def schema(self): return self.sql
    def __repr__(self): return f"CustomConstraint({self.sql!r})"

SQL_TYPES: dict[Any, StorageType] = {
    bool: "INTEGER",
    int: "INTEGER",
    float: "REAL",
    Decimal: "REAL",
    str: "TEXT",
    uuid.UUID: "TEXT",
    datetime: "TEXT",
    date: "TEXT",
    time: "TEXT",
    bytes: "BLOB"
}

JSON_ORIGINS = {list, dict, tuple, set, frozenset}

def classify(note: Any) -> tuple[StorageType, bool, bool]:
    '''
    Classify a column annotation as (storage type, nullable, json). JSON
    columns are stored as TEXT and (de)serialized as a whole.
    '''

    nullable = False
    while True:
        origin, args = get_origin(note), get_args(note)
        if isinstance(note, TypeAliasType):
            note = note.__value__
        elif isinstance(note, NewType):
            note = note.__supertype__
        elif origin is Annotated:
            note = args[0]
        elif origin is Literal:
            lt: type = type(args[0])
            if not all(isinstance(a, lt) for a in args):
                raise TypeError(f"Mixed type literals are not supported: Expected {typename(lt)} but got {args}")
            note = lt
        elif origin in {Union, UnionType}:
            rest = tuple(a for a in args if a is not NoneType)
            if len(rest) < len(args):
                nullable = True
            if len(rest) == 1:
                note = rest[0]
                continue

            # Unions are only supported when every member shares storage
            kinds = {classify(a)[::2] for a in rest}
            if len(kinds) != 1:
                raise TypeError(f"Unsupported Union type: {note}")
            storage, json = kinds.pop()
            return storage, nullable, json
        else:
            break

    if note is Any or origin in JSON_ORIGINS or note in JSON_ORIGINS:
        return "TEXT", nullable, True

    if isinstance(note, type):
        if issubclass(note, BaseModel):
            return "TEXT", nullable, True

        # Walk the MRO so IntEnum, StrEnum, etc map to their base
        for base in note.__mro__:
            if st := SQL_TYPES.get(base):
                return st, nullable, False

    raise TypeError(f"Unsupported column type {note!r}")

class Field:
    '''Anything a schema can declare as an attribute.'''

    owner: type['Schema']
    '''Schema the field was declared on.'''
    label: str
    '''Attribute name the field was declared under.'''

    def __set_name__(self, owner: type['Schema'], name: str):
        self.owner = owner
        self.label = name

    def qualname(self) -> str:
        owner = getattr(self, "owner", None)
        label = getattr(self, "label", "?")
        return f"{owner.__name__}.{label}" if owner else label

class Column[T](Field):
    '''A persisted field of a schema.'''

    name: str
    '''Column name, empty until hydrated unless given explicitly.'''
    annotation = deferred_property[Any]()
    '''Python type of the column's values.'''
    constraints: list[ColumnConstraint]
    '''Explicit constraints, not including those implied by the annotation.'''
    default: Any

    def __init__(self,
        annotation: Any=str,
        name: str="",
        *constraints: ColumnConstraint,
        default: Any=NOT_GIVEN
    ):
        super().__init__()
        self.annotation = annotation
        self.name = name
        self.constraints = []
        self.default = default
        self.constraining(*constraints)

    @cached_property
    def _classified(self):
        return classify(self.annotation)

    @property
    def storage_type(self) -> StorageType:
        return self._classified[0]

    @property
    def nullable(self) -> bool:
        return self._classified[1]

    @property
    def is_json(self) -> bool:
        return self._classified[2]

    @cached_property
    def adapter(self) -> TypeAdapter[T]:
        return TypeAdapter(self.annotation)

    def has_default(self):
        '''Check if the column has a default value.'''
        return self.default is not NOT_GIVEN

    def constraining(self, *constraints: ColumnConstraint) -> Self:
        '''
        Add generic constraints. Unique, primary key and foreign key
        constraints are rejected, use the dedicated descriptors instead.
        '''

        dedicated = {
            UniqueConstraint: "Unique",
            PrimaryKeyConstraint: "PrimaryKey",
            ForeignKeyConstraint: "ForeignKey"
        }
        for c in constraints:
            if use := dedicated.get(type(c)):
                logger.warning("%s cannot be added to %s, use %s", typename(c), self.qualname(), use)
                raise TypeError(f"Use {use} instead of constraining with {typename(c)}")

        self.constraints.extend(constraints)
        return self

    def encode(self, value: T) -> Value:
        '''Encode a Python value to its stored representation.'''

        if value is None:
            return None
        value = self.adapter.validate_python(value)
        if self.is_json:
            return self.adapter.dump_json(value).decode()
        if self.storage_type == "BLOB":
            return self.adapter.dump_python(value)
        return self.adapter.dump_python(value, mode='json')

    def decode(self, value: Value) -> T:
        '''Decode a stored value. Raises pydantic's ValidationError.'''

        if self.is_json and isinstance(value, (str, bytes)):
            return self.adapter.validate_json(value)
        return self.adapter.validate_python(value)

    def default_value(self) -> Value:
        '''Stored representation of the default, or None.'''
        if self.has_default():
            return self.encode(self.default)
        return None

    def clauses(self) -> list[ColumnConstraint]:
        '''All inline constraints of the column clause, in order.'''

        clauses: list[ColumnConstraint] = []
        if not self.nullable:
            clauses.append(NotNullConstraint())
        clauses.extend(self.constraints)
        if self.has_default():
            clauses.append(DefaultConstraint(self.default_value()))
        return clauses

    def schema(self) -> str:
        '''Get the SQL column clause.'''
        return " ".join([
            quote(self.name), self.storage_type,
            *(c.schema() for c in self.clauses())
        ])

    def __str__(self): return self.schema()

    def __repr__(self):
        name = self.name and f", {self.name!r}"
        return f"{typename(self)}({self.annotation!r}{name})"

class Unique[T](Column[T]):
    '''Column with a UNIQUE constraint.'''

    def __init__(self,
        annotation: Any=str,
        name: str="",
        *constraints: ColumnConstraint,
        default: Any=NOT_GIVEN
    ):
        super().__init__(annotation, name, *constraints, default=default)
        self.constraints.insert(0, UniqueConstraint())

class PrimaryKey[T](Column[T]):
    '''
    Identity of a schema's rows. int keys autoincrement and are assigned by
    the database, str/UUID keys are generated client-side on first save.
    '''

    kind: PrimaryKeyKind

    def __init__(self, annotation: Any=str, name: str="", *constraints: ColumnConstraint):
        super().__init__(annotation, name, *constraints)

        storage, _, _ = self._classified
        match storage:
            case "INTEGER": self.kind = 'int'
            case "TEXT": self.kind = 'uuid'
            case _:
                raise TypeError(f"Primary key must be int, str or UUID, not {self.annotation!r}")

    @override
    def clauses(self):
        if self.kind == 'int':
            return [PrimaryKeyConstraint(autoincrement=True), *self.constraints]
        # Only INTEGER PRIMARY KEY implies NOT NULL in sqlite
        return [PrimaryKeyConstraint(), NotNullConstraint(), *self.constraints]

    def generate(self) -> Value:
        '''Generate a fresh client-side key.'''

        if self.kind != 'uuid':
            raise TypeError(f"{self.qualname()} is assigned by the database")
        return str(uuid.uuid4())

    @override
    def decode(self, value: Value) -> Optional[T]:
        if value is None:
            return None
        return super().decode(value)

class ForeignKey[S: 'Schema'](Column):
    '''
    Column holding the primary key of a row in another schema. The target is
    resolved lazily so schemas can refer to each other, either by the class,
    a thunk returning it, its primary key descriptor, or its name in the
    declaring module.
    '''

    target: Defer[type[S]]|str|PrimaryKey
    references = deferred_property[type['Schema']]()
    '''Schema the foreign key points to.'''
    optional: bool
    on_delete: Optional[ForeignKeyAction]
    on_update: Optional[ForeignKeyAction]

    def __init__(self,
        target: Defer[type[S]]|str|PrimaryKey,
        name: str="",
        *constraints: ColumnConstraint,
        on_delete: Optional[ForeignKeyAction]=None,
        on_update: Optional[ForeignKeyAction]=None,
        optional: bool=True
    ):
        super().__init__(NOT_GIVEN, name, *constraints)
        self.target = target
        self.optional = optional
        self.on_delete = on_delete
        self.on_update = on_update

        ForeignKey.references.defer(self, self._resolve)
        ForeignKey.annotation.defer(self, self._annotation)

    def _resolve(self) -> type['Schema']:
        target = self.target
        if callable(target) and not isinstance(target, (type, PrimaryKey)):
            target = target()
        if isinstance(target, PrimaryKey):
            return target.owner
        return resolve_ref(target, getattr(self, "owner", None))

    def _annotation(self):
        note = self.pointing_to.annotation
        return Optional[note] if self.optional else note

    @property
    def pointing_to(self) -> PrimaryKey:
        '''Primary key of the referenced schema.'''
        return self.references.require_primary_key()

    @cached_property
    def _classified(self):
        _, _, json = classify(self.annotation)
        return self.pointing_to.storage_type, self.optional, json

    def table_constraint(self) -> ForeignKeyConstraint:
        '''The FOREIGN KEY clause for this column.'''
        return ForeignKeyConstraint(
            self.name,
            self.references.__tablename__,
            self.pointing_to.name,
            self.on_delete,
            self.on_update
        )

    @override
    def __repr__(self):
        if ForeignKey.references.is_resolved(self):
            target = self.references.__name__
        else:
            target = self.target if isinstance(self.target, str) else "..."
        return f"ForeignKey({target}{self.name and f', {self.name!r}'})"

class Relation(Field):
    '''Non-persisted field derived from foreign keys.'''
