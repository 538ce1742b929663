'''
Ref is a live handle to one row of a schema. Its backing is a sparse map of
column name to stored value, where an absent key means "never loaded or
set", not NULL. Fields are read and written by subscripting with the
schema's descriptors:

    hero = Hero.new(db)
    hero[Hero.name] = "Link"
    await hero.save()
    sword = await hero[Hero.equipped]

Relations resolve to awaitables since they need a query.
'''

from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Awaitable, Iterable, Mapping, Optional, overload

from pydantic import ValidationError

from .base import DecodeError, LinkError, MissingPrimaryKey, Value
from .columns import Column, Field, ForeignKey, PrimaryKey, Relation
from .relations import Pivot, ToMany, ToOne
from .schema import Schema
from .util import logger, typename

if TYPE_CHECKING:
    from .db import Database

__all__ = [
    'Ref',
    'save_all',
    'delete_all'
]

class Ref[S: Schema]:
    schema: type[S]
    db: 'Database'
    is_dirty: bool
    '''Whether the backing changed since it was loaded or saved.'''
    exists: bool
    '''Whether the row has been persisted.'''

    def __init__(self,
        schema: type[S],
        db: 'Database',
        backing: Optional[Mapping[str, Value]]=None,
        *,
        exists: bool=False
    ):
        self.schema = schema
        self.db = db
        self._backing = dict(backing or {})
        self.is_dirty = False
        self.exists = exists

    @property
    def backing(self) -> Mapping[str, Value]:
        '''Read-only view of the stored values.'''
        return MappingProxyType(self._backing)

    @property
    def id(self) -> Value:
        '''Stored primary key value, None if unsaved or keyless.'''
        if (pk := self.schema.primary_key()) is None:
            return None
        return self._backing.get(pk.name)

    def _field(self, field: Field|str) -> Field:
        if isinstance(field, str):
            return self.schema.field(field)

        label = getattr(field, "label", None)
        if label is None or self.schema.template().fields.get(label) is not field:
            raise TypeError(f"{field!r} is not a field of {typename(self.schema)}")
        return field

    def _require_id(self) -> Value:
        if (id := self.id) is None:
            raise LinkError(
                f"{typename(self.schema)} is not ready to be linked - missing primary key"
            )
        return id

    @overload
    def __getitem__[T](self, field: PrimaryKey[T]) -> Optional[T]: ...
    @overload
    def __getitem__[T: Schema](self, field: ForeignKey[T]) -> Awaitable[Optional['Ref[T]']]: ...
    @overload
    def __getitem__[T](self, field: Column[T]) -> T: ...
    @overload
    def __getitem__[T: Schema](self, field: ToMany[T]) -> Awaitable[list['Ref[T]']]: ...
    @overload
    def __getitem__[T: Schema](self, field: ToOne[T]) -> Awaitable[Optional['Ref[T]']]: ...
    @overload
    def __getitem__[L: Schema, R: Schema](self, field: Pivot[L, R]) -> Awaitable[list['Ref[R]']]: ...
    @overload
    def __getitem__(self, field: str) -> Any: ...

    def __getitem__(self, field):
        match self._field(field):
            case ForeignKey() as fk:
                return self._get_foreign(fk)
            case Column() as col:
                return self._get_column(col)
            case ToMany() as rel:
                return self._get_many(rel)
            case ToOne() as rel:
                return self._get_one(rel)
            case Pivot() as rel:
                return self._get_pivot(rel)
            case other:
                raise TypeError(f"Cannot get {other!r}")

    def __setitem__(self, field: Field|str, value: Any):
        match self._field(field):
            case ForeignKey() as fk:
                self._set_foreign(fk, value)
            case Column() as col:
                self._backing[col.name] = col.encode(value)
            case Pivot() as rel:
                raise TypeError(f"{rel.qualname()} is read-only, use add, remove or assign")
            case Relation() as rel:
                raise TypeError(f"{rel.qualname()} is read-only, set the ForeignKey it's linked by")
            case other:
                raise TypeError(f"Cannot set {other!r}")

        self.is_dirty = True

    def get(self, label: str) -> Any:
        '''Get a field by its attribute label.'''
        return self[label]

    def set(self, **values: Any):
        '''Set fields by attribute label.'''
        for label, value in values.items():
            self[label] = value

    # Columns

    def _get_column(self, col: Column):
        if col.name in self._backing:
            raw = self._backing[col.name]
        else:
            raw = col.default_value()

        try:
            return col.decode(raw)
        except ValidationError as e:
            raise DecodeError(
                f"{typename(self.schema)}.{col.label} can't decode {raw!r} as {col.annotation!r}"
            ) from e

    # Foreign keys

    async def _get_foreign(self, fk: ForeignKey) -> Optional['Ref']:
        if (id := self._backing.get(fk.name)) is None:
            return None
        return await fk.references.load(self.db, id)

    def _set_foreign(self, fk: ForeignKey, value: Any):
        match value:
            case None:
                self._backing[fk.name] = None

            case Ref():
                if not issubclass(value.schema, fk.references):
                    raise TypeError(
                        f"{fk.qualname()} points to {typename(fk.references)}, not {typename(value.schema)}"
                    )
                if (id := value._backing.get(fk.pointing_to.name)) is None:
                    raise LinkError(
                        f"{typename(value.schema)} is not ready to be linked to {fk.qualname()} - missing primary key"
                    )
                self._backing[fk.name] = id

            # Raw key, eg from Schema.make
            case _:
                self._backing[fk.name] = fk.encode(value)

    # Inverse relations

    async def _get_many(self, rel: ToMany) -> list['Ref']:
        if (id := self._backing.get(rel.pointing_to.name)) is None:
            return []
        return await rel.schema.load_all(self.db, {rel.pointing_from: id})

    async def _get_one(self, rel: ToOne) -> Optional['Ref']:
        if (id := self._backing.get(rel.pointing_to.name)) is None:
            return None
        return await rel.schema.load_first(self.db, rel.pointing_from, id)

    # Many-to-many

    async def _get_pivot(self, pivot: Pivot) -> list['Ref']:
        if (left_id := self.id) is None:
            return []

        join = pivot.schema
        right_name = pivot.right_column.name
        rows = await self.db.select(
            join.__tablename__, {pivot.left_column.name: left_id}
        )

        refs = []
        for row in rows:
            right_id = row[right_name]
            if (ref := await pivot.right.load(self.db, right_id)) is None:
                logger.warning(
                    "Dropping dangling %s row: no %s with id %r",
                    join.__tablename__, typename(pivot.right), right_id
                )
                continue
            refs.append(ref)
        return refs

    def _pivot(self, pivot: Pivot|str) -> Pivot:
        field = self._field(pivot)
        if not isinstance(field, Pivot):
            raise TypeError(f"{field!r} is not a Pivot")
        return field

    async def add(self, pivot: Pivot|str, refs: Iterable['Ref']):
        '''
        Link refs through a pivot. Linking an existing pair violates the join
        table's primary key and raises the database's integrity error.
        '''

        pivot = self._pivot(pivot)
        self._require_id()
        for ref in refs:
            join = pivot.schema.new(self.db)
            join[pivot.left_column] = self
            join[pivot.right_column] = ref
            await join.save()

    async def remove(self, pivot: Pivot|str, refs: Iterable['Ref']):
        '''Unlink refs from a pivot.'''

        pivot = self._pivot(pivot)
        left_id = self._require_id()
        ids = [ref.id for ref in refs if ref.id is not None]
        if not ids:
            return

        await self.db.delete(
            pivot.schema.__tablename__,
            {pivot.left_column.name: left_id},
            within={pivot.right_column.name: ids}
        )

    async def assign(self, pivot: Pivot|str, refs: Iterable['Ref']):
        '''Replace all links of a pivot with refs.'''

        pivot = self._pivot(pivot)
        left_id = self._require_id()
        refs = list(refs)
        # Fail before unlinking anything
        for ref in refs:
            ref._require_id()

        await self.db.delete(
            pivot.schema.__tablename__, {pivot.left_column.name: left_id}
        )
        await self.add(pivot, refs)

    # Persistence

    async def save(self) -> 'Ref[S]':
        '''Insert or update the row.'''

        if self.exists:
            await self._update()
        elif not await self._insert():
            return self

        self.is_dirty = False
        self.exists = True
        return self

    async def _insert(self) -> bool:
        if not self._backing:
            logger.debug("Skipping insert of empty %s", typename(self.schema))
            return False

        pk = self.schema.primary_key()
        if pk is not None and self._backing.get(pk.name) is None:
            if pk.kind == 'uuid':
                self._backing[pk.name] = pk.generate()
            else:
                # Assigned by the database
                self._backing.pop(pk.name, None)

        rowid = await self.db.insert(self.schema.__tablename__, self._backing)

        if pk is not None and pk.kind == 'int' and self._backing.get(pk.name) is None:
            self._backing[pk.name] = rowid
        return True

    def _where_self(self) -> dict[str, Value]:
        pk = self.schema.primary_key()
        if pk is None:
            raise MissingPrimaryKey(f"{typename(self.schema)} has no PrimaryKey")
        if (id := self._backing.get(pk.name)) is None:
            raise MissingPrimaryKey(f"{typename(self.schema)} row has no {pk.name}")
        return {pk.name: id}

    async def _update(self):
        where = self._where_self()
        await self.db.update(self.schema.__tablename__, self._backing, where)

    async def delete(self):
        '''Delete the row.'''
        await self.db.delete(self.schema.__tablename__, self._where_self())
        self.exists = False

    async def reload(self) -> 'Ref[S]':
        '''Discard local changes and reload the row.'''

        rows = await self.db.select(self.schema.__tablename__, self._where_self(), limit=1)
        if not rows:
            raise LookupError(f"{typename(self.schema)} {self.id!r} no longer exists")
        self._backing = dict(rows[0])
        self.is_dirty = False
        self.exists = True
        return self

    def __repr__(self):
        state = "dirty" if self.is_dirty else "clean"
        if not self.exists:
            state = "new"
        return f"Ref[{typename(self.schema)}]({self.id!r}, {state})"

async def save_all(refs: Iterable[Ref]):
    '''Save refs one at a time, a failure leaves earlier saves committed.'''
    for ref in refs:
        await ref.save()

async def delete_all(refs: Iterable[Ref]):
    '''Delete refs one at a time.'''
    for ref in refs:
        await ref.delete()
