'''
Relations are the non-persisted inverse sides of foreign keys. They carry
just enough to build the query which resolves them, see Ref for that.
'''

from threading import RLock
from typing import Any, override

from .columns import ForeignKey, PrimaryKey, Relation
from .schema import PrimaryKeyGroup, Schema, TableConstraints
from .util import Defer, deferred_property, resolve_ref, typename

__all__ = [
    'Inverse',
    'ToMany',
    'ToOne',
    'Pivot',
    'pivot_schema'
]

class Inverse[S: Schema](Relation):
    '''
    Rows of another schema with a foreign key pointing at this one. The
    foreign key is given directly, as a thunk, or as "Schema.label".
    '''

    linked_by: Defer[ForeignKey]|str
    pointing_from = deferred_property[ForeignKey]()
    '''The other schema's foreign key.'''

    def __init__(self, linked_by: Defer[ForeignKey]|str):
        super().__init__()
        self.linked_by = linked_by
        Inverse.pointing_from.defer(self, self._resolve)

    def _resolve(self) -> ForeignKey:
        linked = self.linked_by
        match linked:
            case ForeignKey(): pass
            case str(path):
                schema, _, label = path.rpartition(".")
                linked = resolve_ref(schema, self.owner).field(label)
            case _ if callable(linked):
                linked = linked()

        if not isinstance(linked, ForeignKey):
            raise TypeError(f"{self.qualname()} must be linked by a ForeignKey, got {typename(linked)}")

        if not issubclass(self.owner, linked.references):
            raise TypeError(
                f"{self.qualname()} is linked by {linked.qualname()} which points to {typename(linked.references)}"
            )
        return linked

    @property
    def pointing_to(self) -> PrimaryKey:
        '''This schema's primary key.'''
        return self.owner.require_primary_key()

    @property
    def schema(self) -> type[S]:
        '''The schema on the other side.'''
        return self.pointing_from.owner # type: ignore

    @override
    def __repr__(self):
        return f"{typename(self)}({self.linked_by!r})"

class ToMany[S: Schema](Inverse[S]):
    '''All rows of another schema pointing to this one.'''

class ToOne[S: Schema](Inverse[S]):
    '''
    The row of another schema pointing to this one. At most one such row is
    a matter of schema design, the first match is used.
    '''

_pivots: dict[frozenset[type[Schema]], type[Schema]] = {}
_pivot_lock = RLock()

def pivot_schema(left: type[Schema], right: type[Schema]) -> type[Schema]:
    '''
    Get the join schema of two schemas. The table is named after both tables
    in sorted order, with one non-null foreign key per side named
    {table}_{primary key} and a composite primary key over the pair. Each
    pair of schemas has exactly one join schema regardless of order.
    '''

    if left is right:
        raise TypeError(f"{typename(left)} cannot pivot with itself")

    key = frozenset((left, right))
    if (schema := _pivots.get(key)) is not None:
        return schema

    with _pivot_lock:
        if (schema := _pivots.get(key)) is not None:
            return schema

        a, b = sorted((left, right), key=lambda s: s.__tablename__)
        joins: dict[type[Schema], ForeignKey] = {}
        attrs: dict[str, Any] = {}
        for side in (a, b):
            pk = side.require_primary_key()
            label = f"{side.__tablename__}_{pk.name}"
            joins[side] = attrs[label] = ForeignKey(side, optional=False, on_delete='CASCADE')

        schema = type(f"{a.__name__}{b.__name__}", (Schema,), {
            "__module__": a.__module__,
            "__qualname__": f"pivot_schema.{a.__name__}{b.__name__}",
            "__tablename__": f"{a.__tablename__}_{b.__tablename__}",
            "__table_args__": TableConstraints(PrimaryKeyGroup(*joins.values())),
            "__joins__": joins,
            **attrs
        })
        schema.template()
        _pivots[key] = schema
        return schema

class Pivot[L: Schema, R: Schema](Relation):
    '''Many-to-many relation through a synthesized join schema.'''

    target: Defer[type[R]]|str
    right = deferred_property[type[Schema]]()
    '''Schema on the other side of the join.'''

    def __init__(self, right: Defer[type[R]]|str):
        super().__init__()
        self.target = right
        Pivot.right.defer(self, lambda: resolve_ref(self.target, self.owner))

    @property
    def left(self) -> type[Schema]:
        return self.owner

    @property
    def schema(self) -> type[Schema]:
        '''The join schema.'''
        return pivot_schema(self.left, self.right)

    @property
    def left_column(self) -> ForeignKey:
        return self.schema.__joins__[self.left] # type: ignore

    @property
    def right_column(self) -> ForeignKey:
        return self.schema.__joins__[self.right] # type: ignore

    @override
    def __repr__(self):
        return f"Pivot({self.target!r})"
