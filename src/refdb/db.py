'''
SQLite database capability. Statements are built with SQLAlchemy Core and
run on a single worker thread holding the one connection, so concurrent
callers are serialized and each statement commits on its own.
'''

import asyncio
from concurrent.futures import ThreadPoolExecutor
import time
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence
from urllib.parse import urlparse

from prettytable import PrettyTable
from pydantic import BaseModel
import sqlalchemy as sa
from sqlalchemy import Connection, Executable, event
from sqlalchemy.engine import URL
from sqlalchemy.pool import StaticPool

from .base import DatabaseConfig, Value
from .columns import quote
from .ddl import CreateTable, prepare
from .schema import Schema
from .util import logger

__all__ = [
    'TableColumnMeta',
    'Database'
]

type Row = dict[str, Any]

class TableColumnMeta(BaseModel):
    '''One row of PRAGMA table_info.'''

    cid: int
    name: str
    type: str
    notnull: bool
    dflt_value: Optional[str]
    pk: int
    '''1-based position in the primary key, 0 if not part of it.'''

    @property
    def is_primary_key(self):
        return self.pk > 0

def sqlite_path(database: str) -> str:
    '''Get the filesystem path (or :memory:) of a database setting.'''

    u = urlparse(database)
    if u.scheme == '':
        return database
    if u.scheme != 'sqlite':
        raise ValueError('Only sqlite databases are supported')

    # sqlite:///relative.db and sqlite:////absolute.db
    path = u.path[1:] if u.path.startswith("/") else u.path
    return path or ":memory:"

def _table(name: str, columns: Iterable[str]=()):
    return sa.table(name, *map(sa.column, columns))

def _where[T: Executable](stmt: T, where: Optional[Mapping[str, Value]]) -> T:
    for k, v in (where or {}).items():
        col = sa.column(k)
        stmt = stmt.where(col.is_(None) if v is None else col == v) # type: ignore
    return stmt

class Database:
    config: DatabaseConfig
    engine: sa.Engine

    def __init__(self, config: DatabaseConfig|str):
        if isinstance(config, str):
            config = {"database": config}
        self.config = config

        path = sqlite_path(config['database'])
        logger.info('Connecting to database %s', path)

        self.engine = sa.create_engine(
            URL.create("sqlite", database=path),
            echo=config.get('echo', False),
            poolclass=StaticPool,
            connect_args={"check_same_thread": False}
        )

        if config.get('foreign_keys', True):
            @event.listens_for(self.engine, "connect")
            def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="refdb")

    async def _run[T](self, fn: Callable[[Connection], T]) -> T:
        '''Run a job on the database thread, committing when it finishes.'''

        def job():
            with self.engine.begin() as conn:
                return fn(conn)

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, job)

    async def _rows(self, stmt: Executable) -> list[Row]:
        logger.debug("%s", stmt)
        return await self._run(
            lambda conn: [dict(row._mapping) for row in conn.execute(stmt)]
        )

    async def select(self,
        table: str,
        where: Optional[Mapping[str, Value]]=None,
        *,
        within: Optional[Mapping[str, Iterable[Value]]]=None,
        like: Optional[Mapping[str, str]]=None,
        limit: Optional[int]=None
    ) -> list[Row]:
        '''
        Select rows where columns equal values (None matches NULL), are in
        one of the values of within, and contain the substrings of like.
        '''

        stmt = sa.select(sa.literal_column("*")).select_from(sa.table(table))
        stmt = _where(stmt, where)
        for k, vs in (within or {}).items():
            stmt = stmt.where(sa.column(k).in_(list(vs)))
        for k, text in (like or {}).items():
            stmt = stmt.where(sa.column(k).contains(text, autoescape=True))
        if limit is not None:
            stmt = stmt.limit(limit)

        return await self._rows(stmt)

    async def insert(self, table: str, values: Mapping[str, Value]) -> Optional[int]:
        '''Insert a row, returning its rowid.'''

        stmt = sa.insert(_table(table, values)).values(dict(values))
        logger.debug("%s", stmt)
        # lastrowid is read in the same job so nothing can interleave
        return await self._run(lambda conn: conn.execute(stmt).lastrowid)

    async def update(self,
        table: str,
        values: Mapping[str, Value],
        where: Mapping[str, Value]
    ) -> int:
        '''Update rows matching where, returning the number affected.'''

        stmt = sa.update(_table(table, values)).values(dict(values))
        stmt = _where(stmt, where)
        logger.debug("%s", stmt)
        return await self._run(lambda conn: conn.execute(stmt).rowcount)

    async def delete(self,
        table: str,
        where: Optional[Mapping[str, Value]]=None,
        *,
        within: Optional[Mapping[str, Iterable[Value]]]=None
    ) -> int:
        '''Delete rows matching where and within, returning the number affected.'''

        stmt = _where(sa.delete(sa.table(table)), where)
        for k, vs in (within or {}).items():
            stmt = stmt.where(sa.column(k).in_(list(vs)))
        logger.debug("%s", stmt)
        return await self._run(lambda conn: conn.execute(stmt).rowcount)

    async def execute(self,
        query: str,
        params: Optional[Sequence[Value]|Mapping[str, Value]]=None
    ) -> list[Row]:
        '''Execute raw SQL (qmark or named parameters), returning any rows.'''

        logger.debug("%s", query)
        def job(conn: Connection):
            result = conn.exec_driver_sql(query, params or ())
            if result.returns_rows:
                return [dict(row._mapping) for row in result]
            return []
        return await self._run(job)

    def create(self, table: str, *, if_not_exists: bool=False) -> CreateTable:
        '''Start building a table bound to this database.'''
        return CreateTable(table, self, if_not_exists=if_not_exists)

    async def prepare(self, *schemas: type[Schema], if_not_exists: bool=False):
        '''Create the tables of schemas in order.'''
        await prepare(self, *schemas, if_not_exists=if_not_exists)

    async def raw_format(self, query: str) -> str:
        '''Formatted raw SQL query.'''

        def job(conn: Connection):
            t = time.time()
            result = conn.exec_driver_sql(query)
            if result.returns_rows:
                keys, rows = list(result.keys()), result.fetchall()
            else:
                keys, rows = None, result.rowcount
            return keys, rows, time.time() - t

        keys, result, dt = await self._run(job)

        if keys is None:
            content = f"{result} affected"
        elif len(result) == 0:
            content = "empty set"
        else:
            table = PrettyTable(keys)
            table.add_rows([list(row) for row in result])
            content = f"{table}\n\n{len(result)} rows in set"

        return f"{content} ({dt:.2f} sec)"

    # Introspection, mostly for tests. These bypass schemas entirely.

    async def unsafe_get_all_tables(self) -> list[str]:
        '''Names of all user tables.'''

        stmt = (sa.select(sa.column("name"))
            .select_from(sa.table("sqlite_master"))
            .where(sa.column("type") == "table")
            .where(sa.not_(sa.column("name").startswith("sqlite_", autoescape=True)))
        )
        return [row['name'] for row in await self._rows(stmt)]

    async def unsafe_table_exists(self, table: str) -> bool:
        return table in await self.unsafe_get_all_tables()

    async def unsafe_table_meta(self, table: str) -> list[TableColumnMeta]:
        rows = await self.execute(f"PRAGMA table_info({quote(table)})")
        return [TableColumnMeta.model_validate(row) for row in rows]

    async def _without_foreign_keys(self, query: str):
        # The pragma is a no-op inside a transaction, so each runs on its own
        await self.execute("PRAGMA foreign_keys=OFF")
        try:
            await self.execute(query)
        finally:
            if self.config.get('foreign_keys', True):
                await self.execute("PRAGMA foreign_keys=ON")

    async def unsafe_drop_table(self, table: str):
        '''Drop a table regardless of what references it.'''
        logger.warning("Dropping table %s", table)
        await self._without_foreign_keys(f"DROP TABLE {quote(table)}")

    async def unsafe_fatal_drop_all_tables(self):
        for table in await self.unsafe_get_all_tables():
            await self.unsafe_drop_table(table)

    async def unsafe_fatal_delete_all_entries(self):
        for table in await self.unsafe_get_all_tables():
            logger.warning("Deleting all rows of %s", table)
            await self._without_foreign_keys(f"DELETE FROM {quote(table)}")

    async def close(self):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self.engine.dispose)
        self._executor.shutdown(wait=True)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()
