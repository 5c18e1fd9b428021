import asyncio
import os
import re
import time
from contextlib import asynccontextmanager
from typing import Optional

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool
from sqlalchemy.sql.expression import TextClause

from .settings import settings

POSTGRES = "POSTGRES"
SQLITE = "SQLITE"


class LockNotAcquired(Exception):
    """Raised internally when a table or row lock is held by another transaction."""


def _is_lock_exception(e: Exception) -> bool:
    return "database is locked" in str(e) or "could not obtain lock" in str(e)


class Compat:
    type: Optional[str] = "<inherited>"
    schema: Optional[str] = "<inherited>"

    @property
    def timestamp_now(self) -> int:
        # all timestamps are stored as unix seconds
        return int(time.time())

    @property
    def references_schema(self) -> str:
        if self.type == POSTGRES:
            return f"{self.schema}."
        return ""

    @property
    def big_int(self) -> str:
        if self.type == POSTGRES:
            return "BIGINT"
        return "INT"

    def table_with_schema(self, table: str):
        return f"{self.references_schema if self.schema else ''}{table}"


class Connection(Compat):
    """A single transaction on the database."""

    def __init__(self, session: AsyncSession, typ, name, schema):
        self.session = session
        self.type = typ
        self.name = name
        self.schema = schema

    def rewrite_query(self, query: str) -> TextClause:
        if self.type == POSTGRES:
            query = query.replace("%", "%%")
        return text(query)

    async def fetchall(self, query: str, values: dict = {}):
        result = await self.session.execute(self.rewrite_query(query), values)
        # will return [] if result list is empty
        return [r._mapping for r in result.all()]

    async def fetchone(self, query: str, values: dict = {}):
        result = await self.session.execute(self.rewrite_query(query), values)
        r = result.fetchone()
        return r._mapping if r is not None else None

    async def execute(self, query: str, values: dict = {}):
        """Executes a statement and returns the result. `result.rowcount` holds the
        number of affected rows for UPDATE, DELETE and INSERT statements."""
        return await self.session.execute(self.rewrite_query(query), values)


class Database(Compat):
    def __init__(self, db_name: str, db_location: str):
        self.name = db_name
        self.db_location = db_location
        self.db_location_is_url = "://" in self.db_location
        if self.db_location_is_url:
            database_uri = self.db_location
            self.type = POSTGRES
            database_uri = database_uri.replace("postgres://", "postgresql+asyncpg://")
            database_uri = database_uri.replace(
                "postgresql://", "postgresql+asyncpg://"
            )
            # Disable prepared statement cache: https://docs.sqlalchemy.org/en/20/dialects/postgresql.html#prepared-statement-cache
            database_uri += "?prepared_statement_cache_size=0"
        else:
            if not os.path.exists(self.db_location):
                logger.info(f"Creating database directory: {self.db_location}")
                os.makedirs(self.db_location)
            self.path = os.path.join(self.db_location, f"{self.name}.sqlite3")
            database_uri = f"sqlite+aiosqlite:///{self.path}?check_same_thread=false"
            self.type = SQLITE

        if self.name.startswith("ext_"):
            self.schema = self.name[4:]
        else:
            self.schema = None

        kwargs: dict = {}
        if not settings.db_connection_pool:
            kwargs["poolclass"] = NullPool
        elif self.type == POSTGRES:
            kwargs["poolclass"] = AsyncAdaptedQueuePool
            kwargs["pool_size"] = 50
            kwargs["max_overflow"] = 100

        self.engine = create_async_engine(database_uri, **kwargs)
        self.async_session = async_sessionmaker(self.engine, expire_on_commit=False)

    @asynccontextmanager
    async def get_connection(
        self,
        conn: Optional[Connection] = None,
        lock_table: Optional[str] = None,
        lock_select_statement: Optional[str] = None,
        lock_timeout: Optional[float] = None,
    ):
        """Either yield the existing database connection (passthrough) or create a new one.

        Args:
            conn (Optional[Connection], optional): Connection object. Defaults to None.
            lock_table (Optional[str], optional): Table to lock. Defaults to None.
            lock_select_statement (Optional[str], optional): Row to lock, as `column='value'`. Defaults to None.
            lock_timeout (Optional[float], optional): Lock timeout. Defaults to None.

        Yields:
            Connection: Connection object.
        """
        if conn is not None:
            # Yield the existing connection
            logger.trace("Reusing existing connection")
            yield conn
        else:
            logger.trace("get_connection: Creating new connection")
            async with self.connect(
                lock_table, lock_select_statement, lock_timeout
            ) as new_conn:
                yield new_conn

    @asynccontextmanager
    async def connect(
        self,
        lock_table: Optional[str] = None,
        lock_select_statement: Optional[str] = None,
        lock_timeout: Optional[float] = None,
    ):
        """Opens a transaction, optionally holding a lock on a table or row.

        Acquiring the lock is retried with exponential backoff until `lock_timeout`
        (default 5 seconds). The transaction is committed when the block exits normally
        and rolled back if it raises.
        """
        timeout = lock_timeout or 5
        start_time = time.time()
        retry_delay = 0.1
        trial = 0

        while True:
            trial += 1
            session = self.async_session()
            try:
                logger.trace(f"Connecting to database trial: {trial}")
                async with session.begin():
                    wconn = Connection(session, self.type, self.name, self.schema)
                    if lock_table:
                        await self.acquire_lock(
                            wconn, lock_table, lock_select_statement
                        )
                    logger.trace(f"> Yielding connection. Lock: {lock_table}")
                    yield wconn
                    logger.trace(f"< Connection yielded. Unlock: {lock_table}")
                    return
            except LockNotAcquired:
                elapsed = time.time() - start_time
                if elapsed >= timeout:
                    raise Exception(
                        f"failed to acquire database lock on {lock_table} after"
                        f" {timeout}s and {trial} trials"
                    )
                await asyncio.sleep(retry_delay)
                retry_delay = min(retry_delay * 2, max(timeout - elapsed, 0.01))
            finally:
                logger.trace(f"Closing session trial: {trial}")
                await session.close()

    async def acquire_lock(
        self,
        wconn: Connection,
        lock_table: str,
        lock_select_statement: Optional[str] = None,
    ):
        """Acquire a lock on a table or a row in a table.

        Raises:
            LockNotAcquired: If the lock is held by another transaction.
        """
        if lock_select_statement:
            assert (
                len(re.findall(r"^[^=]+='[^']+'$", lock_select_statement)) == 1
            ), "lock_select_statement must have exactly one {column}='{value}' pattern."
        statement = self.lock_table(lock_table, lock_select_statement)
        try:
            logger.trace(f"Acquiring lock on {lock_table} with statement {statement}")
            await wconn.execute(statement)
            logger.trace(f"Success: Acquired lock on {lock_table}")
        except Exception as e:
            if _is_lock_exception(e):
                logger.trace(f"Table {lock_table} is already locked: {e}")
                raise LockNotAcquired(str(e))
            logger.trace(f"Failed to acquire lock on {lock_table}: {e}")
            raise e

    def lock_table(
        self,
        table: str,
        lock_select_statement: Optional[str] = None,
    ) -> str:
        # with postgres, we can lock a row with a SELECT statement with FOR UPDATE NOWAIT
        if self.type == POSTGRES:
            if lock_select_statement:
                return f"SELECT 1 FROM {self.table_with_schema(table)} WHERE {lock_select_statement} FOR UPDATE NOWAIT;"
            return (
                f"LOCK TABLE {self.table_with_schema(table)} IN EXCLUSIVE MODE NOWAIT;"
            )
        # sqlite has no row or table locks, the whole database is locked instead
        return "BEGIN EXCLUSIVE TRANSACTION;"

    async def fetchall(self, query: str, values: dict = {}) -> list:
        async with self.connect() as conn:
            return await conn.fetchall(query, values)

    async def fetchone(self, query: str, values: dict = {}):
        async with self.connect() as conn:
            return await conn.fetchone(query, values)

    async def execute(self, query: str, values: dict = {}):
        async with self.connect() as conn:
            return await conn.execute(query, values)
