"""
Scoped Statement Execution
==========================

``ResourceGateway`` is the only place where connection lifetime is managed.
Every statement runs inside a ``StatementScope`` which acquires a connection
(from the engine pool, or a caller-supplied one), runs exactly one statement
and releases everything on every exit path:

- the result cursor is always closed
- a pooled connection is committed on success, rolled back on failure and
  returned to the pool
- a caller-supplied connection is left open and uncommitted; its transaction
  belongs to the caller

Rows are fetched inside the scope, so no cursor outlives its connection.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from sqlalchemy import text
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Connection, Dialect, Engine, Row
from sqlalchemy.sql import Executable

from .error_handling import MetaStoreConnectionError, MetaStoreResourceError

logger = logging.getLogger(__name__)

Statement = Union[str, Executable]
Params = Optional[Union[Dict[str, Any], List[Dict[str, Any]]]]


def _coerce(statement: Statement) -> Executable:
    if isinstance(statement, str):
        return text(statement)
    return statement


class StatementScope:
    """One connection, one statement, guaranteed cleanup."""

    def __init__(self, gateway: "ResourceGateway", connection: Optional[Connection] = None):
        self._provided = connection is not None
        self.connection = connection if connection is not None else gateway.acquire()
        self._result = None
        self._closed = False

    def run(self, statement: Statement, params: Params = None, fetch: bool = False):
        try:
            self._result = self.connection.execute(_coerce(statement), params)
            if fetch:
                return self._result.all()
        except sa_exc.SQLAlchemyError as e:
            raise MetaStoreResourceError(
                f"Statement failed: {e}", {"error_type": type(e).__name__}
            ) from e
        return self._result

    def close(self, success: bool = True):
        """Release the cursor and, if owned, the connection. Safe to call twice."""
        if self._closed:
            return
        self._closed = True

        try:
            if self._result is not None:
                self._result.close()
        finally:
            if not self._provided:
                try:
                    if success:
                        self.connection.commit()
                    else:
                        self.connection.rollback()
                finally:
                    self.connection.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            self.close(success=exc_type is None)
        except sa_exc.SQLAlchemyError as e:
            if exc_type is None:
                raise MetaStoreResourceError(f"Failed to release connection: {e}") from e
            logger.warning(f"Failed to release connection after error: {e}")
        return False


class ResourceGateway:
    """
    Executes statements against a pooled engine or a single provided connection.

    Args:
        engine: SQLAlchemy engine whose pool hands out connections
        connection: Optional long-lived connection used instead of the pool
    """

    def __init__(self, engine: Optional[Engine] = None, connection: Optional[Connection] = None):
        self.engine = engine
        self._connection = connection

    @property
    def dialect(self) -> Dialect:
        if self.engine is not None:
            return self.engine.dialect
        if self._connection is not None:
            return self._connection.dialect
        raise MetaStoreConnectionError("Invalid null connection")

    @property
    def dialect_name(self) -> str:
        return self.dialect.name

    def quote_identifier(self, name: str) -> str:
        return self.dialect.identifier_preparer.quote(name)

    def acquire(self) -> Connection:
        """Take a connection from the pool; never returns None."""
        if self.engine is None:
            raise MetaStoreConnectionError("Invalid null connection")
        try:
            return self.engine.connect()
        except sa_exc.TimeoutError as e:
            raise MetaStoreConnectionError(
                "Connection pool exhausted", {"pool": type(self.engine.pool).__name__}
            ) from e
        except sa_exc.DBAPIError as e:
            raise MetaStoreConnectionError(f"Cannot connect to database: {e}") from e

    def scope(self, connection: Optional[Connection] = None) -> StatementScope:
        return StatementScope(self, connection or self._connection)

    @contextmanager
    def scoped_connection(self) -> Iterator[Connection]:
        """Hold one connection across several statements of a single operation."""
        if self._connection is not None:
            yield self._connection
            return

        conn = self.acquire()
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def query(
        self, statement: Statement, params: Params = None, connection: Optional[Connection] = None
    ) -> List[Row]:
        """Run a SELECT and return all rows."""
        with self.scope(connection) as scope:
            rows = scope.run(statement, params, fetch=True)
        logger.debug(f"Query returned {len(rows)} rows")
        return rows

    def update(
        self, statement: Statement, params: Params = None, connection: Optional[Connection] = None
    ) -> int:
        """Run an INSERT/UPDATE/DELETE and return the affected row count."""
        with self.scope(connection) as scope:
            return scope.run(statement, params).rowcount

    def insert(
        self, statement: Statement, params: Params = None, connection: Optional[Connection] = None
    ) -> Optional[Tuple[Any, ...]]:
        """Run a single-row INSERT and return the new primary key, if any."""
        with self.scope(connection) as scope:
            result = scope.run(statement, params)
            try:
                return tuple(result.inserted_primary_key)
            except sa_exc.InvalidRequestError:
                return None

    def execute(
        self, statement: Statement, params: Params = None, connection: Optional[Connection] = None
    ) -> None:
        """Run a statement whose result is not needed (DDL, bulk writes)."""
        with self.scope(connection) as scope:
            scope.run(statement, params)

    def dispose(self):
        if self.engine is not None:
            self.engine.dispose()
