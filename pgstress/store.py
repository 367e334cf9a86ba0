from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.pool import PoolError, ThreadedConnectionPool

LOGGER = logging.getLogger("pgstress.store")

TABLE_NAME = "stress_test_data"

DROP_TABLE_SQL = f"DROP TABLE IF EXISTS {TABLE_NAME}"

CREATE_TABLE_SQL = f"""
CREATE TABLE {{if_not_exists}}{TABLE_NAME} (
    id SERIAL PRIMARY KEY,
    user_id VARCHAR(50) NOT NULL,
    name VARCHAR(100),
    email VARCHAR(100),
    gender VARCHAR(20),
    amount DECIMAL(10, 2),
    wallet_address VARCHAR(100),
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""

CREATE_INDEX_SQL = f"CREATE INDEX {{if_not_exists}}idx_user_id ON {TABLE_NAME}(user_id)"

INSERT_SQL = (
    f"INSERT INTO {TABLE_NAME} (user_id, name, email, gender, amount, wallet_address) "
    "VALUES (%(user_id)s, %(name)s, %(email)s, %(gender)s, %(amount)s, %(wallet_address)s)"
)

SELECT_SQL = (
    f"SELECT * FROM {TABLE_NAME} WHERE user_id = %s ORDER BY created_at DESC LIMIT 1"
)

# SQLSTATE class 53 is "insufficient resources" (53300 = too_many_connections).
_RESOURCE_SQLSTATE_CLASS = "53"
_RESOURCE_MESSAGES = (
    "too many clients",
    "remaining connection slots",
    "connection pool exhausted",
)


class FailureCategory(enum.Enum):
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    TIMEOUT = "timeout"
    OTHER = "other"

    @property
    def is_connection_error(self) -> bool:
        return self is not FailureCategory.OTHER


class SchemaError(Exception):
    """Raised when the stress table cannot be provisioned."""


class AcquireTimeout(Exception):
    """Raised when no pooled connection frees up within the acquisition deadline."""


@dataclass(frozen=True)
class PoolSettings:
    """Connection parameters shared by every stage pool of a run."""

    database_url: str
    acquire_timeout_s: float = 5.0
    connect_timeout_s: int = 5
    statement_timeout_ms: int = 10_000

    def __post_init__(self) -> None:
        if not self.database_url:
            raise ValueError("database_url must be provided")
        if self.acquire_timeout_s <= 0:
            raise ValueError("acquire_timeout_s must be > 0")
        if self.connect_timeout_s <= 0:
            raise ValueError("connect_timeout_s must be > 0")
        if self.statement_timeout_ms <= 0:
            raise ValueError("statement_timeout_ms must be > 0")

    @property
    def host(self) -> str:
        return urlparse(self.database_url).hostname or "<unknown>"

    def connect_kwargs(self) -> dict[str, Any]:
        return {
            "dsn": self.database_url,
            "connect_timeout": self.connect_timeout_s,
            "options": f"-c statement_timeout={self.statement_timeout_ms}",
        }


def classify_error(exc: BaseException) -> FailureCategory:
    if isinstance(exc, (AcquireTimeout, PoolError)):
        return FailureCategory.RESOURCE_EXHAUSTION
    if isinstance(exc, pg_errors.QueryCanceled):
        return FailureCategory.TIMEOUT

    pgcode = getattr(exc, "pgcode", None)
    if pgcode and pgcode.startswith(_RESOURCE_SQLSTATE_CLASS):
        return FailureCategory.RESOURCE_EXHAUSTION

    message = str(exc).lower()
    if any(marker in message for marker in _RESOURCE_MESSAGES):
        return FailureCategory.RESOURCE_EXHAUSTION
    if "timeout" in message or "timed out" in message:
        return FailureCategory.TIMEOUT
    return FailureCategory.OTHER


class ReusingConnectionPool(ThreadedConnectionPool):
    """Threaded pool that opens connections on demand and keeps up to ``maxconn`` idle.

    psycopg2 only parks a returned connection while fewer than ``minconn`` are
    idle, and it opens ``minconn`` connections eagerly, so the floor is raised
    after construction.
    """

    def __init__(self, maxconn: int, *args, **kwargs) -> None:
        super().__init__(0, maxconn, *args, **kwargs)
        self.minconn = self.maxconn


class StagePool:
    """Connection pool scoped to a single stage, holding at most `concurrency` connections.

    Connections are opened lazily so that the store refusing a connection shows up
    as a per-task failure instead of breaking pool construction. Released
    connections stay open for the next task.
    """

    def __init__(self, settings: PoolSettings, concurrency: int) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        self._settings = settings
        self._slots = threading.BoundedSemaphore(concurrency)
        self._pool = ReusingConnectionPool(concurrency, **settings.connect_kwargs())

    def acquire(self):
        if not self._slots.acquire(timeout=self._settings.acquire_timeout_s):
            raise AcquireTimeout(
                f"no connection available within {self._settings.acquire_timeout_s:.1f}s"
            )
        try:
            conn = self._pool.getconn()
            conn.autocommit = True
        except BaseException:
            self._slots.release()
            raise
        return conn

    def release(self, conn, discard: bool = False) -> None:
        try:
            self._pool.putconn(conn, close=discard or bool(conn.closed))
        finally:
            self._slots.release()

    def close(self) -> None:
        self._pool.closeall()


def write_record(conn, record: dict[str, Any]) -> None:
    with conn.cursor() as cursor:
        cursor.execute(INSERT_SQL, record)


def read_record(conn, user_id: str):
    with conn.cursor() as cursor:
        cursor.execute(SELECT_SQL, (user_id,))
        return cursor.fetchone()


def ensure_schema(settings: PoolSettings, reset: bool = True, connect=psycopg2.connect) -> None:
    """Provision the stress table once before the first stage.

    With ``reset`` the table is dropped and recreated, otherwise it is only
    created when missing. Any failure is raised as :class:`SchemaError`.
    """
    if_not_exists = "" if reset else "IF NOT EXISTS "
    try:
        conn = connect(**settings.connect_kwargs())
    except psycopg2.Error as exc:
        raise SchemaError(f"failed to connect to {settings.host}: {exc}") from exc

    try:
        conn.autocommit = True
        with conn.cursor() as cursor:
            LOGGER.info("Setting up database schema on %s", settings.host)
            if reset:
                cursor.execute(DROP_TABLE_SQL)
            cursor.execute(CREATE_TABLE_SQL.format(if_not_exists=if_not_exists))
            cursor.execute(CREATE_INDEX_SQL.format(if_not_exists=if_not_exists))
        LOGGER.info(
            "Table %r %s", TABLE_NAME, "recreated" if reset else "ready"
        )
    except psycopg2.Error as exc:
        raise SchemaError(f"failed to set up table {TABLE_NAME!r}: {exc}") from exc
    finally:
        conn.close()


__all__ = [
    "AcquireTimeout",
    "FailureCategory",
    "PoolSettings",
    "ReusingConnectionPool",
    "SchemaError",
    "StagePool",
    "TABLE_NAME",
    "classify_error",
    "ensure_schema",
    "read_record",
    "write_record",
]
