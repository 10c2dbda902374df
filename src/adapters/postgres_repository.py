"""Pooled PostgreSQL delivery repository (psycopg2 ``ThreadedConnectionPool``)."""

from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock
from time import sleep
from typing import TYPE_CHECKING, Any, Final

from psycopg2 import Error as PsycopgError
from psycopg2 import extensions
from psycopg2 import pool as psycopg2_pool
from psycopg2.extras import register_uuid

from src.adapters.postgres_delivery_store import PostgresDeliveryStore
from src.config.logging_config import get_logger
from src.config.settings import (
    POSTGRES_APPLICATION_NAME_DEFAULT,
    POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT,
    POSTGRES_MAX_CONNECTIONS_DEFAULT,
    POSTGRES_MIN_CONNECTIONS_DEFAULT,
    POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT,
)
from src.domain.exceptions import RepositoryError

if TYPE_CHECKING:
    from src.config.settings import Settings


POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT: Final[int] = 5
POOL_ACQUIRE_BASE_DELAY_SECONDS: Final[float] = 0.1
POOL_ACQUIRE_MAX_DELAY_SECONDS: Final[float] = 2.0

logger = get_logger(__name__)

_UUID_ADAPTER_REGISTERED: bool = False
_UUID_ADAPTER_LOCK: Lock = Lock()


def _ensure_uuid_adapter_registered() -> None:
    global _UUID_ADAPTER_REGISTERED
    with _UUID_ADAPTER_LOCK:
        if not _UUID_ADAPTER_REGISTERED:
            register_uuid()
            _UUID_ADAPTER_REGISTERED = True


class PostgresRepository(PostgresDeliveryStore):
    """PostgreSQL delivery repository backed by a connection pool.

    Schema is owned by Alembic (``alembic upgrade head``); this class only
    borrows pooled connections and hands them to the delivery store queries.
    """

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        settings: "Settings | None" = None,
    ):
        self._database = database
        self._min_connections = (
            settings.postgres_min_connections
            if settings
            else POSTGRES_MIN_CONNECTIONS_DEFAULT
        )
        self._max_connections = (
            settings.postgres_max_connections
            if settings
            else POSTGRES_MAX_CONNECTIONS_DEFAULT
        )
        if self._min_connections <= 0:
            raise RepositoryError("postgres_min_connections must be positive")
        if self._max_connections < self._min_connections:
            raise RepositoryError(
                "postgres_max_connections must be greater than or equal to postgres_min_connections"
            )

        statement_timeout_ms = (
            settings.postgres_statement_timeout_ms
            if settings
            else POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT
        )
        application_name = (
            settings.postgres_application_name
            if settings
            else POSTGRES_APPLICATION_NAME_DEFAULT
        )
        conn_kwargs: dict[str, Any] = {
            "host": host,
            "port": port,
            "database": database,
            "user": user,
            "password": password,
            "connect_timeout": (
                settings.postgres_connect_timeout_seconds
                if settings
                else POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT
            ),
            "options": (
                f"-c statement_timeout={statement_timeout_ms} "
                f"-c application_name={application_name}"
            ),
        }
        if settings and settings.postgres_ssl_mode:
            conn_kwargs["sslmode"] = settings.postgres_ssl_mode

        _ensure_uuid_adapter_registered()
        self._pool = self._create_pool(conn_kwargs)
        logger.info(
            "postgres_pool_initialized",
            host=host,
            port=port,
            database=database,
            min_connections=self._min_connections,
            max_connections=self._max_connections,
            statement_timeout_ms=statement_timeout_ms,
        )

        super().__init__(self._get_connection)

    def _create_pool(
        self, conn_kwargs: dict[str, Any]
    ) -> psycopg2_pool.ThreadedConnectionPool:
        """Open the pool and run ``SELECT 1`` on one connection before use."""
        try:
            pool = psycopg2_pool.ThreadedConnectionPool(
                self._min_connections, self._max_connections, **conn_kwargs
            )
        except PsycopgError as exc:
            raise RepositoryError(
                f"Failed to initialize PostgreSQL pool: {exc}"
            ) from exc

        try:
            conn = pool.getconn()
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
            finally:
                pool.putconn(conn)
        except PsycopgError as exc:
            pool.closeall()
            raise RepositoryError(f"PostgreSQL validation query failed: {exc}") from exc
        return pool

    def _acquire_connection_with_retry(self) -> extensions.connection:
        """Take a pooled connection, backing off exponentially while exhausted."""
        delay = POOL_ACQUIRE_BASE_DELAY_SECONDS
        for attempt in range(1, POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT + 1):
            try:
                return self._pool.getconn()
            except psycopg2_pool.PoolError as exc:
                if attempt == POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT:
                    logger.error(
                        "postgres_pool_acquire_failed",
                        attempts=attempt,
                        max_connections=self._max_connections,
                    )
                    raise RepositoryError(
                        "Failed to acquire PostgreSQL connection from pool"
                    ) from exc
                logger.warning(
                    "postgres_pool_exhausted_retry",
                    attempt=attempt,
                    wait_seconds=delay,
                    max_connections=self._max_connections,
                )
                sleep(delay)
                delay = min(delay * 2, POOL_ACQUIRE_MAX_DELAY_SECONDS)
        raise RepositoryError("Failed to acquire PostgreSQL connection from pool")

    def _release_connection(
        self, conn: extensions.connection, *, close: bool, reason: str | None
    ) -> None:
        try:
            self._pool.putconn(conn, close=close)
        except PsycopgError:
            logger.warning(
                "postgres_putconn_failed",
                database=self._database,
                close=close,
                reason=reason,
                exc_info=True,
            )
        if close and reason:
            logger.warning("postgres_connection_closed", reason=reason)

    def close(self) -> None:
        """Close all connections in the pool."""
        self._pool.closeall()
        logger.info("postgres_pool_closed", database=self._database)

    @contextmanager
    def _get_connection(self) -> Iterator[extensions.connection]:
        """Borrow a connection; broken ones are discarded instead of pooled."""
        conn: extensions.connection | None = None
        try:
            conn = self._acquire_connection_with_retry()
            conn.autocommit = False
            yield conn
        except PsycopgError as exc:
            if conn is not None:
                try:
                    conn.rollback()
                except PsycopgError:
                    logger.warning(
                        "postgres_connection_rollback_failed",
                        database=self._database,
                        exc_info=True,
                    )
                finally:
                    self._release_connection(conn, close=True, reason="rollback_error")
                    conn = None
            raise RepositoryError(f"PostgreSQL connection error: {exc}") from exc
        finally:
            if conn is not None:
                try:
                    if conn.get_transaction_status() in (
                        extensions.TRANSACTION_STATUS_INTRANS,
                        extensions.TRANSACTION_STATUS_INERROR,
                    ):
                        conn.rollback()
                except PsycopgError:
                    logger.warning(
                        "postgres_connection_cleanup_failed",
                        database=self._database,
                        exc_info=True,
                    )
                    self._release_connection(conn, close=True, reason="cleanup_error")
                else:
                    self._release_connection(conn, close=False, reason=None)
