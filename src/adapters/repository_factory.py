"""Factory for creating delivery repository instances."""

from typing import cast

from src.adapters.postgres_repository import PostgresRepository
from src.adapters.sqlite_repository import SQLiteRepository
from src.config.logging_config import get_logger
from src.config.settings import Settings
from src.domain.protocols import DeliveryRepositoryProtocol

logger = get_logger(__name__)


def create_repository(settings: Settings) -> DeliveryRepositoryProtocol:
    """Create appropriate repository based on settings.

    Args:
        settings: Application settings

    Returns:
        Repository instance (SQLite or PostgreSQL)

    Raises:
        ValueError: If database_type is not supported or the password is missing
        RepositoryError: On connection errors
    """
    if settings.database_type == "sqlite":
        logger.info("repository_sqlite_selected", path=settings.db_path)
        return cast(
            DeliveryRepositoryProtocol,
            SQLiteRepository(
                db_path=settings.db_path,
                busy_timeout_seconds=settings.sqlite_busy_timeout_seconds,
            ),
        )

    if settings.database_type == "postgres":
        if not settings.postgres_password:
            raise ValueError(
                "POSTGRES_PASSWORD environment variable must be set when using PostgreSQL"
            )

        logger.info(
            "repository_postgres_selected",
            host=settings.postgres_host,
            port=settings.postgres_port,
            database=settings.postgres_database,
            user=settings.postgres_user,
        )
        return cast(
            DeliveryRepositoryProtocol,
            PostgresRepository(
                host=settings.postgres_host,
                port=settings.postgres_port,
                database=settings.postgres_database,
                user=settings.postgres_user,
                password=settings.postgres_password.get_secret_value(),
                settings=settings,
            ),
        )

    raise ValueError(
        f"Unsupported database type: {settings.database_type}. "
        f"Must be 'sqlite' or 'postgres'"
    )
