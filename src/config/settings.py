"""Application settings with Pydantic Settings validation.

Secrets (database password) are loaded from the environment or a .env file.
Non-sensitive configuration is loaded from config/main.yaml and config/*.yaml.
All configs are merged and validated against JSON schemas in config/schemas/.
"""

import json
from datetime import timedelta
from pathlib import Path
from typing import Any, Final, Literal, cast

import yaml
from jsonschema import ValidationError as JSONSchemaValidationError
from jsonschema import validate
from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.config.logging_config import get_logger
from src.domain.delivery_constants import (
    DEFAULT_CLEANUP_INTERVAL_MINUTES,
    DEFAULT_DEDUP_PAYLOAD_FIELDS,
    DEFAULT_DEDUP_WINDOW_MINUTES,
    DEFAULT_LOG_LISTING_LIMIT,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_RETRY_DELAY_MS,
    DEFAULT_REPORT_WINDOW_HOURS,
    DEFAULT_RETENTION_DAYS,
    DEFAULT_RETRY_DELAY_MS,
    DEFAULT_TIMEOUT_MS,
    KEY_SCOPE_RECIPIENT_CONTENT,
)
from src.domain.models import RetentionPolicy

POSTGRES_MIN_CONNECTIONS_DEFAULT: Final[int] = 1
POSTGRES_MAX_CONNECTIONS_DEFAULT: Final[int] = 10
POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT: Final[int] = 10_000
POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT: Final[int] = 10
POSTGRES_APPLICATION_NAME_DEFAULT: Final[str] = "notification_delivery_engine"

SQLITE_BUSY_TIMEOUT_SECONDS_DEFAULT: Final[float] = 30.0
CLEANUP_RUN_AT_HOUR_DEFAULT: Final[int] = 2

CONFIG_DIR: Final[Path] = Path("config")

logger = cast(Any, get_logger(__name__))


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary to merge into base (takes precedence)

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_schema(schema_name: str, config_dir: Path = CONFIG_DIR) -> dict[str, Any]:
    """Load JSON Schema from config/schemas/.

    Args:
        schema_name: Schema name without extension (e.g., "main")
        config_dir: Directory holding the YAML files and schemas/

    Returns:
        JSON Schema dictionary or empty dict if not found
    """
    schema_path = config_dir / "schemas" / f"{schema_name}.schema.json"
    if not schema_path.exists():
        return {}

    try:
        with open(schema_path, encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(
            "config_schema_load_failed",
            schema=schema_name,
            error=str(e),
        )
        return {}


def validate_config_section(
    config: dict[str, Any],
    schema_name: str,
    file_path: str = "",
    config_dir: Path = CONFIG_DIR,
) -> None:
    """Validate config section against JSON Schema.

    Raises:
        ValueError: If validation fails
    """
    schema = load_schema(schema_name, config_dir)
    if not schema:
        return

    try:
        validate(instance=config, schema=schema)
        logger.debug("config_validation_succeeded", schema=schema_name)
    except JSONSchemaValidationError as e:
        error_msg = f"Config validation failed for {schema_name}"
        if file_path:
            error_msg += f" (file: {file_path})"
        error_msg += f": {e.message}"
        raise ValueError(error_msg) from e


def load_all_configs(config_dir: Path = CONFIG_DIR) -> dict[str, Any]:
    """Load and merge all YAML configs from the config directory.

    Loading order (later overrides earlier):
    1. config/main.yaml
    2. All other config/*.yaml files (sorted alphabetically)

    Each file is validated against config/schemas/<stem>.schema.json if present.

    Returns:
        Merged configuration dictionary
    """
    merged_config: dict[str, Any] = {}

    main_path = config_dir / "main.yaml"
    if main_path.exists():
        try:
            with open(main_path, encoding="utf-8") as f:
                main_config = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning(
                "config_file_load_failed",
                path=str(main_path),
                error=str(e),
            )
        else:
            validate_config_section(main_config, "main", str(main_path), config_dir)
            merged_config = main_config
            logger.debug("config_file_loaded", path=str(main_path), schema="main")

    yaml_files: list[Path] = []
    if config_dir.is_dir():
        yaml_files = sorted(
            f for f in config_dir.glob("*.yaml") if f.name != "main.yaml"
        )

    for yaml_file in yaml_files:
        schema_name = yaml_file.stem
        try:
            with open(yaml_file, encoding="utf-8") as f:
                file_config = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning(
                "config_file_load_failed",
                path=str(yaml_file),
                error=str(e),
            )
            continue

        try:
            validate_config_section(file_config, schema_name, str(yaml_file), config_dir)
        except ValueError as e:
            logger.error(
                "config_validation_failed",
                path=str(yaml_file),
                schema=schema_name,
                error=str(e),
            )
            raise

        merged_config = deep_merge(merged_config, file_config)
        logger.debug("config_file_loaded", path=str(yaml_file), schema=schema_name)

    file_count = (1 if main_path.exists() else 0) + len(yaml_files)
    logger.info("config_load_complete", file_count=file_count)
    return merged_config


class Settings(BaseSettings):
    """Application settings.

    Environment variables (and .env) take precedence over YAML values, which
    take precedence over the defaults below.
    """

    model_config = SettingsConfigDict(
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === SECRETS (from .env) ===

    postgres_password: SecretStr | None = Field(
        default=None, description="PostgreSQL password (from .env, optional)"
    )

    # === DELIVERY ===

    dedup_window_minutes: int = Field(
        default=DEFAULT_DEDUP_WINDOW_MINUTES,
        gt=0,
        description="Suppression window for an accepted notification",
    )
    max_retries: int = Field(
        default=DEFAULT_MAX_RETRIES,
        ge=1,
        description="Maximum transport attempts per logical send (first try included)",
    )
    retry_delay_ms: int = Field(
        default=DEFAULT_RETRY_DELAY_MS,
        ge=0,
        description="Base backoff delay before the first retry",
    )
    max_retry_delay_ms: int = Field(
        default=DEFAULT_MAX_RETRY_DELAY_MS,
        ge=0,
        description="Upper bound for a single backoff delay",
    )
    timeout_ms: int = Field(
        default=DEFAULT_TIMEOUT_MS,
        gt=0,
        description="Deadline for one logical send, retries included",
    )
    dedup_key_scope: Literal["recipient_content", "recipient"] = Field(
        default=KEY_SCOPE_RECIPIENT_CONTENT,
        description="Which parts of a notification define its fingerprint",
    )
    dedup_payload_fields: dict[str, list[str]] = Field(
        default_factory=lambda: {
            name: list(fields) for name, fields in DEFAULT_DEDUP_PAYLOAD_FIELDS.items()
        },
        description="Dedup-relevant payload fields per notification type",
    )

    # === CLEANUP ===

    retention_days: int = Field(
        default=DEFAULT_RETENTION_DAYS,
        ge=1,
        description="Age after which send attempts and dedup logs are pruned",
    )
    cleanup_interval_minutes: int = Field(
        default=DEFAULT_CLEANUP_INTERVAL_MINUTES,
        gt=0,
        description="Interval between cleanup sweeps when no run hour is set",
    )
    cleanup_run_at_hour: int | None = Field(
        default=CLEANUP_RUN_AT_HOUR_DEFAULT,
        ge=0,
        le=23,
        description="Local hour for the daily cleanup sweep (None = use interval)",
    )
    cleanup_timezone: str = Field(
        default="UTC", description="Timezone used to resolve cleanup_run_at_hour"
    )

    # === REPORTING ===

    report_window_hours: int = Field(
        default=DEFAULT_REPORT_WINDOW_HOURS,
        gt=0,
        description="Default look-back window for delivery statistics",
    )
    log_listing_limit: int = Field(
        default=DEFAULT_LOG_LISTING_LIMIT,
        gt=0,
        description="Default number of rows returned by listings",
    )

    # === DATABASE ===

    database_type: Literal["sqlite", "postgres"] = Field(
        default="sqlite", description="Database backend: sqlite or postgres"
    )
    db_path: str = Field(
        default="data/notifications.db", description="SQLite database path"
    )
    sqlite_busy_timeout_seconds: float = Field(
        default=SQLITE_BUSY_TIMEOUT_SECONDS_DEFAULT,
        gt=0,
        description="How long a SQLite writer waits for the database lock",
    )
    postgres_host: str = Field(default="localhost", description="PostgreSQL host")
    postgres_port: int = Field(default=5432, description="PostgreSQL port")
    postgres_database: str = Field(
        default="notifications", description="PostgreSQL database name"
    )
    postgres_user: str = Field(default="postgres", description="PostgreSQL user")
    postgres_min_connections: int = Field(
        default=POSTGRES_MIN_CONNECTIONS_DEFAULT,
        description="Minimum pooled PostgreSQL connections",
    )
    postgres_max_connections: int = Field(
        default=POSTGRES_MAX_CONNECTIONS_DEFAULT,
        description="Maximum pooled PostgreSQL connections",
    )
    postgres_statement_timeout_ms: int = Field(
        default=POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT,
        description="Statement timeout applied to pooled connections",
    )
    postgres_connect_timeout_seconds: int = Field(
        default=POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT,
        description="Connection timeout for PostgreSQL",
    )
    postgres_application_name: str = Field(
        default=POSTGRES_APPLICATION_NAME_DEFAULT,
        description="application_name reported to PostgreSQL",
    )
    postgres_ssl_mode: str | None = Field(
        default=None, description="Optional sslmode for PostgreSQL connections"
    )

    # === LOGGING ===

    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=False, description="Render logs as JSON")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode="after")
    def _check_env_delivery_limits(self) -> "Settings":
        _check_delivery_limits(self)
        return self

    def __init__(self, **data: Any):
        """Initialize settings with auto-loaded configs from all YAML files."""
        config = load_all_configs()

        super().__init__(**data)
        self._apply_yaml_defaults(config)
        _check_delivery_limits(self)

    def _apply_yaml_defaults(self, config: dict[str, Any]) -> None:
        """Apply YAML-sourced defaults without overriding env-provided values."""

        fields_from_env = set(self.model_fields_set)

        def _assign(field_name: str, value: Any) -> None:
            if value is None:
                return
            if field_name in fields_from_env:
                return

            object.__setattr__(self, field_name, value)
            self.model_fields_set.add(field_name)

        delivery_config = config.get("delivery") or {}
        _assign("dedup_window_minutes", delivery_config.get("dedup_window_minutes"))
        _assign("max_retries", delivery_config.get("max_retries"))
        _assign("retry_delay_ms", delivery_config.get("retry_delay_ms"))
        _assign("max_retry_delay_ms", delivery_config.get("max_retry_delay_ms"))
        _assign("timeout_ms", delivery_config.get("timeout_ms"))
        _assign("dedup_key_scope", delivery_config.get("dedup_key_scope"))

        payload_fields = delivery_config.get("payload_fields")
        if isinstance(payload_fields, dict):
            merged_fields = dict(self.dedup_payload_fields)
            merged_fields.update(
                {str(name): list(fields) for name, fields in payload_fields.items()}
            )
            _assign("dedup_payload_fields", merged_fields)

        cleanup_config = config.get("cleanup") or {}
        _assign("retention_days", cleanup_config.get("retention_days"))
        _assign("cleanup_interval_minutes", cleanup_config.get("interval_minutes"))
        if "run_at_hour" in cleanup_config and (
            "cleanup_run_at_hour" not in fields_from_env
        ):
            object.__setattr__(
                self, "cleanup_run_at_hour", cleanup_config["run_at_hour"]
            )
            self.model_fields_set.add("cleanup_run_at_hour")
        _assign("cleanup_timezone", cleanup_config.get("timezone"))

        reporting_config = config.get("reporting") or {}
        _assign("report_window_hours", reporting_config.get("window_hours"))
        _assign("log_listing_limit", reporting_config.get("listing_limit"))

        database_config = config.get("database") or {}
        _assign("database_type", database_config.get("type"))
        _assign("db_path", database_config.get("path"))
        _assign(
            "sqlite_busy_timeout_seconds",
            database_config.get("sqlite_busy_timeout_seconds"),
        )

        postgres_config = database_config.get("postgres") or {}
        _assign("postgres_host", postgres_config.get("host"))
        _assign("postgres_port", postgres_config.get("port"))
        _assign("postgres_database", postgres_config.get("database"))
        _assign("postgres_user", postgres_config.get("user"))
        _assign("postgres_min_connections", postgres_config.get("min_connections"))
        _assign("postgres_max_connections", postgres_config.get("max_connections"))
        _assign(
            "postgres_statement_timeout_ms",
            postgres_config.get("statement_timeout_ms"),
        )
        _assign(
            "postgres_connect_timeout_seconds",
            postgres_config.get("connect_timeout_seconds"),
        )
        _assign("postgres_application_name", postgres_config.get("application_name"))
        _assign("postgres_ssl_mode", postgres_config.get("ssl_mode"))

        logging_config = config.get("logging") or {}
        level = logging_config.get("level")
        _assign("log_level", str(level).upper() if level else None)
        _assign("log_json", logging_config.get("json"))

    @property
    def dedup_window(self) -> timedelta:
        return timedelta(minutes=self.dedup_window_minutes)

    def retention_policy(self) -> RetentionPolicy:
        return RetentionPolicy(retention_days=self.retention_days)


def _check_delivery_limits(settings: Settings) -> None:
    """Reject combinations that would break suppression or backoff.

    Raises:
        ValueError: If the send deadline outlives the dedup window or the
            backoff cap is below the base delay
    """
    window_ms = settings.dedup_window_minutes * 60_000
    if settings.timeout_ms > window_ms:
        raise ValueError(
            f"timeout_ms ({settings.timeout_ms}) must not exceed the dedup window "
            f"({window_ms} ms)"
        )
    if settings.max_retry_delay_ms < settings.retry_delay_ms:
        raise ValueError(
            "max_retry_delay_ms must be greater than or equal to retry_delay_ms"
        )


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create global settings instance.

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings instance (used by tests and reloads)."""
    global _settings
    _settings = None
