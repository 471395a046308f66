"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Configuration management for TMIMPORT.

This module provides a central location for all configuration settings. It
handles environment variables, default values, and validation of configuration
parameters for the database, logging, and the importer tuning knobs.
"""

import logging
import os
from pathlib import Path
from typing import Any, ClassVar, Never

from pydantic import BaseModel, Field, field_validator, model_validator

# Configure logging
logger = logging.getLogger(__name__)


class BaseConfig(BaseModel):
    """Base configuration class with common functionality."""

    # Class variable to store environment variable prefixes
    ENV_PREFIX: ClassVar[str] = "TMIMPORT_"

    @classmethod
    def from_env(cls, **overrides) -> Never:
        """
        Create a configuration instance from environment variables.

        Args:
        ----
            **overrides: Key-value pairs that override environment variables

        Returns:
        -------
            An instance of the configuration class

        """
        raise NotImplementedError("Subclasses must implement from_env method")

    @classmethod
    def get_env_var(cls, key: str, default: Any = None) -> Any:
        """
        Get an environment variable with the class prefix.

        Args:
        ----
            key: Key name without prefix
            default: Default value if environment variable is not found

        Returns:
        -------
            The environment variable value or default

        """
        env_key = f"{cls.ENV_PREFIX}{key.upper()}"
        return os.environ.get(env_key, default)

    @classmethod
    def get_positive_int(cls, key: str, default: int) -> int:
        """Read a positive integer setting, falling back to the default on bad input."""
        raw = cls.get_env_var(key)
        if raw is None:
            return default
        try:
            value = int(raw)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric value '{raw}' for {cls.ENV_PREFIX}{key.upper()}")
            return default
        return value if value > 0 else default


class LoggingConfig(BaseConfig):
    """Configuration for logging settings."""

    level: str = Field(
        default_factory=lambda: os.environ.get("TMIMPORT_LOG_LEVEL", "INFO"),
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    use_rich: bool = Field(
        default=True,
        description="Whether to use rich for logging formatting",
    )
    log_file: str | None = Field(
        default=None,
        description="Path to the log file (None for console-only logging)",
    )
    json_format: bool = Field(
        default=False,
        description="Whether to use JSON format for logs",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, value):
        """Validate that the log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        value = value.upper()
        if value not in valid_levels:
            logger.warning(f"Invalid log level '{value}', defaulting to INFO")
            return "INFO"
        return value

    @classmethod
    def from_env(cls, **overrides) -> "LoggingConfig":
        """Create a logging configuration from environment variables."""
        config = {
            "level": cls.get_env_var("LOG_LEVEL", "INFO"),
            "use_rich": cls.get_env_var("LOG_USE_RICH", "true").lower() == "true",
            "log_file": cls.get_env_var("LOG_FILE", None),
            "json_format": cls.get_env_var("LOG_JSON", "false").lower() == "true",
        }

        # Override with any directly provided values
        config.update(overrides)

        return cls(**config)

    def get_log_level_int(self) -> int:
        """Get the numeric logging level."""
        return getattr(logging, self.level)

    def configure_logging(self, debug: bool = False) -> None:
        """
        Configure logging based on the settings.

        Args:
        ----
            debug: Whether to force debug mode

        """
        from tmimport.core.logging import configure_logging as configure_contextual_logging

        configure_contextual_logging(
            level=logging.DEBUG if debug else self.get_log_level_int(),
            log_file=self.log_file,
            json_format=self.json_format,
            include_timestamp=True,
            use_rich=self.use_rich,
            debug=debug,
        )


class DatabaseConfig(BaseConfig):
    """Configuration for the staging and destination database."""

    db_type: str = Field(
        default="sqlite",
        description="Database type (sqlite, postgresql)",
    )
    db_path: str | None = Field(
        default=None,
        description="Path to SQLite database file, or ':memory:'",
    )
    host: str | None = Field(default=None, description="Database host (for PostgreSQL)")
    port: int | None = Field(default=None, description="Database port (for PostgreSQL)")
    username: str | None = Field(default=None, description="Database username (for PostgreSQL)")
    password: str | None = Field(default=None, description="Database password (for PostgreSQL)")
    database: str | None = Field(default=None, description="Database name (for PostgreSQL)")
    pool_size: int = Field(
        default=5,
        description="Connection pool size",
    )
    max_overflow: int = Field(
        default=10,
        description="Maximum number of connections to overflow",
    )
    echo: bool = Field(
        default=False,
        description="Whether to echo SQL statements",
    )

    @model_validator(mode="after")
    def validate_db_config(self):
        """Validate database configuration based on the database type."""
        if self.db_type == "sqlite" and not self.db_path:
            self.db_path = os.path.join(os.getcwd(), "tmimport_data.db")

        elif self.db_type == "postgresql":
            if not all([self.host, self.username, self.database]):
                raise ValueError("Host, username, and database name are required for PostgreSQL")

        elif self.db_type not in ["sqlite", "postgresql"]:
            raise ValueError(f"Unsupported database type: {self.db_type}")

        return self

    @classmethod
    def from_env(cls, **overrides) -> "DatabaseConfig":
        """Create a database configuration from environment variables."""
        db_type = cls.get_env_var("DB_TYPE", "sqlite").lower()

        config = {
            "db_type": db_type,
            "pool_size": int(cls.get_env_var("DB_POOL_SIZE", "5")),
            "max_overflow": int(cls.get_env_var("DB_MAX_OVERFLOW", "10")),
            "echo": cls.get_env_var("DB_ECHO", "false").lower() == "true",
        }

        if db_type == "sqlite":
            config["db_path"] = cls.get_env_var("DB_PATH")
        elif db_type == "postgresql":
            config.update(
                {
                    "host": cls.get_env_var("PG_HOST"),
                    "port": int(cls.get_env_var("PG_PORT", "5432")),
                    "username": cls.get_env_var("PG_USER"),
                    "password": cls.get_env_var("PG_PASSWORD"),
                    "database": cls.get_env_var("PG_DATABASE"),
                },
            )

        # Override with any directly provided values
        config.update(overrides)

        return cls(**config)

    @property
    def is_memory(self) -> bool:
        """Whether this configuration points at an in-memory SQLite database."""
        return self.db_type == "sqlite" and self.db_path == ":memory:"

    def get_connection_string(self) -> str:
        """
        Get the database connection string based on the configuration.

        Returns
        -------
            Database connection string for SQLAlchemy

        """
        if self.db_type == "sqlite":
            if self.is_memory:
                return "sqlite:///:memory:"
            db_path = Path(self.db_path) if self.db_path else Path("tmimport_data.db")
            # Ensure parent directory exists
            db_path.parent.mkdir(parents=True, exist_ok=True)
            return f"sqlite:///{db_path}"
        if self.db_type == "postgresql":
            if not all([self.host, self.username, self.database]):
                raise ValueError("Host, username, and database name are required for PostgreSQL")
            port = self.port or 5432
            password_part = f":{self.password}" if self.password else ""
            return f"postgresql://{self.username}{password_part}@{self.host}:{port}/{self.database}"
        raise ValueError(f"Unsupported database type: {self.db_type}")


class ImportConfig(BaseConfig):
    """
    Tuning knobs for the analyze and import phases.

    Chunk sizes bound the number of rows written inside one transaction for the
    bulk importers; the timeouts bound how long one such transaction may run.
    """

    staging_batch_size: int = Field(default=1000, gt=0, description="Rows per staging insert batch")
    sample_row_limit: int = Field(default=5, ge=0, description="Sample rows kept per dataset")
    progress_update_interval: int = Field(
        default=500, gt=0, description="Rows between progress persists in hot loops"
    )
    transaction_timeout_ms: int = Field(default=15 * 60 * 1000, gt=0)
    automation_transaction_timeout_ms: int = Field(default=45 * 60 * 1000, gt=0)
    repository_folder_transaction_timeout_ms: int = Field(default=2 * 60 * 1000, gt=0)
    repository_case_chunk_size: int = Field(default=500, gt=0)
    test_run_case_chunk_size: int = Field(default=500, gt=0)
    automation_case_chunk_size: int = Field(default=500, gt=0)
    automation_run_chunk_size: int = Field(default=500, gt=0)
    automation_run_test_chunk_size: int = Field(default=2000, gt=0)
    automation_run_field_chunk_size: int = Field(default=500, gt=0)
    automation_run_link_chunk_size: int = Field(default=500, gt=0)
    automation_run_test_field_chunk_size: int = Field(default=500, gt=0)
    automation_run_tag_chunk_size: int = Field(default=500, gt=0)
    test_run_result_chunk_size: int = Field(default=2000, gt=0)
    issue_relationship_chunk_size: int = Field(default=1000, gt=0)

    @classmethod
    def from_env(cls, **overrides) -> "ImportConfig":
        """Create the importer configuration from TMIMPORT_* environment variables."""
        config = {
            name: cls.get_positive_int(name, field.default)
            for name, field in cls.model_fields.items()
        }
        config.update(overrides)
        return cls(**config)


class AppConfig(BaseConfig):
    """Main application configuration that aggregates all other configurations."""

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    database: DatabaseConfig = Field(
        default_factory=DatabaseConfig,
        description="Database configuration",
    )
    importer: ImportConfig = Field(
        default_factory=ImportConfig,
        description="Import pipeline tuning",
    )
    debug: bool = Field(
        default=False,
        description="Debug mode flag",
    )
    app_name: str = Field(
        default="TMIMPORT",
        description="Application name",
    )

    @classmethod
    def from_env(cls, **overrides) -> "AppConfig":
        """Create an application configuration from environment variables."""
        config = {
            "logging": LoggingConfig.from_env(),
            "database": DatabaseConfig.from_env(),
            "importer": ImportConfig.from_env(),
            "debug": cls.get_env_var("DEBUG", "false").lower() == "true",
            "app_name": cls.get_env_var("APP_NAME", "TMIMPORT"),
        }

        nested = {"logging": LoggingConfig, "database": DatabaseConfig, "importer": ImportConfig}
        for key, value in overrides.items():
            if key in nested and isinstance(value, dict):
                # For nested configs, accept either raw dict or instantiated objects
                config[key] = nested[key](**value)
            elif value is not None:
                config[key] = value

        return cls(**config)

    def configure_logging(self) -> None:
        """Configure logging based on the settings."""
        self.logging.configure_logging(debug=self.debug)


# Global app configuration
_app_config = None


def get_app_config() -> AppConfig:
    """
    Get the global application configuration.

    Returns
    -------
        The application configuration instance

    """
    global _app_config
    if _app_config is None:
        _app_config = AppConfig.from_env()
    return _app_config


def init_app_config(config: AppConfig = None, **kwargs) -> AppConfig:
    """
    Initialize the global application configuration.

    Args:
    ----
        config: An existing AppConfig instance
        **kwargs: Key-value pairs for creating a new AppConfig

    Returns:
    -------
        The application configuration instance

    """
    global _app_config
    _app_config = config if config is not None else AppConfig.from_env(**kwargs)
    return _app_config
