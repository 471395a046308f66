"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
SQLAlchemy-based database manager.

This module owns engine creation, session scoping and the bounded transactions
the importers run their chunks in. It supports both SQLite (file or in-memory)
and PostgreSQL.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

from sqlalchemy import Engine, create_engine, event, inspect, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from tmimport.core.config import DatabaseConfig
from tmimport.core.db_models import Base

logger = logging.getLogger(__name__)

# Type variable for ORM models
T = TypeVar("T")


class SQLDatabaseManager:
    """
    SQLAlchemy-based database manager for SQL operations.

    This class provides methods for managing database connections, schema, and
    transactions using SQLAlchemy ORM. It supports both SQLite and PostgreSQL.
    """

    def __init__(self, config: DatabaseConfig | None = None):
        """
        Initialize the database manager.

        Args:
            config: Database configuration
        """
        self.config = config or DatabaseConfig()
        self._engine = self._create_engine()
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def is_postgresql(self) -> bool:
        return self.config.db_type == "postgresql"

    def _create_engine(self) -> Engine:
        """
        Create a SQLAlchemy engine based on the configuration.

        Returns:
            SQLAlchemy engine
        """
        conn_str = self.config.get_connection_string()
        engine_kwargs: dict[str, Any] = {
            "echo": self.config.echo,
        }

        if self.config.db_type == "postgresql":
            engine_kwargs.update(
                {
                    "poolclass": QueuePool,
                    "pool_size": self.config.pool_size,
                    "max_overflow": self.config.max_overflow,
                    "pool_pre_ping": True,
                    "pool_recycle": 3600,
                }
            )
        elif self.config.is_memory:
            # One shared connection, otherwise every session sees an empty database
            engine_kwargs.update(
                {
                    "poolclass": StaticPool,
                    "connect_args": {"check_same_thread": False},
                }
            )

        engine = create_engine(conn_str, **engine_kwargs)

        if self.config.db_type == "sqlite":
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)

        return engine

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """
        Context manager for database sessions.

        The session commits when the block exits normally and rolls back when
        it raises; it is closed either way.

        Yields:
            SQLAlchemy session object
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            session.close()

    @contextmanager
    def transaction(self, timeout_ms: int | None = None) -> Iterator[Session]:
        """
        Run one bounded transaction.

        On PostgreSQL the timeout is applied with ``SET LOCAL statement_timeout``
        so that it only covers this transaction. SQLite has no per-statement
        timeout; the value is ignored there.

        Args:
            timeout_ms: Statement timeout in milliseconds

        Yields:
            SQLAlchemy session bound to the transaction
        """
        with self.get_session() as session:
            if timeout_ms and self.is_postgresql:
                session.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))
            yield session

    def initialize_database(self) -> None:
        """
        Create all database tables if they don't exist.
        """
        try:
            logger.info("Initializing database schema...")
            Base.metadata.create_all(self._engine)
            logger.info("Database schema initialized successfully")
        except SQLAlchemyError as e:
            logger.error(f"Error initializing database schema: {e}")
            raise

    def drop_all_tables(self) -> None:
        """
        Drop all tables from the database.

        WARNING: This will delete all data in the database.
        """
        try:
            logger.warning("Dropping all database tables...")
            Base.metadata.drop_all(self._engine)
            logger.warning("All database tables dropped")
        except SQLAlchemyError as e:
            logger.error(f"Error dropping database tables: {e}")
            raise

    def has_schema(self) -> bool:
        """Whether the pipeline tables exist in the target database."""
        return inspect(self._engine).has_table("import_jobs")

    def get_or_create(
        self, session: Session, model: type[T], create_kwargs: dict[str, Any], **kwargs
    ) -> tuple[T, bool]:
        """
        Get an existing database object or create if it doesn't exist.

        Jobs are processed by a single worker, so there is no insert race to
        recover from here; an IntegrityError propagates to the caller.

        Args:
            session: SQLAlchemy session
            model: Model class
            create_kwargs: Arguments to use when creating a new instance
            **kwargs: Filter arguments to find existing instance

        Returns:
            Tuple of (instance, created) where created is True if a new instance was created
        """
        instance = session.scalars(select(model).filter_by(**kwargs).limit(1)).first()
        if instance:
            return instance, False

        instance = model(**{**kwargs, **create_kwargs})
        session.add(instance)
        session.flush()
        return instance, True

    def close(self) -> None:
        """Dispose of the engine and its pooled connections."""
        self._engine.dispose()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
