"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""Tests for the SQLAlchemy database manager and workspace seeding."""

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from tmimport.core.config import DatabaseConfig
from tmimport.core.db_manager import SQLDatabaseManager
from tmimport.core.db_models import Tag, Workflow
from tmimport.destination import (
    DEFAULT_COLOR_HEX,
    get_default_color,
    get_default_role,
    get_default_template,
    get_untested_status,
    seed_workspace_defaults,
)


@pytest.mark.db
class TestSQLDatabaseManager:
    def test_session_commits_on_success(self, db_manager):
        with db_manager.get_session() as session:
            session.add(Tag(name="smoke"))

        with db_manager.get_session() as session:
            assert session.scalar(select(func.count(Tag.id))) == 1

    def test_session_rolls_back_on_error(self, db_manager):
        with pytest.raises(RuntimeError):
            with db_manager.transaction() as session:
                session.add(Tag(name="smoke"))
                session.flush()
                raise RuntimeError("abort")

        with db_manager.get_session() as session:
            assert session.scalar(select(func.count(Tag.id))) == 0

    def test_get_or_create(self, db_manager):
        with db_manager.get_session() as session:
            first, created = db_manager.get_or_create(session, Tag, {}, name="smoke", is_deleted=False)
            again, created_again = db_manager.get_or_create(session, Tag, {}, name="smoke", is_deleted=False)

        assert created is True
        assert created_again is False
        assert first.id == again.id

    def test_integrity_errors_propagate(self, db_manager):
        with pytest.raises(IntegrityError):
            with db_manager.get_session() as session:
                session.add(Workflow(name="Broken", scope="CASES", workflow_type="DONE", icon_id=999, color_id=999))
                session.flush()

    def test_file_database(self, temp_db_path):
        manager = SQLDatabaseManager(DatabaseConfig(db_type="sqlite", db_path=str(temp_db_path)))
        assert manager.has_schema() is False
        manager.initialize_database()
        assert manager.has_schema() is True
        manager.drop_all_tables()
        assert manager.has_schema() is False
        manager.close()


@pytest.mark.db
class TestWorkspaceDefaults:
    def test_defaults_exist(self, db_manager):
        with db_manager.get_session() as session:
            assert get_default_color(session).hex_code == DEFAULT_COLOR_HEX
            assert get_untested_status(session).name == "Untested"
            assert get_default_role(session).name == "user"
            assert get_default_template(session).name == "Default Template"
            assert session.scalar(select(func.count(Workflow.id)).where(Workflow.is_default.is_(True))) == 3

    def test_seeding_twice_creates_nothing(self, db_manager):
        with db_manager.get_session() as session:
            assert seed_workspace_defaults(session) == {}
