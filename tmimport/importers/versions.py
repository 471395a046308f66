"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Version snapshots for created cases and sessions.

A snapshot freezes the names of everything the record points at, so the
history view still reads correctly after a project, template or user is
renamed. Snapshots are written in the same transaction as the record.
"""

from collections.abc import Iterable
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from tmimport.core.db_models import (
    CaseFieldValue,
    CaseFieldVersionValue,
    Configuration,
    Milestone,
    Project,
    RepositoryCase,
    RepositoryCaseVersion,
    RepositoryFolder,
    SessionVersion,
    Step,
    Template,
    TemplateField,
    User,
    Workflow,
)
from tmimport.core.db_models import Session as TestSession
from tmimport.progress import NameCache

IMPORT_CREATOR_NAME = "Automation Import"


class SnapshotNames:
    """Destination names by id, memoized for the whole run in the job's NameCache."""

    def __init__(self, cache: NameCache, session: Session):
        self.cache = cache
        self.session = session

    def _name(self, kind: str, model: Any, key: Any, column: str = "name") -> str | None:
        if key is None:
            return None

        def load(record_id: Any) -> str | None:
            record = self.session.get(model, record_id)
            return getattr(record, column) if record is not None else None

        return self.cache.get_or_load(kind, key, load)

    def project(self, project_id: int) -> str:
        return self._name("project", Project, project_id) or f"Project {project_id}"

    def template(self, template_id: int) -> str:
        return self._name("template", Template, template_id) or f"Template {template_id}"

    def workflow(self, workflow_id: int) -> str:
        return self._name("workflow", Workflow, workflow_id) or f"Workflow {workflow_id}"

    def folder(self, folder_id: int) -> str:
        return self._name("folder", RepositoryFolder, folder_id) or ""

    def milestone(self, milestone_id: int | None) -> str | None:
        return self._name("milestone", Milestone, milestone_id)

    def configuration(self, configuration_id: int | None) -> str | None:
        return self._name("configuration", Configuration, configuration_id)

    def user(self, user_id: str | None) -> str:
        if not user_id:
            return IMPORT_CREATOR_NAME
        return self._name("user", User, user_id) or user_id

    def assignee(self, user_id: str | None) -> str | None:
        return self.user(user_id) if user_id else None


def _steps_snapshot(steps: Iterable[Step]) -> list[dict[str, Any]] | None:
    snapshot = [{"step": step.step, "expectedResult": step.expected_result} for step in steps]
    return snapshot or None


def snapshot_case(
    cache: NameCache, session: Session, case: RepositoryCase, steps: Iterable[Step] = ()
) -> RepositoryCaseVersion:
    """Write the case's current version and copy its field values into it by field name."""
    names = SnapshotNames(cache, session)
    version = RepositoryCaseVersion(
        repository_case_id=case.id,
        version=case.current_version or 1,
        project_id=case.project_id,
        project_name=names.project(case.project_id),
        repository_id=case.repository_id,
        folder_id=case.folder_id,
        folder_name=names.folder(case.folder_id),
        template_id=case.template_id,
        template_name=names.template(case.template_id),
        state_id=case.state_id,
        state_name=names.workflow(case.state_id),
        name=case.name,
        class_name=case.class_name,
        source=case.source,
        automated=bool(case.automated),
        estimate=case.estimate,
        order=case.order,
        steps=_steps_snapshot(steps),
        tags=[],
        creator_id=case.created_by_id,
        creator_name=names.user(case.created_by_id),
        created_at=case.created_at,
    )
    session.add(version)
    session.flush()

    rows = session.execute(
        select(CaseFieldValue.value, TemplateField.display_name, TemplateField.system_name)
        .join(TemplateField, TemplateField.id == CaseFieldValue.field_id)
        .where(CaseFieldValue.case_id == case.id)
        .order_by(CaseFieldValue.id)
    ).all()
    if rows:
        session.add_all(
            CaseFieldVersionValue(version_id=version.id, field=display_name or system_name, value=value)
            for value, display_name, system_name in rows
        )
        session.flush()
    return version


def snapshot_session(cache: NameCache, session: Session, test_session: TestSession) -> SessionVersion:
    names = SnapshotNames(cache, session)
    version = SessionVersion(
        session_id=test_session.id,
        version=1,
        project_id=test_session.project_id,
        project_name=names.project(test_session.project_id),
        name=test_session.name,
        template_id=test_session.template_id,
        template_name=names.template(test_session.template_id),
        state_id=test_session.state_id,
        state_name=names.workflow(test_session.state_id),
        config_id=test_session.configuration_id,
        configuration_name=names.configuration(test_session.configuration_id),
        milestone_id=test_session.milestone_id,
        milestone_name=names.milestone(test_session.milestone_id),
        assigned_to_id=test_session.assigned_to_id,
        assigned_to_name=names.assignee(test_session.assigned_to_id),
        created_by_id=test_session.created_by_id,
        created_by_name=names.user(test_session.created_by_id),
        estimate=test_session.estimate,
        forecast=test_session.forecast,
        elapsed=test_session.elapsed,
        note=test_session.note,
        mission=test_session.mission,
        is_completed=bool(test_session.is_completed),
        completed_at=test_session.completed_at,
        created_at=test_session.created_at,
    )
    session.add(version)
    session.flush()
    return version
