"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""Exploratory sessions, their results, tags and custom values."""

import logging
from collections import defaultdict

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from tmimport.core.db_models import Session as TestSession
from tmimport.core.db_models import SessionFieldValue, SessionResult, Template, session_tags
from tmimport.destination import find_first, get_default_workflow, get_untested_status
from tmimport.exceptions import ConfigurationError
from tmimport.importers.base import EntitySummary, ImportRuntime, ensure_link
from tmimport.importers.versions import snapshot_session
from tmimport.normalization import (
    microseconds_to_seconds,
    to_bool,
    to_date,
    to_int,
    to_rich_text_doc,
    to_str,
)
from tmimport.staging import StagedRow

logger = logging.getLogger("tmimport.importers.sessions")

EXPLORATORY_TEMPLATE_NAME = "Exploratory"


def _default_session_template(session: Session) -> int | None:
    template = find_first(session, Template, name=EXPLORATORY_TEMPLATE_NAME)
    if template is None:
        template = session.scalars(
            select(Template)
            .where(or_(Template.is_default.is_(True), Template.is_enabled.is_(True)))
            .order_by(Template.is_default.desc(), Template.id)
            .limit(1)
        ).first()
    return template.id if template is not None else None


def import_sessions(runtime: ImportRuntime) -> EntitySummary:
    """
    Create or reuse sessions by ``(project, name)``.

    The template falls back to "Exploratory" (or the default template) and the
    state to the first SESSIONS workflow. Estimates, forecasts and elapsed
    times arrive in microseconds and are stored in seconds.
    """
    summary = EntitySummary("sessions")
    id_maps = runtime.id_maps
    defaults: dict[str, int | None] = {}

    def handle(session: Session, row: StagedRow) -> None:
        record = row.data
        source_id = to_int(record.get("id"))
        project_source_id = to_int(record.get("project_id"))
        project_id = id_maps.projects.get(project_source_id)
        if source_id is None or project_id is None:
            runtime.skip(
                summary,
                "Skipping session due to missing project mapping",
                sourceId=source_id,
                projectSourceId=project_source_id,
            )
            return

        if not defaults:
            workflow = get_default_workflow(session, "SESSIONS")
            defaults["template"] = _default_session_template(session)
            defaults["state"] = workflow.id if workflow is not None else None

        template_source_id = to_int(record.get("template_id"))
        template_id = id_maps.templates.get(template_source_id) or defaults["template"]
        if template_id is None:
            runtime.skip(
                summary,
                "Skipping session due to missing template",
                sourceId=source_id,
                templateSourceId=template_source_id,
            )
            return

        state_source_id = to_int(record.get("state_id"))
        state_id = id_maps.workflows.get(state_source_id) or defaults["state"]
        if state_id is None:
            runtime.skip(
                summary,
                "Skipping session due to missing workflow state",
                sourceId=source_id,
                stateSourceId=state_source_id,
            )
            return

        name = to_str(record.get("name")) or f"Imported Session {source_id}"
        existing = find_first(session, TestSession, project_id=project_id, name=name)
        if existing is not None:
            id_maps.sessions[source_id] = existing.id
            runtime.mapped(summary)
            return

        is_completed = to_bool(record.get("is_closed"))
        test_session = TestSession(
            project_id=project_id,
            template_id=template_id,
            state_id=state_id,
            milestone_id=id_maps.milestones.get(to_int(record.get("milestone_id"))),
            configuration_id=id_maps.configurations.get(to_int(record.get("config_id"))),
            assigned_to_id=runtime.mapped_user(record.get("assignee_id")),
            name=name,
            note=to_rich_text_doc(record.get("note")),
            mission=to_rich_text_doc(record.get("custom_mission")),
            estimate=microseconds_to_seconds(record.get("estimate")),
            forecast=microseconds_to_seconds(record.get("forecast")),
            elapsed=microseconds_to_seconds(record.get("elapsed")),
            is_completed=is_completed,
            completed_at=to_date(record.get("closed_at")) if is_completed else None,
            created_by_id=runtime.resolve_user(session, record.get("created_by")),
            created_at=to_date(record.get("created_at")),
        )
        session.add(test_session)
        session.flush()
        snapshot_session(runtime.context.name_cache, session, test_session)
        id_maps.sessions[source_id] = test_session.id
        runtime.created(summary)

    runtime.run_chunks(
        "sessions",
        runtime.staged_rows("sessions"),
        runtime.policy(runtime.config.staging_batch_size),
        handle,
    )
    if summary.total == 0 and runtime.dataset_count("sessions") == 0:
        runtime.log("No sessions dataset found; skipping session import.")
    return summary


def import_session_results(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("sessionResults")
    id_maps = runtime.id_maps
    if runtime.dataset_count("session_results") == 0:
        return summary

    def load_untested(session: Session) -> int:
        status = get_untested_status(session)
        if status is None:
            raise ConfigurationError("Default 'untested' status not found in workspace", entity_type="sessionResults")
        return status.id

    untested_id = runtime.run_in_transaction(load_untested)

    def handle(session: Session, row: StagedRow) -> None:
        record = row.data
        source_id = to_int(record.get("id"))
        session_source_id = to_int(record.get("session_id"))
        session_id = id_maps.sessions.get(session_source_id)
        if source_id is None or session_id is None:
            runtime.skip(
                summary,
                "Skipping session result - session not found",
                sourceId=source_id,
                sourceSessionId=session_source_id,
            )
            return

        existing = runtime.remembered_target(session, "sessionResults", source_id, SessionResult)
        if existing is not None:
            id_maps.session_results[source_id] = existing
            runtime.mapped(summary)
            return

        result = SessionResult(
            session_id=session_id,
            status_id=id_maps.statuses.get(to_int(record.get("status_id"))) or untested_id,
            result_data=to_rich_text_doc(record.get("comment")),
            elapsed=microseconds_to_seconds(record.get("elapsed")),
            created_by_id=runtime.resolve_user(session, record.get("created_by")),
            created_at=to_date(record.get("created_at")),
        )
        session.add(result)
        session.flush()
        runtime.remember(session, "sessionResults", source_id, result.id, "session_result")
        id_maps.session_results[source_id] = result.id
        runtime.created(summary)

    runtime.run_chunks(
        "sessionResults",
        runtime.staged_rows("session_results"),
        runtime.policy(runtime.config.staging_batch_size),
        handle,
    )
    return summary


def import_session_tags(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("sessionTags")
    id_maps = runtime.id_maps

    def handle(session: Session, row: StagedRow) -> None:
        session_id = id_maps.sessions.get(to_int(row.data.get("session_id")))
        tag_id = id_maps.tags.get(to_int(row.data.get("tag_id")))
        if session_id is None or tag_id is None:
            runtime.skip(
                summary,
                "Skipping session tag with unmapped session or tag",
                sessionSourceId=to_int(row.data.get("session_id")),
                tagSourceId=to_int(row.data.get("tag_id")),
            )
            return
        if ensure_link(session, session_tags, session_id=session_id, tag_id=tag_id):
            runtime.created(summary)
        else:
            runtime.mapped(summary)

    runtime.run_chunks(
        "sessionTags",
        runtime.staged_rows("session_tags"),
        runtime.policy(runtime.config.staging_batch_size),
        handle,
    )
    return summary


def import_session_values(runtime: ImportRuntime) -> EntitySummary:
    """
    Store multi-select session values as a list of option names.

    The export has one row per selected value; rows are grouped by
    ``(session, field)`` first so each group becomes one stored value.
    """
    summary = EntitySummary("sessionValues")
    id_maps = runtime.id_maps

    grouped: dict[tuple[int, int], list[int]] = defaultdict(list)
    for row in runtime.staged_rows("session_values"):
        session_source_id = to_int(row.data.get("session_id"))
        field_source_id = to_int(row.data.get("field_id"))
        value_id = to_int(row.data.get("value_id"))
        if session_source_id is None or field_source_id is None or value_id is None:
            continue
        grouped[(session_source_id, field_source_id)].append(value_id)

    if not grouped:
        return summary
    runtime.context.initialize_entity_progress("sessionValues", len(grouped))

    def work(session: Session) -> None:
        for (session_source_id, field_source_id), value_ids in grouped.items():
            session_id = id_maps.sessions.get(session_source_id)
            field_id = id_maps.template_fields.get(field_source_id)
            names = [name for name in map(id_maps.field_value_name, value_ids) if name]
            if session_id is None or field_id is None or not names:
                runtime.skip(
                    summary,
                    "Skipping session value with unmapped session, field or values",
                    sessionSourceId=session_source_id,
                    fieldSourceId=field_source_id,
                )
                continue

            existing = find_first(session, SessionFieldValue, session_id=session_id, field_id=field_id)
            if existing is not None:
                existing.value = names
                runtime.mapped(summary)
            else:
                session.add(SessionFieldValue(session_id=session_id, field_id=field_id, value=names))
                runtime.created(summary)
        session.flush()

    runtime.run_in_transaction(work)
    return summary
