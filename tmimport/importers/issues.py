"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""Issue trackers, issues and the links between issues and imported rows."""

import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy import Table
from sqlalchemy.orm import Session

from tmimport.core.db_models import (
    Integration,
    Issue,
    case_issues,
    result_issues,
    run_issues,
    session_issues,
    session_result_issues,
)
from tmimport.destination import find_first
from tmimport.importers.base import EntitySummary, ImportRuntime, ensure_link, require_mapped_target, require_name
from tmimport.mapping_config import build_id_map
from tmimport.normalization import to_int, to_str
from tmimport.staging import StagedRow

logger = logging.getLogger("tmimport.importers.issues")

IMPORTED_FROM = "testmo"

# Source tracker type -> destination provider
PROVIDER_BY_SOURCE_TYPE = {
    1: "JIRA",
    2: "GITHUB",
    3: "AZURE_DEVOPS",
    4: "JIRA",
}
DEFAULT_PROVIDER = "SIMPLE_URL"


def provider_for(provider: str | None, source_type: int | None) -> str:
    if provider:
        return provider
    return PROVIDER_BY_SOURCE_TYPE.get(source_type, DEFAULT_PROVIDER)


def build_external_url(provider: str, base_url: str | None, key: str) -> str | None:
    """
    Link to an issue in its tracker.

    A simple URL integration may carry an ``{issueId}`` placeholder; every
    other provider appends its own path to the base URL.
    """
    if not base_url:
        return None
    clean = base_url[:-1] if base_url.endswith("/") else base_url
    if provider == "JIRA":
        return f"{clean}/browse/{key}"
    if provider == "GITHUB":
        return f"{clean}/issues/{key}"
    if provider == "AZURE_DEVOPS":
        return f"{clean}/_workitems/edit/{key}"
    if provider == "SIMPLE_URL":
        if "{issueId}" in base_url:
            return base_url.replace("{issueId}", key)
        return f"{clean}/{key}"
    return None


def import_issue_targets(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("issueTargets")

    def work(session: Session) -> None:
        for source_id, entry in runtime.configuration.issue_targets.items():
            if entry.is_map:
                existing = require_mapped_target(
                    session, Integration, entry, source_id, "Issue target", "integration", "issueTargets"
                )
                runtime.resolve_entry(session, "issueTargets", source_id, entry, existing.id, "integration")
                runtime.mapped(summary)
                continue

            name = require_name(entry.name, "Issue target", source_id, "issueTargets")
            existing = find_first(session, Integration, name=name)
            if existing is not None:
                runtime.resolve_entry(
                    session, "issueTargets", source_id, entry, existing.id, "integration", name=existing.name
                )
                runtime.mapped(summary)
                continue

            integration = Integration(
                name=name,
                provider=provider_for(entry.provider, entry.testmo_type),
                auth_type="NONE",
                status="INACTIVE",
                settings={
                    "testmoSourceId": source_id,
                    "testmoType": entry.testmo_type,
                    "importedFrom": IMPORTED_FROM,
                },
            )
            session.add(integration)
            session.flush()
            logger.info(f"Created integration '{name}' ({integration.provider}) for issue target {source_id}")
            runtime.resolve_entry(
                session, "issueTargets", source_id, entry, integration.id, "integration", name=integration.name
            )
            runtime.created(summary)

    runtime.run_in_transaction(work)
    runtime.id_maps.integrations = build_id_map(runtime.configuration.issue_targets)
    return summary


def import_issues(runtime: ImportRuntime) -> EntitySummary:
    """
    Create issues, reusing one with the same external id in the same integration.

    The display id (e.g. ``PROJ-12``) is the issue's name, title, external id
    and key.
    """
    summary = EntitySummary("issues")
    id_maps = runtime.id_maps
    integrations: dict[int, tuple[str, str | None]] = {}

    def integration_info(session: Session, integration_id: int) -> tuple[str, str | None] | None:
        if integration_id not in integrations:
            integration = session.get(Integration, integration_id)
            if integration is None:
                return None
            settings = integration.settings if isinstance(integration.settings, Mapping) else {}
            integrations[integration_id] = (integration.provider, settings.get("baseUrl"))
        return integrations[integration_id]

    def handle(session: Session, row: StagedRow) -> None:
        record = row.data
        source_id = to_int(record.get("id"))
        target_source_id = to_int(record.get("target_id"))
        display_id = to_str(record.get("display_id"))
        if source_id is None or target_source_id is None or not display_id:
            runtime.skip(summary, "Skipping issue with missing id, target or display id", rowIndex=row.row_index)
            return
        integration_id = id_maps.integrations.get(target_source_id)
        if integration_id is None:
            runtime.skip(
                summary,
                "Skipping issue due to missing issue target mapping",
                sourceId=source_id,
                targetSourceId=target_source_id,
            )
            return

        existing = find_first(session, Issue, external_id=display_id, integration_id=integration_id)
        if existing is not None:
            id_maps.issues[source_id] = existing.id
            runtime.mapped(summary)
            return

        info = integration_info(session, integration_id)
        issue = Issue(
            integration_id=integration_id,
            project_id=id_maps.projects.get(to_int(record.get("project_id"))),
            name=display_id,
            title=display_id,
            external_id=display_id,
            external_key=display_id,
            external_url=build_external_url(info[0], info[1], display_id) if info else None,
            data={"testmoSourceId": source_id, "importedFrom": IMPORTED_FROM},
            created_by_id=runtime.fallback_creator(session),
        )
        session.add(issue)
        session.flush()
        id_maps.issues[source_id] = issue.id
        runtime.created(summary)

    runtime.run_chunks(
        "issues",
        runtime.staged_rows("issues"),
        runtime.policy(runtime.config.staging_batch_size),
        handle,
    )
    return summary


def import_milestone_issues(runtime: ImportRuntime) -> EntitySummary:
    """Milestones cannot hold issues in the destination; the rows are only counted."""
    summary = EntitySummary("milestoneIssues")
    count = runtime.dataset_count("milestone_issues")
    if count == 0:
        return summary
    summary.count("skippedNoRelation", count)
    rows = runtime.load_rows("milestone_issues")
    for row in rows:
        runtime.skip(
            summary,
            "Skipping milestone issue relationship; milestones have no issues relation in the destination",
            milestoneSourceId=to_int(row.data.get("milestone_id")),
            issueSourceId=to_int(row.data.get("issue_id")),
        )
    runtime.run_in_transaction(
        lambda session: runtime.staging.mark_processed([row.id for row in rows], session=session)
    )
    return summary


def _import_issue_relation(
    runtime: ImportRuntime,
    entity: str,
    dataset: str,
    owner_field: str,
    owner_ids: Mapping[int, int],
    table: Table,
    owner_column: str,
) -> EntitySummary:
    summary = EntitySummary(entity)
    issue_ids = runtime.id_maps.issues

    def handle(session: Session, row: StagedRow) -> None:
        owner_id = owner_ids.get(to_int(row.data.get(owner_field)))
        issue_id = issue_ids.get(to_int(row.data.get("issue_id")))
        if owner_id is None or issue_id is None:
            runtime.skip(
                summary,
                "Skipping issue relationship with unmapped owner or issue",
                ownerSourceId=to_int(row.data.get(owner_field)),
                issueSourceId=to_int(row.data.get("issue_id")),
            )
            return
        values: dict[str, Any] = {owner_column: owner_id, "issue_id": issue_id}
        if ensure_link(session, table, **values):
            runtime.created(summary)
        else:
            runtime.mapped(summary)

    runtime.run_chunks(
        entity,
        runtime.staged_rows(dataset),
        runtime.policy(runtime.config.issue_relationship_chunk_size),
        handle,
    )
    return summary


def import_repository_case_issues(runtime: ImportRuntime) -> EntitySummary:
    return _import_issue_relation(
        runtime, "repositoryCaseIssues", "repository_case_issues", "case_id",
        runtime.id_maps.cases, case_issues, "case_id",
    )


def import_run_issues(runtime: ImportRuntime) -> EntitySummary:
    return _import_issue_relation(
        runtime, "runIssues", "run_issues", "run_id",
        runtime.id_maps.test_runs, run_issues, "test_run_id",
    )


def import_run_result_issues(runtime: ImportRuntime) -> EntitySummary:
    return _import_issue_relation(
        runtime, "runResultIssues", "run_result_issues", "result_id",
        runtime.id_maps.test_run_results, result_issues, "result_id",
    )


def import_session_issues(runtime: ImportRuntime) -> EntitySummary:
    return _import_issue_relation(
        runtime, "sessionIssues", "session_issues", "session_id",
        runtime.id_maps.sessions, session_issues, "session_id",
    )


def import_session_result_issues(runtime: ImportRuntime) -> EntitySummary:
    return _import_issue_relation(
        runtime, "sessionResultIssues", "session_result_issues", "result_id",
        runtime.id_maps.session_results, session_result_issues, "session_result_id",
    )
