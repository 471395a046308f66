"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
The fixed order in which entity importers run.

Reference data comes first, then users and projects, then everything that
hangs off projects, then executions, and finally issues and the relations
that point at all of the above. Each step only reads id maps filled by
steps before it.
"""

import logging
from collections.abc import Callable

from tmimport.exceptions import ImportCanceled
from tmimport.importers import (
    automation,
    configuration,
    issues,
    projects,
    repositories,
    runs,
    sessions,
    templates,
    users,
)
from tmimport.importers.base import EntitySummary, ImportRuntime
from tmimport.progress import compute_entity_totals, format_entity_label, format_summary_status

logger = logging.getLogger("tmimport.importers.pipeline")

Importer = Callable[[ImportRuntime], EntitySummary]

IMPORT_STEPS: list[tuple[str, Importer]] = [
    ("workflows", configuration.import_workflows),
    ("statuses", configuration.import_statuses),
    ("groups", configuration.import_groups),
    ("tags", configuration.import_tags),
    ("roles", configuration.import_roles),
    ("milestoneTypes", configuration.import_milestone_types),
    ("configurations", configuration.import_configurations),
    ("templates", templates.import_templates),
    ("templateFields", templates.import_template_fields),
    ("users", users.import_users),
    ("userGroups", users.import_user_groups),
    ("projects", projects.import_projects),
    ("projectLinks", projects.import_project_links),
    ("milestones", projects.import_milestones),
    ("milestoneLinks", projects.import_milestone_links),
    ("sessions", sessions.import_sessions),
    ("sessionResults", sessions.import_session_results),
    ("sessionTags", sessions.import_session_tags),
    ("sessionValues", sessions.import_session_values),
    ("repositories", repositories.import_repositories),
    ("repositoryFolders", repositories.import_repository_folders),
    ("repositoryCases", repositories.import_repository_cases),
    ("repositoryCaseTags", repositories.import_repository_case_tags),
    ("automationCases", automation.import_automation_cases),
    ("automationRuns", automation.import_automation_runs),
    ("automationRunTests", automation.import_automation_run_tests),
    ("automationRunFields", automation.import_automation_run_fields),
    ("automationRunLinks", automation.import_automation_run_links),
    ("automationRunTestFields", automation.import_automation_run_test_fields),
    ("automationRunTags", automation.import_automation_run_tags),
    ("testRuns", runs.import_test_runs),
    ("runLinks", runs.import_run_links),
    ("testRunCases", runs.import_test_run_cases),
    ("runTags", runs.import_run_tags),
    ("testRunResults", runs.import_test_run_results),
    ("testRunStepResults", runs.import_test_run_step_results),
    ("issueTargets", issues.import_issue_targets),
    ("issues", issues.import_issues),
    ("milestoneIssues", issues.import_milestone_issues),
    ("repositoryCaseIssues", issues.import_repository_case_issues),
    ("runIssues", issues.import_run_issues),
    ("runResultIssues", issues.import_run_result_issues),
    ("sessionIssues", issues.import_session_issues),
    ("sessionResultIssues", issues.import_session_result_issues),
]


def run_import_pipeline(
    runtime: ImportRuntime,
    steps: list[tuple[str, Importer]] | None = None,
    on_step_complete: Callable[[EntitySummary], None] | None = None,
) -> list[EntitySummary]:
    """
    Run every import step in order and return their summaries.

    Cancellation is checked before each step. The first failing step stops the
    run; its exception propagates after being logged with the entity name.
    ``on_step_complete`` sees each summary once its step has committed.
    """
    context = runtime.context
    totals = compute_entity_totals(runtime.configuration, runtime.staging.get_dataset_counts(runtime.job_id))
    if context.planned_total == 0:
        context.planned_total = sum(totals.values())

    summaries: list[EntitySummary] = []
    for entity, importer in steps or IMPORT_STEPS:
        runtime.check_cancel()
        context.initialize_entity_progress(entity, totals.get(entity, 0))
        context.persist_progress(entity, f"Processing {format_entity_label(entity).lower()}")
        logger.debug(f"Starting import step {entity}")

        try:
            summary = importer(runtime)
        except ImportCanceled:
            logger.info(f"Import canceled before {entity} finished")
            raise
        except Exception as e:
            logger.error(f"Import step {entity} failed: {e}")
            raise
        finally:
            runtime.flush_skips()

        context.record_entity_summary(summary)
        context.persist_progress(entity, format_summary_status(summary))
        summaries.append(summary)
        if on_step_complete is not None:
            on_step_complete(summary)
        logger.info(
            f"{format_entity_label(entity)}: {summary.total} processed, "
            f"{summary.created} created, {summary.mapped} mapped"
        )
    return summaries
