"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Manual test runs and everything executed in them.

Runs, results and step results have no natural key in the destination, so
the source to destination pairs are kept as entity mappings and a re-run
maps rows it has already written. Run cases are unique per (run, case).
"""

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from tmimport.core.db_models import (
    RepositoryCase,
    ResultFieldValue,
    Status,
    Step,
    TestRun,
    TestRunCase,
    TestRunResult,
    TestRunStepResult,
    run_tags,
)
from tmimport.destination import find_first, get_untested_status
from tmimport.exceptions import ConfigurationError
from tmimport.importers.base import EntitySummary, ImportRuntime, ensure_link
from tmimport.importers.links import import_links
from tmimport.importers.repositories import step_doc
from tmimport.normalization import normalize_estimate, to_bool, to_date, to_int, to_rich_text_doc, to_str
from tmimport.staging import StagedRow

logger = logging.getLogger("tmimport.importers.runs")

SCALED_ADJUSTMENTS = ("microseconds", "nanoseconds", "milliseconds")


def count_adjustment(summary: EntitySummary, prefix: str, adjustment: str | None) -> None:
    """Tally a normalize_estimate adjustment as ``<prefix>Adjusted`` or ``<prefix>Clamped``."""
    if adjustment in SCALED_ADJUSTMENTS:
        summary.count(f"{prefix}Adjusted")
    elif adjustment == "clamped":
        summary.count(f"{prefix}Clamped")


def untested_status_id(runtime: ImportRuntime, entity: str) -> int:
    def load(session: Session) -> int:
        status = get_untested_status(session)
        if status is None:
            raise ConfigurationError("Default 'untested' status not found in workspace", entity_type=entity)
        return status.id

    return runtime.run_in_transaction(load)


def import_test_runs(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary(
        "testRuns",
        details={"forecastAdjusted": 0, "forecastClamped": 0, "elapsedAdjusted": 0, "elapsedClamped": 0},
    )
    id_maps = runtime.id_maps
    if runtime.dataset_count("runs") == 0:
        runtime.log("No runs dataset found; skipping test run import.")
        return summary

    def handle(session: Session, row: StagedRow) -> None:
        record = row.data
        source_id = to_int(record.get("id"))
        project_source_id = to_int(record.get("project_id"))
        project_id = id_maps.projects.get(project_source_id)
        if source_id is None or project_id is None:
            runtime.skip(
                summary,
                "Skipping test run due to missing project mapping",
                sourceId=source_id,
                projectSourceId=project_source_id,
            )
            return

        workflow_source_id = to_int(record.get("state_id"))
        state_id = id_maps.workflows.get(workflow_source_id)
        if state_id is None:
            runtime.skip(
                summary,
                "Skipping test run due to missing workflow mapping",
                sourceId=source_id,
                workflowSourceId=workflow_source_id,
            )
            return

        existing = runtime.remembered_target(session, "testRuns", source_id, TestRun)
        if existing is not None:
            id_maps.test_runs[source_id] = existing
            runtime.mapped(summary)
            return

        forecast, forecast_adjustment = normalize_estimate(record.get("forecast"))
        elapsed, elapsed_adjustment = normalize_estimate(record.get("elapsed"))
        count_adjustment(summary, "forecast", forecast_adjustment)
        count_adjustment(summary, "elapsed", elapsed_adjustment)

        run = TestRun(
            project_id=project_id,
            state_id=state_id,
            milestone_id=id_maps.milestones.get(to_int(record.get("milestone_id"))),
            configuration_id=id_maps.configurations.get(to_int(record.get("config_id"))),
            name=to_str(record.get("name")) or f"Imported Run {source_id}",
            run_type="REGULAR",
            note=to_rich_text_doc(record.get("note")),
            docs=to_rich_text_doc(record.get("docs")),
            forecast=forecast,
            elapsed=elapsed,
            is_completed=to_bool(record.get("is_closed")),
            completed_at=to_date(record.get("closed_at")),
            created_by_id=runtime.resolve_user(session, record.get("created_by")),
            created_at=to_date(record.get("created_at")),
        )
        session.add(run)
        session.flush()
        runtime.remember(session, "testRuns", source_id, run.id, "test_run")
        id_maps.test_runs[source_id] = run.id
        runtime.created(summary)

    runtime.run_chunks(
        "testRuns", runtime.staged_rows("runs"), runtime.policy(runtime.config.staging_batch_size), handle
    )

    details = summary.details
    if details["forecastAdjusted"]:
        runtime.log("Adjusted test run forecasts to int32 range", adjustments=details["forecastAdjusted"])
    if details["forecastClamped"]:
        runtime.log("Clamped oversized test run forecasts to int32 range", clamped=details["forecastClamped"])
    if details["elapsedAdjusted"]:
        runtime.log("Adjusted test run elapsed durations to int32 range", adjustments=details["elapsedAdjusted"])
    if details["elapsedClamped"]:
        runtime.log("Clamped oversized test run elapsed durations", clamped=details["elapsedClamped"])
    return summary


def import_run_links(runtime: ImportRuntime) -> EntitySummary:
    return import_links(
        runtime,
        "runLinks",
        "run_links",
        "run_id",
        runtime.id_maps.test_runs,
        TestRun,
        runtime.config.staging_batch_size,
    )


def import_test_run_cases(runtime: ImportRuntime) -> EntitySummary:
    """
    Add cases to runs.

    A run test that was not selected in the source is only imported when a
    result refers to it; otherwise the result history would lose its case.
    """
    summary = EntitySummary(
        "testRunCases",
        details={
            "skippedUnselected": 0,
            "importedUnselectedWithResults": 0,
            "elapsedAdjusted": 0,
            "elapsedClamped": 0,
        },
    )
    id_maps = runtime.id_maps
    if runtime.dataset_count("run_tests") == 0:
        runtime.log("No run_tests dataset found; skipping test run case import.")
        return summary

    tests_with_results: set[int] = set()
    for row in runtime.staged_rows("run_results"):
        test_source_id = to_int(row.data.get("test_id"))
        if test_source_id is not None:
            tests_with_results.add(test_source_id)

    completed_status_ids: set[int] = set()
    order_counters: dict[int, int] = {}
    state: dict[str, bool] = {}

    def next_order(session: Session, run_id: int) -> int:
        if run_id not in order_counters:
            existing = session.scalars(
                select(TestRunCase.order)
                .where(TestRunCase.test_run_id == run_id)
                .order_by(TestRunCase.order.desc())
                .limit(1)
            ).first()
            order_counters[run_id] = existing + 1 if existing is not None else 0
        order = order_counters[run_id]
        order_counters[run_id] = order + 1
        return order

    def handle(session: Session, row: StagedRow) -> None:
        if not state:
            completed_status_ids.update(session.scalars(select(Status.id).where(Status.is_completed.is_(True))))
            state["loaded"] = True
        record = row.data
        run_test_source_id = to_int(record.get("id"))
        run_source_id = to_int(record.get("run_id"))
        case_source_id = to_int(record.get("case_id"))
        if run_test_source_id is None or run_source_id is None or case_source_id is None:
            runtime.skip(summary, "Skipping test run case with missing ids", rowIndex=row.row_index)
            return

        selected = to_bool(record.get("is_selected"))
        has_results = run_test_source_id in tests_with_results
        if not selected and not has_results:
            summary.count("skippedUnselected")
            runtime.skip(
                summary, "Skipping unselected test run case without results", runTestSourceId=run_test_source_id
            )
            return

        run_id = id_maps.test_runs.get(run_source_id)
        if run_id is None:
            runtime.skip(
                summary,
                "Skipping test run case due to missing run mapping",
                runTestSourceId=run_test_source_id,
                runSourceId=run_source_id,
            )
            return
        case_id = id_maps.cases.get(case_source_id)
        if case_id is None:
            runtime.skip(
                summary,
                "Skipping test run case due to missing repository case",
                runTestSourceId=run_test_source_id,
                caseSourceId=case_source_id,
            )
            return
        if not selected:
            summary.count("importedUnselectedWithResults")

        existing = find_first(session, TestRunCase, test_run_id=run_id, repository_case_id=case_id)
        if existing is not None:
            id_maps.test_run_cases[run_test_source_id] = existing.id
            runtime.mapped(summary)
            return

        status_id = id_maps.statuses.get(to_int(record.get("status_id")))
        elapsed, adjustment = normalize_estimate(record.get("elapsed"))
        count_adjustment(summary, "elapsed", adjustment)
        run_case = TestRunCase(
            test_run_id=run_id,
            repository_case_id=case_id,
            order=next_order(session, run_id),
            status_id=status_id,
            assigned_to_id=runtime.mapped_user(record.get("assignee_id")),
            is_completed=status_id in completed_status_ids,
            elapsed=elapsed,
        )
        session.add(run_case)
        session.flush()
        id_maps.test_run_cases[run_test_source_id] = run_case.id
        runtime.created(summary)

    runtime.run_chunks(
        "testRunCases",
        runtime.staged_rows("run_tests"),
        runtime.policy(runtime.config.test_run_case_chunk_size),
        handle,
    )
    if summary.details["skippedUnselected"]:
        runtime.log(
            "Skipped unselected run tests without results",
            count=summary.details["skippedUnselected"],
        )
    if summary.details["elapsedAdjusted"]:
        runtime.log("Adjusted test run case elapsed durations", adjustments=summary.details["elapsedAdjusted"])
    if summary.details["elapsedClamped"]:
        runtime.log("Clamped oversized test run case elapsed durations", clamped=summary.details["elapsedClamped"])
    return summary


def import_run_tags(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("runTags")
    id_maps = runtime.id_maps

    def handle(session: Session, row: StagedRow) -> None:
        run_id = id_maps.test_runs.get(to_int(row.data.get("run_id")))
        tag_id = id_maps.tags.get(to_int(row.data.get("tag_id")))
        if run_id is None or tag_id is None:
            runtime.skip(
                summary,
                "Skipping run tag with unmapped run or tag",
                runSourceId=to_int(row.data.get("run_id")),
                tagSourceId=to_int(row.data.get("tag_id")),
            )
            return
        if ensure_link(session, run_tags, test_run_id=run_id, tag_id=tag_id):
            runtime.created(summary)
        else:
            runtime.mapped(summary)

    runtime.run_chunks(
        "runTags", runtime.staged_rows("run_tags"), runtime.policy(runtime.config.staging_batch_size), handle
    )
    return summary


def _custom_values(record: dict[str, Any], fields: dict[str, int]) -> dict[int, Any]:
    values: dict[int, Any] = {}
    for key, raw_value in record.items():
        if not key.startswith("custom_"):
            continue
        field_id = fields.get(key[len("custom_") :])
        if field_id is None or raw_value is None:
            continue
        if isinstance(raw_value, str) and not raw_value.strip():
            continue
        values[field_id] = raw_value
    return values


def import_test_run_results(runtime: ImportRuntime) -> EntitySummary:
    summary = EntitySummary("testRunResults", details={"elapsedAdjusted": 0, "elapsedClamped": 0})
    id_maps = runtime.id_maps
    if runtime.dataset_count("run_results") == 0:
        runtime.log("No run_results dataset found; skipping test run result import.")
        return summary

    untested_id = untested_status_id(runtime, "testRunResults")
    case_versions: dict[int, int] = {}

    def case_version(session: Session, run_case_id: int) -> int:
        if run_case_id not in case_versions:
            version = session.scalars(
                select(RepositoryCase.current_version)
                .join(TestRunCase, TestRunCase.repository_case_id == RepositoryCase.id)
                .where(TestRunCase.id == run_case_id)
            ).first()
            case_versions[run_case_id] = version or 1
        return case_versions[run_case_id]

    def handle(session: Session, row: StagedRow) -> None:
        record = row.data
        source_id = to_int(record.get("id"))
        run_source_id = to_int(record.get("run_id"))
        test_source_id = to_int(record.get("test_id"))
        if source_id is None or run_source_id is None or test_source_id is None:
            runtime.skip(summary, "Skipping test run result with missing ids", rowIndex=row.row_index)
            return
        if to_bool(record.get("is_deleted")):
            runtime.skip(summary, "Skipping deleted test run result", resultSourceId=source_id)
            return

        run_id = id_maps.test_runs.get(run_source_id)
        if run_id is None:
            runtime.skip(
                summary,
                "Skipping test run result due to missing run mapping",
                resultSourceId=source_id,
                runSourceId=run_source_id,
            )
            return
        run_case_id = id_maps.test_run_cases.get(test_source_id)
        if run_case_id is None:
            runtime.skip(
                summary,
                "Skipping test run result due to missing run case mapping",
                resultSourceId=source_id,
                runTestSourceId=test_source_id,
            )
            return

        existing = runtime.remembered_target(session, "testRunResults", source_id, TestRunResult)
        if existing is not None:
            id_maps.test_run_results[source_id] = existing
            runtime.mapped(summary)
            return

        elapsed, adjustment = normalize_estimate(record.get("elapsed"))
        count_adjustment(summary, "elapsed", adjustment)
        result = TestRunResult(
            test_run_id=run_id,
            test_run_case_id=run_case_id,
            test_run_case_version=case_version(session, run_case_id),
            status_id=id_maps.statuses.get(to_int(record.get("status_id"))) or untested_id,
            executed_by_id=runtime.resolve_user(session, record.get("created_by")),
            executed_at=to_date(record.get("created_at")),
            elapsed=elapsed,
            notes=to_rich_text_doc(record.get("comment")),
        )
        session.add(result)
        session.flush()
        for field_id, value in _custom_values(record, id_maps.result_fields).items():
            session.add(ResultFieldValue(result_id=result.id, field_id=field_id, value=value))
        runtime.remember(session, "testRunResults", source_id, result.id, "test_run_result")
        id_maps.test_run_results[source_id] = result.id
        runtime.created(summary)

    policy = runtime.policy(runtime.config.test_run_result_chunk_size)
    runtime.log(f"Processing test run results in batches of {policy.size}")
    runtime.run_chunks("testRunResults", runtime.staged_rows("run_results"), policy, handle)

    if summary.details["elapsedAdjusted"]:
        runtime.log("Adjusted test run result elapsed durations", adjustments=summary.details["elapsedAdjusted"])
    if summary.details["elapsedClamped"]:
        runtime.log("Clamped oversized test run result elapsed durations", clamped=summary.details["elapsedClamped"])
    return summary


def import_test_run_step_results(runtime: ImportRuntime) -> EntitySummary:
    """
    Step results, each with the step it was recorded against.

    The export keeps step text on the result, so a step is added to the
    run case's repository case for every step result. Staged rows carry no
    id of their own; the row index keys the stored mapping.
    """
    summary = EntitySummary("testRunStepResults")
    id_maps = runtime.id_maps
    if runtime.dataset_count("run_result_steps") == 0:
        runtime.log("No run_result_steps dataset found; skipping step result import.")
        return summary

    untested_id = untested_status_id(runtime, "testRunStepResults")
    repository_cases: dict[int, int | None] = {}

    def repository_case_of(session: Session, run_case_id: int) -> int | None:
        if run_case_id not in repository_cases:
            run_case = session.get(TestRunCase, run_case_id)
            repository_cases[run_case_id] = run_case.repository_case_id if run_case is not None else None
        return repository_cases[run_case_id]

    def handle(session: Session, row: StagedRow) -> None:
        record = row.data
        result_id = id_maps.test_run_results.get(to_int(record.get("result_id")))
        run_case_id = id_maps.test_run_cases.get(to_int(record.get("test_id")))
        display_order = to_int(record.get("display_order"))
        if result_id is None or run_case_id is None or display_order is None:
            runtime.skip(
                summary,
                "Skipping step result with unmapped result or test",
                resultSourceId=to_int(record.get("result_id")),
                testSourceId=to_int(record.get("test_id")),
            )
            return

        if runtime.remembered_target(session, "testRunStepResults", row.row_index, TestRunStepResult) is not None:
            runtime.mapped(summary)
            return

        case_id = repository_case_of(session, run_case_id)
        if case_id is None:
            runtime.skip(
                summary,
                "Skipping step result whose test run case has no repository case",
                resultSourceId=to_int(record.get("result_id")),
                testSourceId=to_int(record.get("test_id")),
            )
            return

        duplicate = session.execute(
            select(TestRunStepResult.id)
            .join(Step, Step.id == TestRunStepResult.step_id)
            .where(
                TestRunStepResult.result_id == result_id,
                Step.case_id == case_id,
                Step.order == display_order,
            )
            .limit(1)
        ).first()
        if duplicate is not None:
            runtime.skip(
                summary,
                "Skipping duplicate step result",
                resultId=result_id,
                stepOrder=display_order,
            )
            return

        step = Step(
            case_id=case_id,
            order=display_order,
            step=step_doc(to_str(record.get("text1")), to_str(record.get("text2"))),
            expected_result=step_doc(to_str(record.get("text3")), to_str(record.get("text4"))),
        )
        session.add(step)
        session.flush()
        step_result = TestRunStepResult(
            result_id=result_id,
            step_id=step.id,
            status_id=id_maps.statuses.get(to_int(record.get("status_id"))) or untested_id,
            notes=to_rich_text_doc(record.get("comment")),
            elapsed=to_int(record.get("elapsed")),
        )
        session.add(step_result)
        session.flush()
        runtime.remember(session, "testRunStepResults", row.row_index, step_result.id, "test_run_step_result")
        runtime.created(summary)

    runtime.run_chunks(
        "testRunStepResults",
        runtime.staged_rows("run_result_steps"),
        runtime.policy(runtime.config.test_run_result_chunk_size),
        handle,
    )
    return summary
