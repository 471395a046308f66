"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Progress tracking for one import run.

``ImportContext`` accumulates what the operator sees: the activity log, the
per-entity ``{total, created, mapped}`` counters and the overall processed
count. Throughput is estimated from a short window of samples with
exponential smoothing so a single slow chunk does not make the ETA jump.
"""

import logging
import math
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tmimport.importers.base import EntitySummary
    from tmimport.mapping_config import MappingConfiguration

logger = logging.getLogger("tmimport.progress")

MAX_RECENT_PROGRESS_ENTRIES = 60
RECENT_PROGRESS_WINDOW_SECONDS = 60.0
EMA_ALPHA = 0.3
RATE_FLOOR_FRACTION = 0.2
METRICS_MIN_ELAPSED_SECONDS = 2.0

PROGRESS_GATE_SECONDS = 2.0
PROGRESS_GATE_FRACTION = 50

PersistCallback = Callable[[str | None, str | None], None]

# Entity name -> dataset holding its rows
DATASET_ENTITIES = {
    "userGroups": "user_groups",
    "projects": "projects",
    "projectLinks": "project_links",
    "milestones": "milestones",
    "milestoneLinks": "milestone_links",
    "sessions": "sessions",
    "sessionResults": "session_results",
    "sessionTags": "session_tags",
    "sessionValues": "session_values",
    "repositories": "repositories",
    "repositoryFolders": "repository_folders",
    "repositoryCases": "repository_cases",
    "repositoryCaseTags": "repository_case_tags",
    "automationCases": "automation_cases",
    "automationRuns": "automation_runs",
    "automationRunTests": "automation_run_tests",
    "automationRunFields": "automation_run_fields",
    "automationRunLinks": "automation_run_links",
    "automationRunTestFields": "automation_run_test_fields",
    "automationRunTags": "automation_run_tags",
    "testRuns": "runs",
    "runLinks": "run_links",
    "testRunCases": "run_tests",
    "testRunResults": "run_results",
    "testRunStepResults": "run_result_steps",
    "runTags": "run_tags",
    "issues": "issues",
    "milestoneIssues": "milestone_issues",
    "repositoryCaseIssues": "repository_case_issues",
    "runIssues": "run_issues",
    "runResultIssues": "run_result_issues",
    "sessionIssues": "session_issues",
    "sessionResultIssues": "session_result_issues",
}

# Entity name -> mapping configuration table
CONFIG_ENTITIES = {
    "workflows": "workflows",
    "statuses": "statuses",
    "groups": "groups",
    "roles": "roles",
    "milestoneTypes": "milestone_types",
    "configurations": "configurations",
    "templates": "templates",
    "templateFields": "template_fields",
    "tags": "tags",
    "users": "users",
    "issueTargets": "issue_targets",
}


def current_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class NameCache:
    """
    Per-run memo of destination names by kind (project, template, user, ...).

    Lives on the ImportContext so nothing leaks from one job into the next.
    """

    def __init__(self) -> None:
        self._entries: dict[str, dict[Any, Any]] = {}

    def get(self, kind: str, key: Any) -> Any:
        return self._entries.get(kind, {}).get(key)

    def set(self, kind: str, key: Any, value: Any) -> None:
        self._entries.setdefault(kind, {})[key] = value

    def get_or_load(self, kind: str, key: Any, loader: Callable[[Any], Any]) -> Any:
        bucket = self._entries.setdefault(kind, {})
        if key not in bucket:
            bucket[key] = loader(key)
        return bucket[key]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._entries.values())


@dataclass
class ImportContext:
    """Mutable state of one import run."""

    job_id: str
    activity_log: list[dict[str, Any]] = field(default_factory=list)
    entity_progress: dict[str, dict[str, int]] = field(default_factory=dict)
    processed_count: int = 0
    planned_total: int = 0
    skipped_count: int = 0
    clock: Callable[[], float] = time.monotonic
    start_time: float = 0.0
    last_progress_update: float = 0.0
    recent_progress: list[tuple[float, int]] = field(default_factory=list)
    name_cache: NameCache = field(default_factory=NameCache)
    persist: PersistCallback | None = None
    should_abort: Callable[[], bool] | None = None

    def __post_init__(self) -> None:
        now = self.clock()
        self.start_time = now
        self.last_progress_update = now
        self.recent_progress = [(now, 0)]

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    def log_message(self, message: str, details: Mapping[str, Any] | None = None) -> None:
        entry: dict[str, Any] = {"type": "message", "timestamp": current_timestamp(), "message": message}
        if details:
            entry["details"] = dict(details)
        self.activity_log.append(entry)
        logger.info(message, extra={"context_data": {"job_id": self.job_id, **(details or {})}})

    def record_entity_summary(self, summary: "EntitySummary") -> None:
        """
        Append a summary entry and make the entity counters match it.

        Only a positive change in created + mapped is added to the overall
        processed count, so a summary after incremental updates does not
        count rows twice.
        """
        self.activity_log.append(summary.as_log_entry(current_timestamp()))
        processed_total = summary.created + summary.mapped
        existing = self.entity_progress.get(summary.entity)
        if existing is not None:
            previous = existing["created"] + existing["mapped"]
            existing.update(total=summary.total, created=summary.created, mapped=summary.mapped)
            delta = processed_total - previous
            if delta > 0:
                self.processed_count += delta
        else:
            self.entity_progress[summary.entity] = {
                "total": summary.total,
                "created": summary.created,
                "mapped": summary.mapped,
            }
            self.processed_count += processed_total

    # ------------------------------------------------------------------
    # Entity progress
    # ------------------------------------------------------------------

    def initialize_entity_progress(self, entity: str, total: int) -> None:
        if total <= 0:
            return
        existing = self.entity_progress.get(entity)
        if existing is not None:
            existing["total"] = total
        else:
            self.entity_progress[entity] = {"total": total, "created": 0, "mapped": 0}

    def increment_entity_progress(self, entity: str, created: int = 0, mapped: int = 0) -> None:
        increment = created + mapped
        if increment == 0:
            return
        entry = self.entity_progress.setdefault(entity, {"total": increment, "created": 0, "mapped": 0})
        entry["created"] += created
        entry["mapped"] += mapped
        self.processed_count += increment

    def decrement_entity_total(self, entity: str) -> None:
        """A planned row turned out to be unimportable."""
        entry = self.entity_progress.get(entity)
        if entry is not None and entry["total"] > 0:
            entry["total"] -= 1
            if self.planned_total > 0:
                self.planned_total -= 1

    def format_in_progress_status(self, entity: str) -> str | None:
        entry = self.entity_progress.get(entity)
        if entry is None:
            return None
        processed = entry["created"] + entry["mapped"]
        return f"{processed:,} / {entry['total']:,} processed"

    # ------------------------------------------------------------------
    # Throughput
    # ------------------------------------------------------------------

    def smoothed_processing_rate(self, now: float | None = None) -> float:
        """
        Items per second over the recent window.

        Instantaneous rates between consecutive samples are combined with an
        exponential moving average; the result never drops below a fifth of
        the whole-run average.
        """
        now = self.clock() if now is None else now
        elapsed = max(now - self.start_time, 1e-9)

        recent = self.recent_progress
        last_timestamp, last_count = recent[-1]
        if last_timestamp != now or last_count != self.processed_count:
            recent.append((now, self.processed_count))

        while len(recent) > MAX_RECENT_PROGRESS_ENTRIES or (
            len(recent) > 1 and now - recent[1][0] > RECENT_PROGRESS_WINDOW_SECONDS
        ):
            recent.pop(0)

        total_rate = self.processed_count / elapsed
        if len(recent) < 2:
            return total_rate

        smoothed: float | None = None
        for (prev_time, prev_count), (time_, count) in zip(recent, recent[1:], strict=False):
            delta_seconds = time_ - prev_time
            delta_count = count - prev_count
            if delta_seconds <= 0 or delta_count <= 0:
                continue
            rate = delta_count / delta_seconds
            if not math.isfinite(rate) or rate <= 0:
                continue
            smoothed = rate if smoothed is None else EMA_ALPHA * rate + (1 - EMA_ALPHA) * smoothed

        if smoothed is None:
            smoothed = total_rate
        return max(smoothed, total_rate * RATE_FLOOR_FRACTION)

    def calculate_progress_metrics(self, total: int) -> tuple[str | None, str | None]:
        """
        ETA and rate strings for the job record.

        Returns:
            Tuple of (estimated seconds remaining, processing rate); both None
            until two seconds have passed and something has been processed
        """
        now = self.clock()
        elapsed = now - self.start_time
        if elapsed < METRICS_MIN_ELAPSED_SECONDS or self.processed_count == 0 or total == 0:
            return None, None

        rate = self.smoothed_processing_rate(now)
        if rate <= 0:
            return None, None
        remaining = max(0, total - self.processed_count)
        eta = str(math.ceil(remaining / rate))
        if rate >= 1:
            rate_text = f"{rate:.1f} items/sec"
        else:
            rate_text = f"{rate * 60:.1f} items/min"
        return eta, rate_text

    # ------------------------------------------------------------------
    # Cancellation and persistence
    # ------------------------------------------------------------------

    def abort_requested(self) -> bool:
        return self.should_abort is not None and self.should_abort()

    def persist_progress(self, entity: str | None, status_message: str | None = None) -> None:
        if self.persist is not None:
            self.persist(entity, status_message)
        self.last_progress_update = self.clock()


class ProgressGate:
    """
    Decides when progress is worth writing to the job record.

    Fires once the processed count has grown by ``max(1, total / 50)`` (capped
    at ``max_interval`` when given) or two seconds have passed since it last
    fired.
    """

    def __init__(
        self,
        total: int,
        max_interval: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        min_seconds: float = PROGRESS_GATE_SECONDS,
    ):
        threshold = max(1, total // PROGRESS_GATE_FRACTION)
        if max_interval:
            threshold = max(1, min(threshold, max_interval))
        self.threshold = threshold
        self._clock = clock
        self._min_seconds = min_seconds
        self._last_count = 0
        self._last_time = clock()

    def should_fire(self, processed: int) -> bool:
        now = self._clock()
        if processed - self._last_count >= self.threshold or now - self._last_time >= self._min_seconds:
            self._last_count = processed
            self._last_time = now
            return True
        return False


def format_entity_label(entity: str) -> str:
    """``repositoryCases`` -> ``Repository Cases``."""
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", entity)
    return spaced[:1].upper() + spaced[1:]


def format_summary_status(summary: "EntitySummary") -> str:
    label = format_entity_label(summary.entity)
    return f"{label}: {summary.total} processed ({summary.created} created, {summary.mapped} mapped)"


def compute_entity_totals(
    configuration: "MappingConfiguration", dataset_counts: Mapping[str, int]
) -> dict[str, int]:
    """
    Planned total per entity.

    Configuration-driven entities count their mapping entries; everything
    else counts staged rows of its dataset.
    """
    totals = {entity: len(getattr(configuration, table)) for entity, table in CONFIG_ENTITIES.items()}
    for entity, dataset in DATASET_ENTITIES.items():
        totals[entity] = dataset_counts.get(dataset, 0)
    return totals
