"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Dataset assembler for streamed export documents.

The export is one JSON object whose named members (directly, or under a
``datasets``/``entities`` container) are datasets of the form::

    {"schema": {...}, "data": [{...row...}, {...row...}]}

The assembler walks decoder tokens with an explicit stack of typed frames.
Objects that are direct children of a dataset's data array are rows: each one
is rebuilt by its own ``ValueBuilder`` and handed to the staging store in
fixed-size batches. A ``schema`` member is rebuilt the same way and kept on the
dataset summary. Nothing else of the document is retained.
"""

import enum
import logging
import re
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import IO, Any

from tmimport.exceptions import AnalysisError, ImportCanceled
from tmimport.stream_decoder import ProgressCallback, ProgressReader, Token, TokenKind, iter_tokens

logger = logging.getLogger("tmimport.dataset_assembler")

DATASET_CONTAINER_KEYS = frozenset({"datasets", "entities"})
DATASET_DATA_KEYS = frozenset({"data", "rows", "records", "items"})
DATASET_SCHEMA_KEYS = frozenset({"schema", "columns", "fields"})
IGNORED_DATASET_KEYS = frozenset({"meta", "summary"})
ATTACHMENT_DATASET_PATTERN = re.compile(r"attachment", re.IGNORECASE)

MAX_SAMPLE_STRING_LENGTH = 1000
MAX_SAMPLE_ARRAY_ITEMS = 10
MAX_SAMPLE_OBJECT_KEYS = 20
MAX_SAMPLE_DEPTH = 3


class FrameKind(str, enum.Enum):
    DATASET = "DATASET"
    ROW = "ROW"
    SCHEMA = "SCHEMA"
    OPAQUE = "OPAQUE"


class Container(str, enum.Enum):
    OBJECT = "object"
    ARRAY = "array"


@dataclass(frozen=True)
class Frame:
    kind: FrameKind
    container: Container
    key: str | None
    dataset: str | None = None


def classify_container(stack: list[Frame]) -> str | None:
    """Return the dataset the innermost frame belongs to, if any."""
    for frame in reversed(stack):
        if frame.dataset:
            return frame.dataset
    return None


def dataset_name_for_object(stack: list[Frame], key: str | None) -> str | None:
    """
    Decide whether an object opened under ``key`` introduces a dataset.

    A dataset object is a non-keyword member of the document root, of a
    ``datasets``/``entities`` container, or of a row (nested datasets). Schema
    keywords only name a dataset where no dataset encloses them, which lets a
    dataset literally called ``fields`` exist at the top level.
    """
    if not isinstance(key, str) or not stack:
        return None
    if key in DATASET_DATA_KEYS or key in DATASET_CONTAINER_KEYS or key in IGNORED_DATASET_KEYS:
        return None
    if key in DATASET_SCHEMA_KEYS and classify_container(stack) is not None:
        return None

    parent = stack[-1]
    if parent.container is not Container.OBJECT:
        return None
    if parent.kind is FrameKind.ROW:
        return key
    if parent.kind is FrameKind.OPAQUE and parent.dataset is None:
        return key if parent.key is None or parent.key in DATASET_CONTAINER_KEYS else None
    return None


def open_frame(stack: list[Frame], token: Token) -> Frame:
    """Classify the container a START token opens, given the frames around it."""
    parent = stack[-1] if stack else None
    key = token.key
    inside_dataset_object = (
        parent is not None
        and parent.kind is FrameKind.DATASET
        and parent.container is Container.OBJECT
    )

    if token.kind is TokenKind.START_OBJECT:
        if (
            parent is not None
            and parent.kind is FrameKind.DATASET
            and parent.container is Container.ARRAY
        ):
            return Frame(FrameKind.ROW, Container.OBJECT, key, parent.dataset)
        name = dataset_name_for_object(stack, key)
        if name is not None:
            return Frame(FrameKind.DATASET, Container.OBJECT, key, name)
        if inside_dataset_object and key in DATASET_SCHEMA_KEYS:
            return Frame(FrameKind.SCHEMA, Container.OBJECT, key, parent.dataset)
        return Frame(FrameKind.OPAQUE, Container.OBJECT, key, classify_container(stack))

    if inside_dataset_object and key in DATASET_DATA_KEYS:
        return Frame(FrameKind.DATASET, Container.ARRAY, key, parent.dataset)
    if inside_dataset_object and key in DATASET_SCHEMA_KEYS:
        return Frame(FrameKind.SCHEMA, Container.ARRAY, key, parent.dataset)
    return Frame(FrameKind.OPAQUE, Container.ARRAY, key, classify_container(stack))


class ValueBuilder:
    """Rebuilds one JSON value from the tokens that describe it."""

    def __init__(self) -> None:
        self._stack: list[dict | list] = []
        self.value: Any = None
        self.done = False

    def feed(self, token: Token) -> None:
        if self.done:
            return
        kind = token.kind
        if kind is TokenKind.START_OBJECT:
            self._open({}, token.key)
        elif kind is TokenKind.START_ARRAY:
            self._open([], token.key)
        elif kind is TokenKind.END_OBJECT or kind is TokenKind.END_ARRAY:
            self._stack.pop()
            if not self._stack:
                self.done = True
        else:
            self._attach(token.value, token.key)
            if not self._stack:
                self.done = True

    def _open(self, container: dict | list, key: str | None) -> None:
        self._attach(container, key)
        self._stack.append(container)

    def _attach(self, value: Any, key: str | None) -> None:
        if not self._stack:
            self.value = value
            return
        parent = self._stack[-1]
        if isinstance(parent, list):
            parent.append(value)
        else:
            parent[key] = value


def sanitize_sample_value(value: Any, depth: int = 0) -> Any:
    """Bound the size of a sample row before it is stored on the summary."""
    if depth > MAX_SAMPLE_DEPTH:
        return "[truncated depth]"

    if isinstance(value, str):
        if len(value) > MAX_SAMPLE_STRING_LENGTH:
            remaining = len(value) - MAX_SAMPLE_STRING_LENGTH
            return f"{value[:MAX_SAMPLE_STRING_LENGTH]}… [{remaining} more characters]"
        return value

    if isinstance(value, list):
        items = [sanitize_sample_value(item, depth + 1) for item in value[:MAX_SAMPLE_ARRAY_ITEMS]]
        if len(value) > MAX_SAMPLE_ARRAY_ITEMS:
            items.append(f"[{len(value) - MAX_SAMPLE_ARRAY_ITEMS} more items]")
        return items

    if isinstance(value, dict):
        entries = list(value.items())
        result = {
            key: sanitize_sample_value(entry, depth + 1)
            for key, entry in entries[:MAX_SAMPLE_OBJECT_KEYS]
        }
        if len(entries) > MAX_SAMPLE_OBJECT_KEYS:
            result["__truncated_keys__"] = f"{len(entries) - MAX_SAMPLE_OBJECT_KEYS} more keys"
        return result

    return value


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


class RepositorySnapshotFilter:
    """
    Drops rows that belong to repository snapshots.

    Snapshot repositories are skipped and every other repository id is
    remembered as a master. Once at least one master is known, rows of the
    ``repository_*`` datasets (except ``repository_case_tags``) survive only
    when their ``repo_id`` is a master.
    """

    def __init__(self) -> None:
        self.master_repository_ids: set[float] = set()

    def should_skip(self, dataset: str, row: Any) -> bool:
        if not isinstance(row, dict):
            return False

        if dataset == "repositories":
            snapshot_flag = row.get("is_snapshot")
            is_snapshot = _to_number(snapshot_flag) == 1 or "true" in str(
                "" if snapshot_flag is None else snapshot_flag
            ).lower()
            repo_id = _to_number(row.get("id"))
            if not is_snapshot and repo_id is not None:
                self.master_repository_ids.add(repo_id)
            return is_snapshot

        if dataset.startswith("repository_") and dataset != "repository_case_tags":
            repo_id = _to_number(row.get("repo_id"))
            if repo_id is not None and self.master_repository_ids:
                return repo_id not in self.master_repository_ids

        return False


@dataclass
class DatasetSummary:
    name: str
    row_count: int = 0
    schema: Any = None
    sample_rows: list[Any] = field(default_factory=list)
    truncated: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "rowCount": self.row_count,
            "schema": self.schema,
            "sampleRows": self.sample_rows,
            "truncated": self.truncated,
        }


@dataclass
class AnalysisOptions:
    sample_row_limit: int = 5
    staging_batch_size: int = 1000
    total_bytes: int | None = None
    on_progress: ProgressCallback | None = None
    should_abort: Callable[[], bool] | None = None
    on_dataset_complete: Callable[[DatasetSummary], None] | None = None


@dataclass
class AnalysisResult:
    datasets: dict[str, DatasetSummary]
    meta: dict[str, Any]

    def as_dict(self) -> dict[str, Any]:
        return {
            "datasets": {name: summary.as_dict() for name, summary in self.datasets.items()},
            "meta": self.meta,
        }


@dataclass
class _Capture:
    builder: ValueBuilder
    dataset: str
    purpose: FrameKind
    row_index: int | None = None


class DatasetAssembler:
    """Token consumer that produces dataset summaries and staged row batches."""

    def __init__(
        self,
        stage_batch: Callable[[str, list[tuple[int, Any]]], None],
        sample_row_limit: int = 5,
        staging_batch_size: int = 1000,
        should_abort: Callable[[], bool] | None = None,
    ):
        self._stage_batch = stage_batch
        self.sample_row_limit = sample_row_limit
        self.staging_batch_size = staging_batch_size
        self._should_abort = should_abort
        self.row_filter = RepositorySnapshotFilter()
        self.datasets: dict[str, DatasetSummary] = {}
        self.total_rows = 0
        self._stack: list[Frame] = []
        self._captures: list[_Capture] = []
        self._batches: dict[str, list[tuple[int, Any]]] = {}
        self._next_row_index: dict[str, int] = {}
        self._seen_root = False

    def _summary(self, name: str) -> DatasetSummary:
        summary = self.datasets.get(name)
        if summary is None:
            summary = DatasetSummary(name=name)
            self.datasets[name] = summary
            self._next_row_index[name] = 0
        return summary

    def feed(self, token: Token) -> None:
        kind = token.kind
        if kind is TokenKind.START_OBJECT or kind is TokenKind.START_ARRAY:
            if not self._stack:
                if self._seen_root or kind is not TokenKind.START_OBJECT:
                    raise AnalysisError("Export document must be a single JSON object")
                self._seen_root = True
            frame = open_frame(self._stack, token)
            top_level = classify_container(self._stack) is None
            self._stack.append(frame)
            self._on_open(frame, top_level)
        elif kind is TokenKind.END_OBJECT or kind is TokenKind.END_ARRAY:
            self._stack.pop()
        elif not self._stack:
            raise AnalysisError("Export document must be a single JSON object")

        if self._captures:
            self._feed_captures(token)

    def _on_open(self, frame: Frame, top_level: bool) -> None:
        if frame.kind is FrameKind.DATASET and frame.container is Container.OBJECT:
            # Nested datasets only get a summary once they hold rows or a schema
            if top_level:
                self._summary(frame.dataset)
        elif frame.kind is FrameKind.ROW:
            summary = self._summary(frame.dataset)
            row_index = self._next_row_index[frame.dataset]
            self._next_row_index[frame.dataset] = row_index + 1
            summary.row_count += 1
            self.total_rows += 1
            self._captures.append(_Capture(ValueBuilder(), frame.dataset, FrameKind.ROW, row_index))
        elif frame.kind is FrameKind.SCHEMA:
            self._summary(frame.dataset)
            self._captures.append(_Capture(ValueBuilder(), frame.dataset, FrameKind.SCHEMA))

    def _feed_captures(self, token: Token) -> None:
        still_active = []
        for capture in self._captures:
            capture.builder.feed(token)
            if capture.builder.done:
                self._finalize(capture)
            else:
                still_active.append(capture)
        self._captures = still_active

    def _finalize(self, capture: _Capture) -> None:
        value = capture.builder.value
        if capture.purpose is FrameKind.SCHEMA:
            self.datasets[capture.dataset].schema = value
            return

        dataset = capture.dataset
        if ATTACHMENT_DATASET_PATTERN.search(dataset):
            return

        summary = self.datasets[dataset]
        if len(summary.sample_rows) < self.sample_row_limit:
            summary.sample_rows.append(sanitize_sample_value(value))

        if self.row_filter.should_skip(dataset, value):
            return

        batch = self._batches.setdefault(dataset, [])
        batch.append((capture.row_index, value))
        if len(batch) >= self.staging_batch_size:
            self._flush(dataset)

    def _flush(self, dataset: str) -> None:
        batch = self._batches.get(dataset)
        if not batch:
            return
        if self._should_abort is not None and self._should_abort():
            raise ImportCanceled("Export analysis canceled")
        self._stage_batch(dataset, batch)
        self._batches[dataset] = []

    def finish(self) -> None:
        """Flush pending batches and settle the truncation flags."""
        if self._stack or self._captures:
            raise AnalysisError("Export document ended inside an open container")
        for dataset in list(self._batches):
            self._flush(dataset)
        for summary in self.datasets.values():
            summary.truncated = summary.row_count > len(summary.sample_rows)


def analyze_export(
    stream: IO[bytes],
    job_id: str,
    staging,
    options: AnalysisOptions | None = None,
) -> AnalysisResult:
    """
    Stream an export document into the staging store.

    Args:
        stream: Binary stream of the export document
        job_id: Import job the staged rows belong to
        staging: StagingStore receiving row batches
        options: Sampling, batching, progress and cancellation settings

    Returns:
        Per-dataset summaries plus timing metadata

    Raises:
        AnalysisError: The document is malformed
        ImportCanceled: Cancellation was observed; no summaries are emitted
    """
    options = options or AnalysisOptions()
    started_at = datetime.now(timezone.utc)
    start = time.monotonic()

    reader = ProgressReader(
        stream,
        total_bytes=options.total_bytes,
        on_progress=options.on_progress,
        should_abort=options.should_abort,
    )
    assembler = DatasetAssembler(
        stage_batch=lambda dataset, rows: staging.stage_batch(job_id, dataset, rows),
        sample_row_limit=options.sample_row_limit,
        staging_batch_size=options.staging_batch_size,
        should_abort=options.should_abort,
    )

    try:
        for token in iter_tokens(reader):
            assembler.feed(token)
        assembler.finish()
    finally:
        reader.close()

    if options.on_dataset_complete is not None:
        for summary in assembler.datasets.values():
            options.on_dataset_complete(summary)

    completed_at = datetime.now(timezone.utc)
    meta = {
        "totalDatasets": len(assembler.datasets),
        "totalRows": assembler.total_rows,
        "durationMs": int((time.monotonic() - start) * 1000),
        "startedAt": started_at.isoformat(),
        "completedAt": completed_at.isoformat(),
        "fileSizeBytes": options.total_bytes,
    }
    logger.info(
        f"Analyzed export for job {job_id}: {meta['totalDatasets']} datasets, {meta['totalRows']} rows"
    )
    return AnalysisResult(datasets=assembler.datasets, meta=meta)


def summarize_counts(summaries: Iterable[DatasetSummary]) -> dict[str, int]:
    """Row count per dataset name."""
    return {summary.name: summary.row_count for summary in summaries}
