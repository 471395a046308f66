"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Shared machinery of the entity importers.

``ImportRuntime`` is what every importer receives: database and staging
access, the mapping configuration, the progress context, tuning knobs and the
source to destination id maps filled by earlier importers. Bulk importers hand
their rows to ``run_chunks``, which writes each chunk in one bounded
transaction and marks the chunk's staged rows in that same transaction.
"""

import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, TypeVar

from sqlalchemy import Table, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from tmimport.core.config import ImportConfig
from tmimport.core.db_manager import SQLDatabaseManager
from tmimport.core.db_models import TemplateField, User
from tmimport.exceptions import ConfigurationError, ImportCanceled
from tmimport.mapping_config import MappingConfiguration, MappingEntry
from tmimport.normalization import to_int
from tmimport.progress import ImportContext, ProgressGate
from tmimport.staging import StagedRow, StagingStore, decode_target_id

logger = logging.getLogger("tmimport.importers")

T = TypeVar("T")
RowHandler = Callable[[Session, StagedRow], None]

_UNSET = object()

# Skips logged one by one per entity and reason before they are only counted
SKIP_LOG_LIMIT = 20


@dataclass
class EntitySummary:
    """Outcome of one importer: rows handled, split into created and mapped."""

    entity: str
    total: int = 0
    created: int = 0
    mapped: int = 0
    details: dict[str, int] = field(default_factory=dict)

    def count(self, key: str, amount: int = 1) -> None:
        self.details[key] = self.details.get(key, 0) + amount

    def as_log_entry(self, timestamp: str) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "type": "summary",
            "timestamp": timestamp,
            "entity": self.entity,
            "total": self.total,
            "created": self.created,
            "mapped": self.mapped,
        }
        if self.details:
            entry["details"] = dict(self.details)
        return entry


@dataclass
class FieldMeta:
    id: int
    system_name: str
    display_name: str
    type_name: str
    options: dict[int, str] = field(default_factory=dict)


@dataclass
class IdMaps:
    """Source id to destination id, per entity type, for one import run."""

    workflows: dict[int, int] = field(default_factory=dict)
    statuses: dict[int, int] = field(default_factory=dict)
    groups: dict[int, int] = field(default_factory=dict)
    tags: dict[int, int] = field(default_factory=dict)
    roles: dict[int, int] = field(default_factory=dict)
    milestone_types: dict[int, int] = field(default_factory=dict)
    configurations: dict[int, int] = field(default_factory=dict)
    templates: dict[int, int] = field(default_factory=dict)
    template_names: dict[str, int] = field(default_factory=dict)
    template_source_names: dict[int, str] = field(default_factory=dict)
    template_fields: dict[int, int] = field(default_factory=dict)
    # System name -> destination field id
    case_fields: dict[str, int] = field(default_factory=dict)
    result_fields: dict[str, int] = field(default_factory=dict)
    # Source field value id -> (source field id, value name)
    field_values: dict[int, tuple[int, str]] = field(default_factory=dict)
    users: dict[int, str] = field(default_factory=dict)
    projects: dict[int, int] = field(default_factory=dict)
    project_default_templates: dict[int, int | None] = field(default_factory=dict)
    milestones: dict[int, int] = field(default_factory=dict)
    sessions: dict[int, int] = field(default_factory=dict)
    session_results: dict[int, int] = field(default_factory=dict)
    repositories: dict[int, int] = field(default_factory=dict)
    # Destination project id -> its single destination repository
    project_repositories: dict[int, int] = field(default_factory=dict)
    folders: dict[int, int] = field(default_factory=dict)
    # Destination repository id -> root folder
    root_folders: dict[int, int] = field(default_factory=dict)
    cases: dict[int, int] = field(default_factory=dict)
    automation_cases: dict[int, int] = field(default_factory=dict)
    automation_runs: dict[int, int] = field(default_factory=dict)
    automation_run_tests: dict[int, int] = field(default_factory=dict)
    test_runs: dict[int, int] = field(default_factory=dict)
    test_run_cases: dict[int, int] = field(default_factory=dict)
    test_run_results: dict[int, int] = field(default_factory=dict)
    integrations: dict[int, int] = field(default_factory=dict)
    issues: dict[int, int] = field(default_factory=dict)

    def field_value_name(self, value_id: Any) -> str | None:
        entry = self.field_values.get(to_int(value_id)) if value_id is not None else None
        return entry[1] if entry else None


@dataclass(frozen=True)
class ChunkPolicy:
    size: int
    timeout_ms: int


def chunked(rows: Iterable[T], size: int) -> Iterator[list[T]]:
    batch: list[T] = []
    for row in rows:
        batch.append(row)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def require_mapped_target(
    session: Session,
    model: Any,
    entry: MappingEntry,
    source_id: int,
    label: str,
    noun: str,
    entity_type: str,
) -> Any:
    """
    Destination row a map entry points at.

    Raises:
        ConfigurationError: If no target is set or the target does not exist
    """
    if entry.mapped_to is None:
        raise ConfigurationError(
            f"{label} {source_id} is configured to map but no target {noun} was provided.",
            entity_type=entity_type,
            source_id=source_id,
        )
    existing = session.get(model, entry.mapped_to)
    if existing is None:
        raise ConfigurationError(
            f"{label} {entry.mapped_to} selected for mapping was not found.",
            entity_type=entity_type,
            source_id=source_id,
        )
    return existing


def require_name(
    value: str | None, label: str, source_id: int, entity_type: str, noun: str = "a name"
) -> str:
    name = (value or "").strip()
    if not name:
        raise ConfigurationError(
            f"{label} {source_id} requires {noun} before it can be created.",
            entity_type=entity_type,
            source_id=source_id,
        )
    return name


def ensure_link(session: Session, table: Table, **values: Any) -> bool:
    """Insert an association row unless it already exists; True when inserted."""
    conditions = [table.c[name] == value for name, value in values.items()]
    if session.execute(select(table).where(*conditions).limit(1)).first() is not None:
        return False
    session.execute(insert(table).values(**values))
    return True


def load_field_metadata(session: Session, field_ids: Iterable[int]) -> dict[int, FieldMeta]:
    """Type and option names of destination template fields."""
    ids = sorted(set(field_ids))
    if not ids:
        return {}
    fields = session.scalars(
        select(TemplateField)
        .where(TemplateField.id.in_(ids))
        .options(selectinload(TemplateField.field_type), selectinload(TemplateField.options))
    ).all()
    return {
        template_field.id: FieldMeta(
            id=template_field.id,
            system_name=template_field.system_name,
            display_name=template_field.display_name,
            type_name=template_field.field_type.type if template_field.field_type else "",
            options={option.id: option.name for option in template_field.options},
        )
        for template_field in fields
    }


class ImportRuntime:
    """Everything an importer needs, for one run of one job."""

    def __init__(
        self,
        db: SQLDatabaseManager,
        staging: StagingStore,
        job_id: str,
        configuration: MappingConfiguration,
        context: ImportContext,
        config: ImportConfig | None = None,
        created_by_id: str | None = None,
    ):
        self.db = db
        self.staging = staging
        self.job_id = job_id
        self.configuration = configuration
        self.context = context
        self.config = config or ImportConfig()
        self.created_by_id = created_by_id
        self.id_maps = IdMaps()
        self._dataset_counts: dict[str, int] | None = None
        self._fallback_creator: Any = _UNSET
        self._gate: ProgressGate | None = None
        self._skip_counts: dict[tuple[str, str], int] = {}

    # ------------------------------------------------------------------
    # Staged rows
    # ------------------------------------------------------------------

    def dataset_count(self, dataset: str) -> int:
        if self._dataset_counts is None:
            self._dataset_counts = self.staging.get_dataset_counts(self.job_id)
        return self._dataset_counts.get(dataset, 0)

    def staged_rows(self, dataset: str) -> Iterator[StagedRow]:
        """Every staged row of a dataset in ``row_index`` order, processed or not."""
        return self.staging.iter_rows(self.job_id, dataset, batch_size=self.config.staging_batch_size)

    def load_rows(self, dataset: str) -> list[StagedRow]:
        return list(self.staged_rows(dataset))

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def policy(self, chunk_size: int, timeout_ms: int | None = None) -> ChunkPolicy:
        return ChunkPolicy(size=max(1, chunk_size), timeout_ms=timeout_ms or self.config.transaction_timeout_ms)

    def check_cancel(self) -> None:
        if self.context.abort_requested():
            raise ImportCanceled(f"Import job {self.job_id} canceled")

    def run_in_transaction(self, work: Callable[[Session], T], timeout_ms: int | None = None) -> T:
        """Run ``work`` in one bounded transaction after a cancellation check."""
        self.check_cancel()
        with self.db.transaction(timeout_ms or self.config.transaction_timeout_ms) as session:
            return work(session)

    def run_chunks(
        self,
        entity: str,
        rows: Iterable[StagedRow],
        policy: ChunkPolicy,
        handler: RowHandler,
    ) -> int:
        """
        Feed rows to ``handler`` one chunk per transaction.

        Cancellation is checked before each chunk. When a chunk fails its
        transaction is rolled back, its rows are marked failed in a fresh
        session and the error propagates; earlier chunks stay committed.

        Returns:
            Number of chunks committed
        """
        committed = 0
        for chunk in chunked(rows, policy.size):
            self.check_cancel()
            row_ids = [row.id for row in chunk]
            try:
                with self.db.transaction(policy.timeout_ms) as session:
                    for row in chunk:
                        handler(session, row)
                    self.staging.mark_processed(row_ids, session=session)
            except Exception as e:
                message = str(e) or type(e).__name__
                logger.error(
                    f"{entity}: chunk of {len(chunk)} rows from row {chunk[0].row_index} failed: {message}"
                )
                try:
                    self.staging.mark_failed(row_ids, message)
                except SQLAlchemyError as mark_error:
                    logger.error(f"{entity}: could not mark failed rows: {mark_error}")
                raise
            committed += 1
            self.persist(entity)
        return committed

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def persist(self, entity: str) -> None:
        self.context.persist_progress(entity, self.context.format_in_progress_status(entity))

    def tick(self, entity: str) -> None:
        """Persist progress when enough has changed; call between transactions only."""
        if self._gate is None:
            self._gate = ProgressGate(
                max(self.context.planned_total, 1),
                max_interval=self.config.progress_update_interval,
                clock=self.context.clock,
            )
        if self._gate.should_fire(self.context.processed_count):
            self.persist(entity)

    def log(self, message: str, **details: Any) -> None:
        self.context.log_message(message, details)

    def created(self, summary: EntitySummary, count: int = 1) -> None:
        summary.total += count
        summary.created += count
        self.context.increment_entity_progress(summary.entity, created=count)

    def mapped(self, summary: EntitySummary, count: int = 1) -> None:
        summary.total += count
        summary.mapped += count
        self.context.increment_entity_progress(summary.entity, mapped=count)

    def skip(self, summary: EntitySummary, reason: str, **details: Any) -> None:
        """
        A planned row cannot be imported.

        The first ``SKIP_LOG_LIMIT`` skips per entity and reason are logged one
        by one with their source ids; the rest are counted and logged once by
        ``flush_skips`` when the step ends.
        """
        key = (summary.entity, reason)
        seen = self._skip_counts.get(key, 0) + 1
        self._skip_counts[key] = seen
        if seen <= SKIP_LOG_LIMIT:
            self.context.log_message(reason, {"entity": summary.entity, **details})
        self.context.decrement_entity_total(summary.entity)
        self.context.skipped_count += 1

    def flush_skips(self) -> None:
        """Log one message per reason for the skips that were not logged individually."""
        for (entity, reason), count in self._skip_counts.items():
            if count > SKIP_LOG_LIMIT:
                self.context.log_message(
                    f"{reason}: {count - SKIP_LOG_LIMIT} more rows skipped",
                    {"entity": entity, "skipped": count},
                )
        self._skip_counts.clear()

    # ------------------------------------------------------------------
    # Mappings
    # ------------------------------------------------------------------

    def remembered_target(
        self, session: Session, entity_type: str, source_id: int, model: Any = None
    ) -> Any:
        """
        Destination id stored for a source row by an earlier run.

        When ``model`` is given the target must still exist.
        """
        mapping = self.staging.get_mapping(self.job_id, entity_type, source_id, session=session)
        if mapping is None:
            return None
        target_id = decode_target_id(mapping.target_id)
        if model is not None and session.get(model, target_id) is None:
            return None
        return target_id

    def remember(
        self,
        session: Session,
        entity_type: str,
        source_id: int,
        target_id: Any,
        target_type: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.staging.store_mapping(
            self.job_id, entity_type, source_id, target_id, target_type, metadata, session=session
        )

    def resolve_entry(
        self,
        session: Session,
        entity_type: str,
        source_id: int,
        entry: MappingEntry,
        target_id: Any,
        target_type: str,
        **fields: Any,
    ) -> None:
        """Turn a configuration entry into a map against ``target_id`` and record it."""
        entry.resolve(target_id, **fields)
        self.remember(session, entity_type, source_id, target_id, target_type)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def fallback_creator(self, session: Session) -> str | None:
        """The job's creator, when that user exists in the destination."""
        if self._fallback_creator is _UNSET:
            creator = self.created_by_id
            if creator and session.get(User, creator) is None:
                logger.debug(f"Job creator {creator} does not exist in the destination")
                creator = None
            self._fallback_creator = creator
        return self._fallback_creator

    def resolve_user(self, session: Session, source_user_id: Any) -> str | None:
        source_id = to_int(source_user_id)
        if source_id is not None:
            user_id = self.id_maps.users.get(source_id)
            if user_id:
                return user_id
        return self.fallback_creator(session)

    def mapped_user(self, source_user_id: Any) -> str | None:
        source_id = to_int(source_user_id)
        return self.id_maps.users.get(source_id) if source_id is not None else None
