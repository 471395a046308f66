"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Durable staging of export rows and entity mappings.

Analyze appends every row here; import reads the rows back in ``row_index``
order and records source to destination id correspondences. Methods that
write take an optional session so an importer can make its row markers and
mappings part of the same transaction as the destination writes.
"""

import json
import logging
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from tmimport.core.db_manager import SQLDatabaseManager
from tmimport.core.db_models import EntityMapping, StagingRow

logger = logging.getLogger("tmimport.staging")

FIELD_VALUE_DATASET = "automation_run_test_fields"
STEP_TEXT_DATASET = "run_result_steps"
STEP_TEXT_COLUMNS = ("text1", "text2", "text3", "text4")
PROCESSING_FAILED = "Processing failed"


@dataclass(frozen=True)
class StagedRow:
    id: int
    row_index: int
    data: dict[str, Any]


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)


def decode_target_id(value: str | None) -> int | str | None:
    """Mapping targets are stored as text; integer ids come back as ints."""
    if value is None:
        return None
    text = str(value)
    if text.lstrip("-").isdigit():
        return int(text)
    return text


def prepare_staging_row(job_id: str, dataset: str, row_index: int, data: Any) -> dict[str, Any]:
    """
    Build the column values for one staged row.

    Two datasets keep their bulky text outside the JSON payload:
    ``automation_run_test_fields`` moves ``value`` to ``field_value`` (and copies
    ``name`` to ``field_name``), ``run_result_steps`` moves ``text1``..``text4``
    to their own columns.
    """
    values: dict[str, Any] = {
        "job_id": job_id,
        "dataset_name": dataset,
        "row_index": row_index,
        "processed": False,
        "error": None,
    }
    payload = data

    if dataset == FIELD_VALUE_DATASET and isinstance(data, dict):
        payload = dict(data)
        if "value" in payload:
            raw_value = payload.pop("value")
            if raw_value is not None:
                values["field_value"] = _as_text(raw_value)
        if isinstance(data.get("name"), str):
            values["field_name"] = data["name"]

    elif dataset == STEP_TEXT_DATASET and isinstance(data, dict):
        payload = dict(data)
        for column in STEP_TEXT_COLUMNS:
            if column in payload:
                raw_text = payload.pop(column)
                values[column] = None if raw_text is None else _as_text(raw_text)

    try:
        values["row_data"] = json.dumps(payload, allow_nan=False)
    except (TypeError, ValueError) as e:
        values["row_data"] = "{}"
        values["processed"] = True
        values["error"] = f"Failed to serialize row: {e}"
    return values


def rehydrate_row(row: StagingRow) -> dict[str, Any]:
    """Inverse of ``prepare_staging_row``: the row as it appeared in the export."""
    data = row.data_dict
    if not isinstance(data, dict):
        return {"value": data}

    if row.dataset_name == FIELD_VALUE_DATASET:
        if row.field_value is not None:
            data["value"] = row.field_value
        if row.field_name is not None and "name" not in data:
            data["name"] = row.field_name
    elif row.dataset_name == STEP_TEXT_DATASET:
        for column in STEP_TEXT_COLUMNS:
            text = getattr(row, column)
            if text is not None:
                data[column] = text
    return data


class StagingStore:
    """Row and mapping persistence for one database."""

    def __init__(self, db: SQLDatabaseManager):
        self.db = db

    @contextmanager
    def _session(self, session: Session | None) -> Iterator[Session]:
        if session is not None:
            yield session
        else:
            with self.db.get_session() as own_session:
                yield own_session

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    def stage_batch(
        self,
        job_id: str,
        dataset: str,
        rows: Sequence[tuple[int, Any]],
        session: Session | None = None,
    ) -> int:
        """
        Append a batch of rows.

        Rows that cannot be serialized are stored already processed, with the
        serialization error, so they are visible through ``get_failed_rows``.
        """
        if not rows:
            return 0
        values = [prepare_staging_row(job_id, dataset, index, data) for index, data in rows]
        failed = sum(1 for value in values if value["error"])
        if failed:
            logger.warning(f"{failed} row(s) of {dataset} could not be serialized for staging")
        with self._session(session) as s:
            s.bulk_insert_mappings(StagingRow, values)
        logger.debug(f"Staged {len(values)} rows for {dataset} (job {job_id})")
        return len(values)

    def iter_rows(
        self,
        job_id: str,
        dataset: str,
        batch_size: int = 1000,
        only_unprocessed: bool = False,
    ) -> Iterator[StagedRow]:
        """
        Yield staged rows in ascending ``row_index`` order.

        Each page is read in its own short session with keyset pagination, so
        callers may open write transactions between rows.
        """
        last_index = -1
        while True:
            with self.db.get_session() as session:
                query = (
                    select(StagingRow)
                    .where(
                        StagingRow.job_id == job_id,
                        StagingRow.dataset_name == dataset,
                        StagingRow.row_index > last_index,
                    )
                    .order_by(StagingRow.row_index)
                    .limit(batch_size)
                )
                if only_unprocessed:
                    query = query.where(StagingRow.processed.is_(False))
                page = [
                    StagedRow(id=row.id, row_index=row.row_index, data=rehydrate_row(row))
                    for row in session.scalars(query)
                ]
            if not page:
                return
            yield from page
            last_index = page[-1].row_index
            if len(page) < batch_size:
                return

    def load_dataset(self, job_id: str, dataset: str) -> list[dict[str, Any]]:
        """Load a whole (small) dataset into memory."""
        return [row.data for row in self.iter_rows(job_id, dataset)]

    def process_staged_batch(
        self,
        job_id: str,
        dataset: str,
        batch_size: int,
        processor: Callable[[list[StagedRow]], Sequence[int]],
    ) -> dict[str, int]:
        """
        Feed unprocessed rows to ``processor`` one page at a time.

        The processor returns the ids it handled; those are marked processed and
        the rest of the page is marked failed. If the processor raises, the
        whole page is marked failed with the error message and processing moves
        on to the next page.

        Returns:
            processed and error counts
        """
        processed_count = 0
        error_count = 0
        last_index = -1

        while True:
            with self.db.get_session() as session:
                page = [
                    StagedRow(id=row.id, row_index=row.row_index, data=rehydrate_row(row))
                    for row in session.scalars(
                        select(StagingRow)
                        .where(
                            StagingRow.job_id == job_id,
                            StagingRow.dataset_name == dataset,
                            StagingRow.processed.is_(False),
                            StagingRow.row_index > last_index,
                        )
                        .order_by(StagingRow.row_index)
                        .limit(batch_size)
                    )
                ]
            if not page:
                break

            ids = [row.id for row in page]
            try:
                handled = set(processor(page))
            except Exception as e:
                logger.warning(f"Batch of {len(page)} {dataset} rows failed: {e}")
                self.mark_failed(ids, str(e) or type(e).__name__)
                error_count += len(page)
            else:
                done = [row_id for row_id in ids if row_id in handled]
                failed = [row_id for row_id in ids if row_id not in handled]
                self.mark_processed(done)
                self.mark_failed(failed, PROCESSING_FAILED)
                processed_count += len(done)
                error_count += len(failed)

            last_index = page[-1].row_index

        return {"processed_count": processed_count, "error_count": error_count}

    def mark_processed(self, ids: Sequence[int], session: Session | None = None) -> None:
        if not ids:
            return
        with self._session(session) as s:
            s.execute(
                update(StagingRow)
                .where(StagingRow.id.in_(list(ids)))
                .values(processed=True, error=None)
            )

    def mark_failed(self, ids: Sequence[int], message: str, session: Session | None = None) -> None:
        if not ids:
            return
        with self._session(session) as s:
            s.execute(
                update(StagingRow)
                .where(StagingRow.id.in_(list(ids)))
                .values(processed=True, error=message)
            )

    def reset_failed_rows(self, job_id: str, dataset: str | None = None) -> int:
        """Make failed rows eligible for processing again."""
        with self.db.get_session() as session:
            query = update(StagingRow).where(
                StagingRow.job_id == job_id,
                StagingRow.processed.is_(True),
                StagingRow.error.is_not(None),
            )
            if dataset:
                query = query.where(StagingRow.dataset_name == dataset)
            result = session.execute(query.values(processed=False, error=None))
            count = result.rowcount or 0
        logger.info(f"Reset {count} failed staging rows for job {job_id}")
        return count

    def get_failed_rows(
        self, job_id: str, dataset: str | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        with self.db.get_session() as session:
            query = select(StagingRow).where(
                StagingRow.job_id == job_id,
                StagingRow.processed.is_(True),
                StagingRow.error.is_not(None),
            )
            if dataset:
                query = query.where(StagingRow.dataset_name == dataset)
            rows = session.scalars(query.order_by(StagingRow.row_index).limit(limit)).all()
            return [
                {
                    "id": row.id,
                    "rowIndex": row.row_index,
                    "datasetName": row.dataset_name,
                    "error": row.error,
                    "rowData": row.data_dict,
                }
                for row in rows
            ]

    def _count(self, job_id: str, dataset: str | None, *conditions) -> int:
        with self.db.get_session() as session:
            query = select(func.count(StagingRow.id)).where(StagingRow.job_id == job_id, *conditions)
            if dataset:
                query = query.where(StagingRow.dataset_name == dataset)
            return session.scalar(query) or 0

    def get_unprocessed_count(self, job_id: str, dataset: str | None = None) -> int:
        return self._count(job_id, dataset, StagingRow.processed.is_(False))

    def get_total_count(self, job_id: str, dataset: str | None = None) -> int:
        return self._count(job_id, dataset)

    def get_dataset_counts(self, job_id: str) -> dict[str, int]:
        """Staged row count per dataset."""
        with self.db.get_session() as session:
            rows = session.execute(
                select(StagingRow.dataset_name, func.count(StagingRow.id))
                .where(StagingRow.job_id == job_id)
                .group_by(StagingRow.dataset_name)
            ).all()
        return {name: count for name, count in rows}

    def get_processing_stats(self, job_id: str, dataset: str | None = None) -> dict[str, int]:
        total = self._count(job_id, dataset)
        processed = self._count(
            job_id, dataset, StagingRow.processed.is_(True), StagingRow.error.is_(None)
        )
        errors = self._count(
            job_id, dataset, StagingRow.processed.is_(True), StagingRow.error.is_not(None)
        )
        return {
            "total": total,
            "processed": processed,
            "errors": errors,
            "pending": total - processed - errors,
            "percentComplete": round((processed + errors) / total * 100) if total > 0 else 0,
        }

    # ------------------------------------------------------------------
    # Mappings
    # ------------------------------------------------------------------

    def store_mapping(
        self,
        job_id: str,
        entity_type: str,
        source_id: int,
        target_id: int | str,
        target_type: str,
        metadata: dict[str, Any] | None = None,
        session: Session | None = None,
    ) -> None:
        """Insert or update the mapping keyed by (job, entity type, source id)."""
        with self._session(session) as s:
            mapping = s.scalars(
                select(EntityMapping).where(
                    EntityMapping.job_id == job_id,
                    EntityMapping.entity_type == entity_type,
                    EntityMapping.source_id == source_id,
                )
            ).first()
            if mapping is None:
                s.add(
                    EntityMapping(
                        job_id=job_id,
                        entity_type=entity_type,
                        source_id=source_id,
                        target_id=str(target_id),
                        target_type=target_type,
                        meta_data=metadata,
                    )
                )
            else:
                mapping.target_id = str(target_id)
                mapping.target_type = target_type
                mapping.meta_data = metadata
            s.flush()

    def store_mapping_batch(
        self, job_id: str, mappings: Sequence[dict[str, Any]], session: Session | None = None
    ) -> int:
        if not mappings:
            return 0
        with self._session(session) as s:
            for mapping in mappings:
                self.store_mapping(
                    job_id,
                    mapping["entity_type"],
                    mapping["source_id"],
                    mapping["target_id"],
                    mapping["target_type"],
                    mapping.get("metadata"),
                    session=s,
                )
        return len(mappings)

    def get_mapping(
        self, job_id: str, entity_type: str, source_id: int, session: Session | None = None
    ) -> EntityMapping | None:
        with self._session(session) as s:
            return s.scalars(
                select(EntityMapping).where(
                    EntityMapping.job_id == job_id,
                    EntityMapping.entity_type == entity_type,
                    EntityMapping.source_id == source_id,
                )
            ).first()

    def get_mappings_by_type(self, job_id: str, entity_type: str) -> dict[int, int | str]:
        """Source id to destination id for every stored mapping of a type."""
        with self.db.get_session() as session:
            rows = session.execute(
                select(EntityMapping.source_id, EntityMapping.target_id).where(
                    EntityMapping.job_id == job_id,
                    EntityMapping.entity_type == entity_type,
                )
            ).all()
        return {source_id: decode_target_id(target_id) for source_id, target_id in rows}

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def cleanup(self, job_id: str) -> None:
        """Remove every staged row and mapping of a job."""
        with self.db.get_session() as session:
            session.execute(delete(StagingRow).where(StagingRow.job_id == job_id))
            session.execute(delete(EntityMapping).where(EntityMapping.job_id == job_id))
        logger.info(f"Removed staging data for job {job_id}")

    def cleanup_processed_staging(self, job_id: str) -> int:
        """Remove processed rows, keeping mappings for a later re-run."""
        with self.db.get_session() as session:
            result = session.execute(
                delete(StagingRow).where(StagingRow.job_id == job_id, StagingRow.processed.is_(True))
            )
            return result.rowcount or 0

    def has_staging_data(self, job_id: str) -> bool:
        with self.db.get_session() as session:
            return (
                session.scalar(select(StagingRow.id).where(StagingRow.job_id == job_id).limit(1))
                is not None
            )

    def get_dataset_names(self, job_id: str) -> list[str]:
        with self.db.get_session() as session:
            return list(
                session.scalars(
                    select(StagingRow.dataset_name)
                    .where(StagingRow.job_id == job_id)
                    .distinct()
                    .order_by(StagingRow.dataset_name)
                )
            )
