"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Job orchestration for the two-phase import.

An import job moves through analyze (stream the export into staging), an
operator-driven configure step, and import (run the entity pipeline). The
orchestrator owns the job record: every status change, counter and activity
log entry reaches the database through it. Each job runs inside a logging
correlation id equal to the job id.
"""

import copy
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import IO, Any, Protocol

from rich.console import Console
from rich.table import Table
from sqlalchemy import delete, select

from tmimport.core.config import ImportConfig
from tmimport.core.db_manager import SQLDatabaseManager
from tmimport.core.db_models import ImportDataset, ImportJob
from tmimport.core.logging import correlation_id, log_operation
from tmimport.dataset_assembler import AnalysisOptions, DatasetSummary, analyze_export, summarize_counts
from tmimport.exceptions import ConfigurationError, ImportCanceled, JobNotFoundError, UnsupportedModeError
from tmimport.importers import ImportRuntime, run_import_pipeline
from tmimport.importers.base import EntitySummary
from tmimport.mapping_config import (
    MappingConfiguration,
    normalize_mapping_configuration,
    serialize_mapping_configuration,
)
from tmimport.progress import ImportContext, compute_entity_totals
from tmimport.staging import StagingStore

logger = logging.getLogger("tmimport.job_orchestrator")

RECENT_ACTIVITY_LIMIT = 10


class ImportJobStatus(str, Enum):
    """Status of an import job."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    READY = "READY"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


class ImportJobPhase(str, Enum):
    """Phase an import job is in."""

    UPLOADING = "UPLOADING"
    ANALYZING = "ANALYZING"
    CONFIGURING = "CONFIGURING"
    IMPORTING = "IMPORTING"


FINAL_STATUSES = frozenset({ImportJobStatus.COMPLETED, ImportJobStatus.FAILED, ImportJobStatus.CANCELED})


class BlobStore(Protocol):
    def open_read_stream(self, key: str) -> tuple[IO[bytes], int | None]:
        """Open an uploaded export for reading; the size may be unknown."""
        ...


class LocalFileBlobStore:
    """Blob store over the local filesystem; keys are paths below ``base_dir``."""

    def __init__(self, base_dir: str | Path | None = None):
        self.base_dir = Path(base_dir) if base_dir is not None else None

    def _path(self, key: str) -> Path:
        path = Path(key)
        if self.base_dir is not None and not path.is_absolute():
            path = self.base_dir / path
        return path

    def open_read_stream(self, key: str) -> tuple[IO[bytes], int | None]:
        path = self._path(key)
        return open(path, "rb"), os.path.getsize(path)


class ReindexTrigger(Protocol):
    def enqueue_reindex(self, job_id: str, user_id: str | None) -> None: ...


class LoggingReindexTrigger:
    """Records the reindex request in the log; there is no search index to feed."""

    def enqueue_reindex(self, job_id: str, user_id: str | None) -> None:
        logger.info(f"Reindex requested after import job {job_id} (user {user_id or 'unknown'})")


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ImportJobOrchestrator:
    """
    Runs import jobs through analyze and import and keeps their records current.

    Jobs are processed one at a time; nothing here is safe to call for the
    same job from two threads at once.
    """

    def __init__(
        self,
        db: SQLDatabaseManager,
        blob_store: BlobStore,
        reindex_trigger: ReindexTrigger | None = None,
        config: ImportConfig | None = None,
    ):
        self.db = db
        self.blob_store = blob_store
        self.reindex_trigger = reindex_trigger or LoggingReindexTrigger()
        self.config = config or ImportConfig()
        self.staging = StagingStore(db)

    # ------------------------------------------------------------------
    # Job record helpers
    # ------------------------------------------------------------------

    def _load_job(self, job_id: str) -> ImportJob:
        with self.db.get_session() as session:
            job = session.get(ImportJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job

    def _update_job(self, job_id: str, **values: Any) -> None:
        with self.db.get_session() as session:
            job = session.get(ImportJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            for name, value in values.items():
                setattr(job, name, value)

    def _cancel_requested(self, job_id: str) -> bool:
        with self.db.get_session() as session:
            return bool(
                session.execute(select(ImportJob.cancel_requested).where(ImportJob.id == job_id)).scalar()
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_job(
        self,
        storage_key: str,
        created_by_id: str | None = None,
        original_file_name: str | None = None,
        size: int | None = None,
    ) -> str:
        """Register an uploaded export as a new queued job and return its id."""
        job_id = uuid.uuid4().hex
        with self.db.get_session() as session:
            session.add(
                ImportJob(
                    id=job_id,
                    created_by_id=created_by_id,
                    storage_key=storage_key,
                    original_file_name=original_file_name or os.path.basename(storage_key),
                    file_size_bytes=size,
                    status=ImportJobStatus.QUEUED.value,
                    phase=ImportJobPhase.UPLOADING.value,
                    activity_log=[],
                    entity_progress={},
                )
            )
        logger.info(f"Created import job {job_id} for {storage_key}")
        return job_id

    def process(self, job_id: str, mode: str) -> str:
        """
        Run one phase of a job.

        Args:
            job_id: Job to process
            mode: ``analyze`` or ``import``

        Returns:
            The job's status afterwards

        Raises:
            JobNotFoundError: No such job
            UnsupportedModeError: ``mode`` is not a known phase
        """
        with correlation_id(job_id):
            job = self._load_job(job_id)
            if job.status in {status.value for status in FINAL_STATUSES}:
                logger.info(f"Import job {job_id} is already {job.status}; nothing to do")
                return job.status
            if mode == "analyze":
                self.analyze(job)
            elif mode == "import":
                self.run_import(job)
            else:
                raise UnsupportedModeError(mode)
            return self._load_job(job_id).status

    def analyze(self, job: ImportJob) -> None:
        """Stream the export into staging and store one summary per dataset."""
        job_id = job.id
        if job.cancel_requested:
            self._update_job(
                job_id,
                status=ImportJobStatus.CANCELED.value,
                status_message="Import canceled before analysis started",
                completed_at=_now(),
            )
            return

        with self.db.get_session() as session:
            session.execute(delete(ImportDataset).where(ImportDataset.job_id == job_id))
        self.staging.cleanup(job_id)
        self._update_job(
            job_id,
            status=ImportJobStatus.RUNNING.value,
            phase=ImportJobPhase.ANALYZING.value,
            status_message="Analyzing export",
            started_at=_now(),
            processed_datasets=0,
            total_datasets=0,
            processed_rows=0,
            error_message=None,
        )

        def on_progress(bytes_read: int, total_bytes: int, percentage: int, eta: int | None) -> None:
            self._update_job(
                job_id,
                status_message=f"Analyzing export ({percentage}%)",
                estimated_time_remaining=str(eta) if eta is not None else None,
            )

        def on_dataset_complete(summary: DatasetSummary) -> None:
            if self._cancel_requested(job_id):
                raise ImportCanceled("Export analysis canceled")
            with self.db.get_session() as session:
                session.add(
                    ImportDataset(
                        job_id=job_id,
                        name=summary.name,
                        row_count=summary.row_count,
                        schema=summary.schema,
                        sample_rows=summary.sample_rows,
                        truncated=summary.truncated,
                    )
                )
                record = session.get(ImportJob, job_id)
                record.processed_datasets += 1
                record.processed_rows += summary.row_count

        try:
            with log_operation(logger, f"analysis of job {job_id}", context={"job_id": job_id}):
                stream, size = self.blob_store.open_read_stream(job.storage_key)
                options = AnalysisOptions(
                    sample_row_limit=self.config.sample_row_limit,
                    staging_batch_size=self.config.staging_batch_size,
                    total_bytes=size or job.file_size_bytes,
                    on_progress=on_progress,
                    should_abort=lambda: self._cancel_requested(job_id),
                    on_dataset_complete=on_dataset_complete,
                )
                with stream:
                    result = analyze_export(stream, job_id, self.staging, options)
        except ImportCanceled:
            logger.info(f"Analysis of job {job_id} canceled")
            self._update_job(
                job_id,
                status=ImportJobStatus.CANCELED.value,
                status_message="Analysis canceled",
                completed_at=_now(),
            )
            return
        except Exception as e:
            self._update_job(
                job_id,
                status=ImportJobStatus.FAILED.value,
                status_message="Analysis failed",
                error_message=str(e),
                completed_at=_now(),
            )
            raise

        self._update_job(
            job_id,
            status=ImportJobStatus.READY.value,
            phase=ImportJobPhase.CONFIGURING.value,
            status_message="Analysis complete",
            total_datasets=len(result.datasets),
            processed_datasets=len(result.datasets),
            processed_rows=result.meta["totalRows"],
            estimated_time_remaining=None,
            analysis={**result.meta, "datasets": summarize_counts(result.datasets.values())},
        )

    def set_configuration(self, job_id: str, raw: Any) -> MappingConfiguration:
        """Normalize operator decisions and store them on the job."""
        configuration = normalize_mapping_configuration(raw)
        self._update_job(job_id, configuration=serialize_mapping_configuration(configuration))
        logger.info(f"Stored mapping configuration for job {job_id}: {configuration.entry_counts()}")
        return configuration

    def _make_persister(self, job_id: str, context: ImportContext):
        def persist(entity: str | None, status_message: str | None) -> None:
            eta, rate = context.calculate_progress_metrics(context.planned_total)
            values: dict[str, Any] = {
                "processed_count": context.processed_count,
                "total_count": context.planned_total,
                "skipped_count": context.skipped_count,
                "entity_progress": copy.deepcopy(context.entity_progress),
                "activity_log": list(context.activity_log),
                "estimated_time_remaining": eta,
                "processing_rate": rate,
            }
            if entity is not None:
                values["current_entity"] = entity
            if status_message is not None:
                values["status_message"] = status_message
            self._update_job(job_id, **values)

        return persist

    def run_import(self, job: ImportJob) -> list[EntitySummary]:
        """
        Run the entity pipeline for a configured job.

        Raises:
            ConfigurationError: The job has no configuration, or a mapping
                decision cannot be honoured
        """
        job_id = job.id
        if not job.configuration:
            raise ConfigurationError(f"Import job {job_id} has no mapping configuration")

        configuration = normalize_mapping_configuration(job.configuration)
        last_good = serialize_mapping_configuration(configuration)
        context = ImportContext(job_id=job_id, should_abort=lambda: self._cancel_requested(job_id))
        context.persist = self._make_persister(job_id, context)
        totals = compute_entity_totals(configuration, self.staging.get_dataset_counts(job_id))
        context.planned_total = sum(totals.values())

        self._update_job(
            job_id,
            status=ImportJobStatus.RUNNING.value,
            phase=ImportJobPhase.IMPORTING.value,
            status_message="Starting import",
            current_entity=None,
            processed_count=0,
            total_count=context.planned_total,
            error_count=0,
            skipped_count=0,
            activity_log=[],
            entity_progress={},
            error_message=None,
            last_import_started_at=_now(),
        )

        def on_step_complete(summary: EntitySummary) -> None:
            nonlocal last_good
            last_good = serialize_mapping_configuration(configuration)

        runtime = ImportRuntime(
            self.db,
            self.staging,
            job_id,
            configuration,
            context,
            config=self.config,
            created_by_id=job.created_by_id,
        )
        start = time.monotonic()
        try:
            with log_operation(logger, f"import of job {job_id}", context={"job_id": job_id}):
                summaries = run_import_pipeline(runtime, on_step_complete=on_step_complete)
        except ImportCanceled:
            context.log_message("Import canceled")
            self._update_job(
                job_id,
                status=ImportJobStatus.CANCELED.value,
                status_message="Import canceled",
                processed_count=context.processed_count,
                skipped_count=context.skipped_count,
                activity_log=list(context.activity_log),
                entity_progress=copy.deepcopy(context.entity_progress),
                configuration=last_good,
                completed_at=_now(),
            )
            return []
        except Exception as e:
            context.log_message(f"Import failed: {e}", {"errorType": type(e).__name__})
            self._update_job(
                job_id,
                status=ImportJobStatus.FAILED.value,
                status_message="Import failed",
                error_message=str(e),
                error_count=1,
                processed_count=context.processed_count,
                skipped_count=context.skipped_count,
                activity_log=list(context.activity_log),
                entity_progress=copy.deepcopy(context.entity_progress),
                configuration=last_good,
                completed_at=_now(),
            )
            raise

        duration_ms = int((time.monotonic() - start) * 1000)
        context.log_message("Import completed", {"durationMs": duration_ms})
        self._update_job(
            job_id,
            status=ImportJobStatus.COMPLETED.value,
            status_message="Import completed",
            current_entity=None,
            processed_count=context.processed_count,
            total_count=context.processed_count,
            skipped_count=context.skipped_count,
            duration_ms=duration_ms,
            estimated_time_remaining=None,
            activity_log=list(context.activity_log),
            entity_progress=copy.deepcopy(context.entity_progress),
            configuration=serialize_mapping_configuration(configuration),
            completed_at=_now(),
        )

        try:
            self.reindex_trigger.enqueue_reindex(job_id, job.created_by_id)
        except Exception as e:
            logger.warning(f"Could not enqueue reindex after import job {job_id}: {e}")
        return summaries

    def request_cancel(self, job_id: str) -> bool:
        """
        Ask a job to stop at its next chunk boundary.

        Returns:
            False when the job has already finished
        """
        job = self._load_job(job_id)
        if job.status in {status.value for status in FINAL_STATUSES}:
            return False
        self._update_job(job_id, cancel_requested=True)
        logger.info(f"Cancellation requested for import job {job_id}")
        return True

    def reset_failed_rows(self, job_id: str, dataset: str | None = None) -> int:
        self._load_job(job_id)
        return self.staging.reset_failed_rows(job_id, dataset)

    def cleanup(self, job_id: str) -> None:
        """Drop the job's staged rows, mappings and dataset summaries; the job record stays."""
        self._load_job(job_id)
        self.staging.cleanup(job_id)
        with self.db.get_session() as session:
            session.execute(delete(ImportDataset).where(ImportDataset.job_id == job_id))
        logger.info(f"Cleaned up staging data of import job {job_id}")

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_status(self, job_id: str) -> dict[str, Any]:
        with self.db.get_session() as session:
            job = session.get(ImportJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            datasets = [
                {"name": dataset.name, "rowCount": dataset.row_count, "truncated": dataset.truncated}
                for dataset in job.datasets
            ]
            return {
                "id": job.id,
                "status": job.status,
                "phase": job.phase,
                "statusMessage": job.status_message,
                "currentEntity": job.current_entity,
                "processedCount": job.processed_count,
                "totalCount": job.total_count,
                "errorCount": job.error_count,
                "skippedCount": job.skipped_count,
                "processedDatasets": job.processed_datasets,
                "totalDatasets": job.total_datasets,
                "processedRows": job.processed_rows,
                "estimatedTimeRemaining": job.estimated_time_remaining,
                "processingRate": job.processing_rate,
                "durationMs": job.duration_ms,
                "entityProgress": job.entity_progress or {},
                "activityLog": job.activity_log or [],
                "errorMessage": job.error_message,
                "cancelRequested": job.cancel_requested,
                "analysis": job.analysis,
                "datasets": datasets,
            }

    def print_status(self, job_id: str, console: Console | None = None) -> None:
        """Print the job's status, entity progress and recent activity as rich tables."""
        console = console or Console()
        status = self.get_status(job_id)

        color = {
            ImportJobStatus.COMPLETED.value: "green",
            ImportJobStatus.RUNNING.value: "yellow",
            ImportJobStatus.FAILED.value: "red",
            ImportJobStatus.CANCELED.value: "magenta",
        }.get(status["status"], "blue")

        job_table = Table(title=f"Import Job {job_id}")
        job_table.add_column("Field")
        job_table.add_column("Value")
        job_table.add_row("Status", status["status"], style=color)
        job_table.add_row("Phase", status["phase"] or "N/A")
        job_table.add_row("Message", status["statusMessage"] or "")
        job_table.add_row("Processed", f"{status['processedCount']:,} / {status['totalCount']:,}")
        job_table.add_row("Skipped", str(status["skippedCount"]))
        job_table.add_row("Datasets", f"{status['processedDatasets']} / {status['totalDatasets']}")
        if status["processingRate"]:
            job_table.add_row("Rate", status["processingRate"])
        if status["estimatedTimeRemaining"]:
            job_table.add_row("ETA", f"{status['estimatedTimeRemaining']}s")
        if status["errorMessage"]:
            job_table.add_row("Error", status["errorMessage"], style="red")
        console.print(job_table)

        if status["entityProgress"]:
            entity_table = Table(title="Entity Progress")
            entity_table.add_column("Entity")
            entity_table.add_column("Total", justify="right")
            entity_table.add_column("Created", justify="right")
            entity_table.add_column("Mapped", justify="right")
            for entity, progress in status["entityProgress"].items():
                entity_table.add_row(
                    entity, str(progress["total"]), str(progress["created"]), str(progress["mapped"])
                )
            console.print(entity_table)

        recent = status["activityLog"][-RECENT_ACTIVITY_LIMIT:]
        if recent:
            activity_table = Table(title="Recent Activity")
            activity_table.add_column("Timestamp")
            activity_table.add_column("Type")
            activity_table.add_column("Message")
            for entry in recent:
                if entry.get("type") == "summary":
                    message = f"{entry['entity']}: {entry['created']} created, {entry['mapped']} mapped"
                else:
                    message = entry.get("message", "")
                activity_table.add_row(entry.get("timestamp", ""), entry.get("type", ""), message)
            console.print(activity_table)
