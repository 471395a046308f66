"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Exception hierarchy for the import pipeline.

Row-level data problems are never raised; importers record them in the
activity log and move on. What is raised here either aborts the job
(configuration and analysis errors) or ends it cleanly (cancellation).
"""


class TmImportError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(TmImportError):
    """
    A mapping decision cannot be honoured.

    Raised when a ``map`` entry points at a destination entity that does not
    exist, or a ``create`` entry lacks a field the destination requires.
    """

    def __init__(self, message: str, entity_type: str | None = None, source_id: int | None = None):
        super().__init__(message)
        self.entity_type = entity_type
        self.source_id = source_id


class AnalysisError(TmImportError):
    """The export document is not well-formed JSON of the expected shape."""


class ImportCanceled(TmImportError):
    """Cooperative cancellation was observed; not a failure."""


class JobNotFoundError(TmImportError):
    """No import job exists with the requested id."""

    def __init__(self, job_id: str):
        super().__init__(f"Import job {job_id} not found")
        self.job_id = job_id


class UnsupportedModeError(TmImportError):
    """``process`` was asked for a mode other than analyze or import."""

    def __init__(self, mode: str):
        super().__init__(f"Unsupported import mode: {mode}")
        self.mode = mode
