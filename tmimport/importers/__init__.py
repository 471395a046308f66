"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Entity importers of the import phase.

Each importer module handles a family of related entity types and returns one
``EntitySummary`` per entity type. ``run_import_pipeline`` runs them in
dependency order.
"""

from tmimport.importers.base import ChunkPolicy, EntitySummary, IdMaps, ImportRuntime
from tmimport.importers.pipeline import IMPORT_STEPS, run_import_pipeline

__all__ = [
    "ChunkPolicy",
    "EntitySummary",
    "IdMaps",
    "ImportRuntime",
    "IMPORT_STEPS",
    "run_import_pipeline",
]
