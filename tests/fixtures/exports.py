"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""Builders for export documents and an in-memory blob store."""

import io
import json
from typing import Any

import pytest


def build_export(datasets: dict[str, list[dict[str, Any]]], schemas: dict[str, Any] | None = None) -> bytes:
    """Serialize ``{dataset: rows}`` in the export's ``{"name": {"schema", "data"}}`` shape."""
    schemas = schemas or {}
    document = {}
    for name, rows in datasets.items():
        dataset: dict[str, Any] = {}
        if name in schemas:
            dataset["schema"] = schemas[name]
        dataset["data"] = rows
        document[name] = dataset
    return json.dumps(document).encode("utf-8")


def stage_rows(staging, job_id: str, datasets: dict[str, list[dict[str, Any]]]) -> None:
    """Stage rows directly, skipping analysis."""
    for name, rows in datasets.items():
        staging.stage_batch(job_id, name, list(enumerate(rows)))


class InMemoryBlobStore:
    """Blob store over a dict of key to bytes."""

    def __init__(self):
        self.blobs: dict[str, bytes] = {}

    def put(self, key: str, content: bytes) -> str:
        self.blobs[key] = content
        return key

    def open_read_stream(self, key: str):
        content = self.blobs[key]
        return io.BytesIO(content), len(content)


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def demo_export() -> dict[str, list[dict[str, Any]]]:
    """One project with one milestone."""
    return {
        "projects": [{"id": 1, "name": "Demo"}],
        "milestones": [{"id": 10, "project_id": 1, "name": "M1"}],
    }


@pytest.fixture
def demo_configuration() -> dict[str, Any]:
    return {"users": {"1": {"action": "create", "email": "a@x.com"}}, "milestoneTypes": {}}
