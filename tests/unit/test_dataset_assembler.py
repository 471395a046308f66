"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""Unit tests for dataset classification, row assembly and sampling."""

import io
import json

import pytest

from tmimport.dataset_assembler import (
    MAX_SAMPLE_STRING_LENGTH,
    AnalysisOptions,
    Container,
    Frame,
    FrameKind,
    analyze_export,
    classify_container,
    dataset_name_for_object,
    sanitize_sample_value,
)
from tmimport.exceptions import AnalysisError, ImportCanceled


class RecordingStaging:
    """Collects staged batches instead of writing them."""

    def __init__(self):
        self.batches = []

    def stage_batch(self, job_id, dataset, rows):
        self.batches.append((job_id, dataset, list(rows)))

    def rows(self, dataset):
        return [row for _, name, batch in self.batches if name == dataset for row in batch]


def analyze(document, **options):
    staging = RecordingStaging()
    content = json.dumps(document).encode("utf-8")
    result = analyze_export(io.BytesIO(content), "job-1", staging, AnalysisOptions(**options))
    return result, staging


@pytest.mark.unit
class TestClassification:
    def test_root_member_is_a_dataset(self):
        stack = [Frame(FrameKind.OPAQUE, Container.OBJECT, None)]
        assert dataset_name_for_object(stack, "projects") == "projects"

    def test_keywords_never_name_a_dataset(self):
        stack = [Frame(FrameKind.OPAQUE, Container.OBJECT, None)]
        for key in ("data", "datasets", "meta"):
            assert dataset_name_for_object(stack, key) is None

    def test_top_level_fields_is_a_dataset(self):
        stack = [Frame(FrameKind.OPAQUE, Container.OBJECT, None)]
        assert dataset_name_for_object(stack, "fields") == "fields"

    def test_schema_keyword_inside_dataset_is_not_a_dataset(self):
        stack = [
            Frame(FrameKind.OPAQUE, Container.OBJECT, None),
            Frame(FrameKind.DATASET, Container.OBJECT, "projects", "projects"),
        ]
        assert dataset_name_for_object(stack, "schema") is None

    def test_member_of_dataset_container_is_a_dataset(self):
        stack = [
            Frame(FrameKind.OPAQUE, Container.OBJECT, None),
            Frame(FrameKind.OPAQUE, Container.OBJECT, "datasets"),
        ]
        assert dataset_name_for_object(stack, "runs") == "runs"

    def test_classify_container_finds_innermost_dataset(self):
        stack = [
            Frame(FrameKind.OPAQUE, Container.OBJECT, None),
            Frame(FrameKind.DATASET, Container.OBJECT, "runs", "runs"),
            Frame(FrameKind.DATASET, Container.ARRAY, "data", "runs"),
            Frame(FrameKind.ROW, Container.OBJECT, None, "runs"),
        ]
        assert classify_container(stack) == "runs"
        assert classify_container(stack[:1]) is None


@pytest.mark.unit
class TestAnalyzeExport:
    def test_rows_are_staged_in_order_with_row_index(self):
        document = {
            "projects": {"schema": {"id": "int"}, "data": [{"id": 1}, {"id": 2}]},
            "milestones": {"data": [{"id": 10, "project_id": 1}]},
        }
        result, staging = analyze(document)

        assert set(result.datasets) == {"projects", "milestones"}
        assert result.datasets["projects"].row_count == 2
        assert result.datasets["projects"].schema == {"id": "int"}
        assert staging.rows("projects") == [(0, {"id": 1}), (1, {"id": 2})]
        assert staging.rows("milestones") == [(0, {"id": 10, "project_id": 1})]
        assert result.meta["totalDatasets"] == 2
        assert result.meta["totalRows"] == 3

    def test_truncated_samples_keep_full_row_count(self):
        document = {"run_results": {"data": [{"id": index} for index in range(50)]}}
        result, staging = analyze(document, sample_row_limit=5)

        summary = result.datasets["run_results"]
        assert summary.row_count == 50
        assert len(summary.sample_rows) == 5
        assert summary.truncated is True
        assert len(staging.rows("run_results")) == 50

    def test_small_dataset_is_not_truncated(self):
        result, _ = analyze({"tags": {"data": [{"id": 1}]}}, sample_row_limit=5)
        assert result.datasets["tags"].truncated is False

    def test_rows_are_staged_in_fixed_size_batches(self):
        document = {"runs": {"data": [{"id": index} for index in range(7)]}}
        _, staging = analyze(document, staging_batch_size=3)

        assert [len(batch) for _, _, batch in staging.batches] == [3, 3, 1]

    def test_row_array_keys_besides_data(self):
        document = {"tags": {"rows": [{"id": 1}]}, "users": {"items": [{"id": 2}], "columns": [{"id": "name"}]}}
        result, staging = analyze(document)

        assert staging.rows("tags") == [(0, {"id": 1})]
        assert staging.rows("users") == [(0, {"id": 2})]

    def test_datasets_under_container_key(self):
        document = {"datasets": {"projects": {"data": [{"id": 1}]}}, "meta": {"version": 2}}
        result, staging = analyze(document)

        assert list(result.datasets) == ["projects"]
        assert staging.rows("projects") == [(0, {"id": 1})]

    def test_attachment_rows_are_counted_but_not_staged(self):
        result, staging = analyze({"run_attachments": {"data": [{"id": 1}, {"id": 2}]}})

        assert result.datasets["run_attachments"].row_count == 2
        assert staging.rows("run_attachments") == []

    def test_snapshot_repository_rows_are_dropped(self):
        document = {
            "repositories": {"data": [{"id": 1, "is_snapshot": 0}, {"id": 2, "is_snapshot": 1}]},
            "repository_cases": {"data": [{"id": 5, "repo_id": 1}, {"id": 6, "repo_id": 2}]},
        }
        result, staging = analyze(document)

        assert staging.rows("repositories") == [(0, {"id": 1, "is_snapshot": 0})]
        assert staging.rows("repository_cases") == [(0, {"id": 5, "repo_id": 1})]
        assert result.datasets["repository_cases"].row_count == 2

    def test_dataset_complete_callback_sees_every_summary(self):
        seen = []
        analyze(
            {"projects": {"data": [{"id": 1}]}, "tags": {"data": []}},
            on_dataset_complete=lambda summary: seen.append(summary.name),
        )
        assert sorted(seen) == ["projects", "tags"]

    def test_root_must_be_an_object(self):
        with pytest.raises(AnalysisError):
            analyze([{"id": 1}])

    def test_abort_stops_before_staging(self):
        staging = RecordingStaging()
        content = json.dumps({"runs": {"data": [{"id": 1}]}}).encode("utf-8")
        with pytest.raises(ImportCanceled):
            analyze_export(io.BytesIO(content), "job-1", staging, AnalysisOptions(should_abort=lambda: True))
        assert staging.batches == []


@pytest.mark.unit
def test_sanitize_sample_value_bounds_long_strings():
    value = sanitize_sample_value("x" * (MAX_SAMPLE_STRING_LENGTH + 5))
    assert value.startswith("x" * MAX_SAMPLE_STRING_LENGTH)
    assert value.endswith("[5 more characters]")


@pytest.mark.unit
def test_sanitize_sample_value_bounds_arrays():
    value = sanitize_sample_value(list(range(15)))
    assert value[:10] == list(range(10))
    assert value[-1] == "[5 more items]"
