"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

import pytest

from tmimport.staging import decode_target_id, prepare_staging_row


@pytest.mark.unit
def test_prepare_row_moves_field_value_out_of_payload():
    values = prepare_staging_row("job-1", "automation_run_test_fields", 0, {"name": "log", "value": "x" * 10})

    assert values["field_value"] == "x" * 10
    assert values["field_name"] == "log"
    assert '"value"' not in values["row_data"]


@pytest.mark.unit
def test_prepare_row_moves_step_text_columns():
    values = prepare_staging_row("job-1", "run_result_steps", 3, {"id": 1, "text1": "Open", "text3": None})

    assert values["text1"] == "Open"
    assert values["text3"] is None
    assert values["row_index"] == 3
    assert values["row_data"] == '{"id": 1}'


@pytest.mark.unit
def test_unserializable_row_is_stored_as_failed():
    values = prepare_staging_row("job-1", "runs", 0, {"elapsed": float("nan")})
    assert values["processed"] is True
    assert values["error"].startswith("Failed to serialize row")


@pytest.mark.unit
def test_decode_target_id():
    assert decode_target_id("12") == 12
    assert decode_target_id("abc-1") == "abc-1"
    assert decode_target_id(None) is None


@pytest.mark.db
class TestStagingStore:
    def test_rows_come_back_in_row_index_order(self, staging):
        staging.stage_batch("job-1", "projects", [(1, {"id": 2}), (0, {"id": 1}), (2, {"id": 3})])

        rows = list(staging.iter_rows("job-1", "projects", batch_size=2))

        assert [row.row_index for row in rows] == [0, 1, 2]
        assert [row.data["id"] for row in rows] == [1, 2, 3]

    def test_rows_are_scoped_by_job(self, staging):
        staging.stage_batch("job-1", "tags", [(0, {"id": 1})])
        staging.stage_batch("job-2", "tags", [(0, {"id": 2})])

        assert staging.load_dataset("job-2", "tags") == [{"id": 2}]

    def test_split_columns_are_rehydrated(self, staging):
        staging.stage_batch(
            "job-1", "automation_run_test_fields", [(0, {"id": 1, "name": "output", "value": {"a": 1}})]
        )
        staging.stage_batch("job-1", "run_result_steps", [(0, {"id": 2, "text2": "Expected"})])

        field = staging.load_dataset("job-1", "automation_run_test_fields")[0]
        step = staging.load_dataset("job-1", "run_result_steps")[0]

        assert field == {"id": 1, "name": "output", "value": '{"a": 1}'}
        assert step == {"id": 2, "text2": "Expected"}

    def test_failed_rows_can_be_reset(self, staging):
        staging.stage_batch("job-1", "runs", [(0, {"id": 1}), (1, {"id": 2})])
        first, second = list(staging.iter_rows("job-1", "runs"))
        staging.mark_processed([first.id])
        staging.mark_failed([second.id], "boom")

        assert staging.get_processing_stats("job-1", "runs") == {
            "total": 2,
            "processed": 1,
            "errors": 1,
            "pending": 0,
            "percentComplete": 100,
        }
        assert staging.get_failed_rows("job-1")[0]["error"] == "boom"

        assert staging.reset_failed_rows("job-1", "runs") == 1
        pending = list(staging.iter_rows("job-1", "runs", only_unprocessed=True))
        assert [row.id for row in pending] == [second.id]

    def test_process_staged_batch_marks_unhandled_rows_failed(self, staging):
        staging.stage_batch("job-1", "tags", [(index, {"id": index}) for index in range(5)])

        def processor(page):
            return [row.id for row in page if row.data["id"] % 2 == 0]

        result = staging.process_staged_batch("job-1", "tags", 2, processor)

        assert result == {"processed_count": 3, "error_count": 2}
        assert staging.get_unprocessed_count("job-1", "tags") == 0

    def test_dataset_counts_and_names(self, staging):
        staging.stage_batch("job-1", "projects", [(0, {}), (1, {})])
        staging.stage_batch("job-1", "tags", [(0, {})])

        assert staging.get_dataset_counts("job-1") == {"projects": 2, "tags": 1}
        assert staging.get_dataset_names("job-1") == ["projects", "tags"]
        assert staging.get_total_count("job-1") == 3
        assert staging.has_staging_data("job-3") is False

    def test_mappings_upsert_by_source_id(self, staging):
        staging.store_mapping("job-1", "project", 1, 100, "Project")
        staging.store_mapping("job-1", "project", 1, 101, "Project", {"name": "Demo"})
        staging.store_mapping_batch(
            "job-1", [{"entity_type": "user", "source_id": 5, "target_id": "u-abc", "target_type": "User"}]
        )

        mapping = staging.get_mapping("job-1", "project", 1)
        assert mapping.target_id == "101"
        assert mapping.meta_data == {"name": "Demo"}
        assert staging.get_mappings_by_type("job-1", "project") == {1: 101}
        assert staging.get_mappings_by_type("job-1", "user") == {5: "u-abc"}

    def test_cleanup_removes_rows_and_mappings(self, staging):
        staging.stage_batch("job-1", "tags", [(0, {"id": 1})])
        staging.store_mapping("job-1", "tag", 1, 9, "Tag")

        staging.cleanup("job-1")

        assert staging.get_total_count("job-1") == 0
        assert staging.get_mapping("job-1", "tag", 1) is None

    def test_cleanup_processed_keeps_pending_rows(self, staging):
        staging.stage_batch("job-1", "tags", [(0, {"id": 1}), (1, {"id": 2})])
        first = next(iter(staging.iter_rows("job-1", "tags")))
        staging.mark_processed([first.id])

        assert staging.cleanup_processed_staging("job-1") == 1
        assert staging.get_total_count("job-1") == 1
