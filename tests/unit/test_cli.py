"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Tests for the TMIMPORT command line interface.

Each test drives the Typer app end to end against a SQLite file in a
temporary directory.
"""

import json
import re

import pytest
from typer.testing import CliRunner

from tests.fixtures import build_export
from tmimport import __version__
from tmimport.cli import app

runner = CliRunner()

QUIET_ENV = {"TMIMPORT_LOG_LEVEL": "ERROR", "TMIMPORT_LOG_USE_RICH": "false"}


def invoke(*args):
    return runner.invoke(app, [str(arg) for arg in args], env=QUIET_ENV)


def create_job(export_file, db_path) -> str:
    result = invoke("create-job", export_file, "--db-path", db_path)
    assert result.exit_code == 0, result.output
    match = re.search(r"Created import job ([0-9a-f]{32})", result.output)
    assert match, result.output
    return match.group(1)


@pytest.fixture
def export_file(temp_dir, demo_export):
    path = temp_dir / "export.json"
    path.write_bytes(build_export(demo_export))
    return path


@pytest.fixture
def config_file(temp_dir, demo_configuration):
    path = temp_dir / "mapping.json"
    path.write_text(json.dumps(demo_configuration), encoding="utf-8")
    return path


@pytest.mark.unit
def test_version():
    result = invoke("--version")
    assert result.exit_code == 0
    assert __version__ in result.output


@pytest.mark.unit
def test_help_lists_commands():
    result = invoke("--help")
    assert result.exit_code == 0
    for command in ("init-db", "create-job", "analyze", "configure", "import", "status", "cancel"):
        assert command in result.output


@pytest.mark.integration
def test_init_db_seeds_defaults(temp_db_path):
    result = invoke("init-db", "--db-path", temp_db_path)

    assert result.exit_code == 0, result.output
    assert "Database initialized" in result.output
    assert temp_db_path.exists()


@pytest.mark.integration
def test_create_job_with_missing_file(temp_dir, temp_db_path):
    result = invoke("create-job", temp_dir / "missing.json", "--db-path", temp_db_path)
    assert result.exit_code == 1
    assert "Export file not found" in result.output


@pytest.mark.integration
def test_status_of_unknown_job(temp_db_path):
    invoke("init-db", "--db-path", temp_db_path)
    result = invoke("status", "nope", "--db-path", temp_db_path)
    assert result.exit_code == 1
    assert "Error" in result.output


@pytest.mark.integration
def test_full_import_through_the_cli(export_file, config_file, temp_db_path):
    assert invoke("init-db", "--db-path", temp_db_path).exit_code == 0
    job_id = create_job(export_file, temp_db_path)

    result = invoke("analyze", job_id, "--db-path", temp_db_path)
    assert result.exit_code == 0, result.output
    assert "READY" in result.output

    result = invoke("configure", job_id, config_file, "--db-path", temp_db_path)
    assert result.exit_code == 0, result.output
    assert "users: 1" in result.output

    result = invoke("import", job_id, "--db-path", temp_db_path)
    assert result.exit_code == 0, result.output
    assert "COMPLETED" in result.output

    result = invoke("status", job_id, "--json", "--db-path", temp_db_path)
    assert result.exit_code == 0, result.output
    assert '"status": "COMPLETED"' in result.output
    assert '"processedCount": 3' in result.output
    assert '"totalCount": 3' in result.output

    result = invoke("cancel", job_id, "--db-path", temp_db_path)
    assert "already finished" in result.output

    result = invoke("reset-failed", job_id, "--db-path", temp_db_path)
    assert result.exit_code == 0, result.output
    assert "Reset 0 failed rows" in result.output

    result = invoke("cleanup", job_id, "--db-path", temp_db_path)
    assert result.exit_code == 0, result.output


@pytest.mark.integration
def test_configure_rejects_invalid_json(export_file, temp_dir, temp_db_path):
    job_id = create_job(export_file, temp_db_path)
    bad = temp_dir / "bad.json"
    bad.write_text("{not json", encoding="utf-8")

    result = invoke("configure", job_id, bad, "--db-path", temp_db_path)
    assert result.exit_code == 1
