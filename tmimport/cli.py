"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

import json
import logging
from pathlib import Path

import typer
from rich.console import Console

from tmimport import __version__
from tmimport.core.config import DatabaseConfig, init_app_config
from tmimport.core.db_manager import SQLDatabaseManager
from tmimport.destination import seed_workspace_defaults
from tmimport.exceptions import TmImportError
from tmimport.job_orchestrator import ImportJobOrchestrator, LocalFileBlobStore

# Initialize console for rich output
console = Console()

# Initialize the CLI app
app = typer.Typer(help="TMIMPORT - Testmo export to TestPlanIt")

logger = logging.getLogger("tmimport")


def configure_app(debug: bool = False):
    """
    Configure the application with the specified settings.

    Args:
    ----
        debug: Whether to enable debug mode

    """
    config = init_app_config(debug=debug)
    config.configure_logging()
    return config


@app.callback(invoke_without_command=True)
def callback(
    version: bool = typer.Option(False, "--version", help="Show the application version and exit"),
):
    """
    TMIMPORT - Import a Testmo export into a TestPlanIt workspace.

    Run analyze, then configure, then import for each uploaded export.
    """
    if version:
        console.print(f"TMIMPORT version: {__version__}")
        raise typer.Exit()


def _database(db_path: Path | None) -> SQLDatabaseManager:
    config = DatabaseConfig(db_type="sqlite", db_path=str(db_path) if db_path else None)
    return SQLDatabaseManager(config=config)


def _orchestrator(db_path: Path | None, debug: bool) -> ImportJobOrchestrator:
    app_config = configure_app(debug=debug)
    db = _database(db_path)
    if not db.has_schema():
        db.initialize_database()
    return ImportJobOrchestrator(db, LocalFileBlobStore(), config=app_config.importer)


def _fail(error: Exception) -> None:
    console.print(f"Error: {error}", style="red")
    raise typer.Exit(code=1)


DB_PATH_OPTION = typer.Option(None, "--db-path", help="Path to the SQLite database file")
DEBUG_OPTION = typer.Option(False, "--debug", help="Enable debug mode with verbose logging")


@app.command("init-db")
def init_db(db_path: Path | None = DB_PATH_OPTION, debug: bool = DEBUG_OPTION):
    """Create the schema and seed the workspace defaults."""
    configure_app(debug=debug)
    try:
        db = _database(db_path)
        db.initialize_database()
        with db.get_session() as session:
            created = seed_workspace_defaults(session)
        console.print("Database initialized", style="green")
        for kind, count in created.items():
            console.print(f"  {kind}: {count} created")
    except Exception as e:
        _fail(e)


@app.command("create-job")
def create_job(
    export_file: Path = typer.Argument(..., help="Path to the Testmo JSON export"),
    created_by: str | None = typer.Option(None, "--created-by", help="Id of the user starting the import"),
    db_path: Path | None = DB_PATH_OPTION,
    debug: bool = DEBUG_OPTION,
):
    """Register an export file as a new import job."""
    if not export_file.exists():
        _fail(FileNotFoundError(f"Export file not found: {export_file}"))
    try:
        orchestrator = _orchestrator(db_path, debug)
        job_id = orchestrator.create_job(
            str(export_file.resolve()),
            created_by_id=created_by,
            original_file_name=export_file.name,
            size=export_file.stat().st_size,
        )
        console.print(f"Created import job {job_id}", style="green")
    except Exception as e:
        _fail(e)


@app.command("analyze")
def analyze(
    job_id: str = typer.Argument(..., help="Import job id"),
    db_path: Path | None = DB_PATH_OPTION,
    debug: bool = DEBUG_OPTION,
):
    """Stream the export into staging and summarize its datasets."""
    try:
        orchestrator = _orchestrator(db_path, debug)
        status = orchestrator.process(job_id, "analyze")
        orchestrator.print_status(job_id, console)
        if status == "FAILED":
            raise typer.Exit(code=1)
    except (TmImportError, OSError) as e:
        _fail(e)


@app.command("configure")
def configure(
    job_id: str = typer.Argument(..., help="Import job id"),
    config_file: Path = typer.Argument(..., help="Mapping configuration JSON file"),
    db_path: Path | None = DB_PATH_OPTION,
    debug: bool = DEBUG_OPTION,
):
    """Normalize a mapping configuration and store it on the job."""
    try:
        raw = json.loads(config_file.read_text(encoding="utf-8"))
        orchestrator = _orchestrator(db_path, debug)
        configuration = orchestrator.set_configuration(job_id, raw)
        console.print(f"Stored mapping configuration for job {job_id}", style="green")
        for table, count in configuration.entry_counts().items():
            if count:
                console.print(f"  {table}: {count}")
    except (TmImportError, OSError, json.JSONDecodeError) as e:
        _fail(e)


@app.command("import")
def run_import(
    job_id: str = typer.Argument(..., help="Import job id"),
    db_path: Path | None = DB_PATH_OPTION,
    debug: bool = DEBUG_OPTION,
):
    """Import the staged rows into the workspace."""
    try:
        orchestrator = _orchestrator(db_path, debug)
        orchestrator.process(job_id, "import")
        orchestrator.print_status(job_id, console)
    except Exception as e:
        _fail(e)


@app.command("status")
def status(
    job_id: str = typer.Argument(..., help="Import job id"),
    as_json: bool = typer.Option(False, "--json", help="Print the status as JSON"),
    db_path: Path | None = DB_PATH_OPTION,
    debug: bool = DEBUG_OPTION,
):
    """Show a job's status, entity progress and recent activity."""
    try:
        orchestrator = _orchestrator(db_path, debug)
        if as_json:
            console.print_json(json.dumps(orchestrator.get_status(job_id), default=str))
        else:
            orchestrator.print_status(job_id, console)
    except TmImportError as e:
        _fail(e)


@app.command("cancel")
def cancel(
    job_id: str = typer.Argument(..., help="Import job id"),
    db_path: Path | None = DB_PATH_OPTION,
    debug: bool = DEBUG_OPTION,
):
    """Ask a running job to stop at its next chunk boundary."""
    try:
        orchestrator = _orchestrator(db_path, debug)
        if orchestrator.request_cancel(job_id):
            console.print(f"Cancellation requested for job {job_id}", style="yellow")
        else:
            console.print(f"Job {job_id} has already finished")
    except TmImportError as e:
        _fail(e)


@app.command("reset-failed")
def reset_failed(
    job_id: str = typer.Argument(..., help="Import job id"),
    dataset: str | None = typer.Argument(None, help="Only reset rows of this dataset"),
    db_path: Path | None = DB_PATH_OPTION,
    debug: bool = DEBUG_OPTION,
):
    """Make failed staging rows pending again."""
    try:
        orchestrator = _orchestrator(db_path, debug)
        count = orchestrator.reset_failed_rows(job_id, dataset)
        console.print(f"Reset {count} failed rows")
    except TmImportError as e:
        _fail(e)


@app.command("cleanup")
def cleanup(
    job_id: str = typer.Argument(..., help="Import job id"),
    db_path: Path | None = DB_PATH_OPTION,
    debug: bool = DEBUG_OPTION,
):
    """Delete a job's staged rows and entity mappings."""
    try:
        orchestrator = _orchestrator(db_path, debug)
        orchestrator.cleanup(job_id)
        console.print(f"Cleaned up staging data for job {job_id}", style="green")
    except TmImportError as e:
        _fail(e)


if __name__ == "__main__":
    app()
