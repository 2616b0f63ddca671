"""Database, API server and scheduler commands."""

from __future__ import annotations

import typer

from ..config import load_settings
from ..db import get_schema_version, init_db, run_migrations
from .core import app, console, get_config_path


@app.command("init-db")
def init_db_cmd(ctx: typer.Context) -> None:
    """Initialize the database and apply migrations."""
    s = load_settings(get_config_path(ctx))
    init_db(s.app.database_path)
    run_migrations(s.app.database_path)
    console.print(
        f"Initialized DB at {s.app.database_path} (schema v{get_schema_version(s.app.database_path)})"
    )


@app.command("api")
def api_cmd(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind to"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to bind to"),
) -> None:
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    from ..api import create_app

    uvicorn.run(create_app(settings_path=get_config_path(ctx)), host=host, port=port)


@app.command("scheduler")
def scheduler_cmd(ctx: typer.Context) -> None:
    """Run the maintenance scheduler in the foreground."""
    from ..scheduler import run_scheduler

    console.print("[bold]Starting maintenance scheduler[/bold] (Ctrl+C to stop)")
    run_scheduler(get_config_path(ctx))
