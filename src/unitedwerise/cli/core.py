"""Core CLI application and shared utilities."""

from __future__ import annotations

import typer
from click import get_current_context
from rich.console import Console

from ..config import load_settings
from ..db import init_db
from ..logger import get_logger
from ..services import Services, build_services

app = typer.Typer(add_completion=False, no_args_is_help=True)
console = Console()
log = get_logger(__name__)


@app.callback()
def main(
    ctx: typer.Context,
    config: str = typer.Option(None, "--config", "-c", help="Path to settings.yaml"),
    log_level: str = typer.Option(None, "--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)"),
) -> None:
    """UnitedWeRise - civic platform backend services."""
    from ..logger import configure_logging

    configure_logging(level=log_level)
    ctx.obj = {"config": config}


def get_config_path(ctx: typer.Context | None = None) -> str | None:
    """Get config path from context."""
    context = ctx or get_current_context(silent=True)
    return context.obj.get("config") if context and context.obj else None


def get_services(ctx: typer.Context) -> Services:
    """Load settings, make sure the schema exists and wire the services."""
    settings = load_settings(get_config_path(ctx))
    init_db(settings.app.database_path)
    return build_services(settings)
