"""CLI commands for the UnitedWeRise backend."""

# These imports register CLI commands with the app via decorators
from . import (  # noqa: F401
    moderation_commands,
    reputation_commands,
    server_commands,
    topic_commands,
)
from .core import app


def main() -> None:
    """Console entry point for the uwr CLI."""
    app()


__all__ = ["app", "main"]
