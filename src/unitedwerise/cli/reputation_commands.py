"""Reputation inspection and adjustment commands."""

from __future__ import annotations

from typing import Optional

import typer
from rich.table import Table

from ..db import get_user, get_user_by_username
from ..errors import UnitedWeRiseError
from ..reputation import AWARD_REASONS
from .core import app, console, get_services

reputation_app = typer.Typer(help="Reputation scores and events")
app.add_typer(reputation_app, name="reputation")


def _resolve_user_id(db_path: str, user: str) -> str:
    found = get_user(db_path, user) or get_user_by_username(db_path, user)
    if not found:
        console.print(f"[red]User not found: {user}[/red]")
        raise typer.Exit(1)
    return str(found["id"])


@reputation_app.command("show")
def show(
    ctx: typer.Context,
    user: str = typer.Argument(..., help="User id or username"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of recent events to list"),
) -> None:
    """Show a user's score, tier and recent events."""
    svc = get_services(ctx)
    user_id = _resolve_user_id(svc.db_path, user)
    rep = svc.reputation.get_user_reputation(user_id)
    console.print(
        f"[bold]{user}[/bold]: {rep['current']:g} ({rep['tier']}, visibility x{rep['visibilityMultiplier']:g})"
    )

    events = svc.reputation.get_history(user_id, limit=limit)
    if not events:
        console.print("No reputation events")
        return
    table = Table(title="Recent events")
    table.add_column("When")
    table.add_column("Type")
    table.add_column("Impact", justify="right")
    table.add_column("Reason")
    for e in events:
        table.add_row(e["created_at"], e["event_type"], f"{e['impact']:+g}", e.get("reason") or "")
    console.print(table)


@reputation_app.command("award")
def award(
    ctx: typer.Context,
    user: str = typer.Argument(..., help="User id or username"),
    reason: str = typer.Argument(..., help=f"One of: {', '.join(AWARD_REASONS)}"),
    post_id: Optional[str] = typer.Option(None, "--post", help="Post the award relates to"),
) -> None:
    """Award reputation for good behaviour (subject to the daily cap)."""
    if reason not in AWARD_REASONS:
        raise typer.BadParameter(f"reason must be one of {', '.join(AWARD_REASONS)}")
    svc = get_services(ctx)
    user_id = _resolve_user_id(svc.db_path, user)
    try:
        score = svc.reputation.award_reputation(user_id, reason, post_id)
    except UnitedWeRiseError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)
    console.print(f"{user} now at {score:g}")


@reputation_app.command("low")
def low(
    ctx: typer.Context,
    threshold: float = typer.Option(30, "--threshold", "-t", help="Score below which users are listed"),
    limit: int = typer.Option(20, "--limit", "-n"),
) -> None:
    """List users with low reputation."""
    svc = get_services(ctx)
    users = svc.reputation.list_low_reputation(threshold, limit)
    if not users:
        console.print(f"No users below {threshold:g}")
        return
    table = Table(title=f"Users below {threshold:g}")
    table.add_column("User")
    table.add_column("Score", justify="right")
    table.add_column("Recent events", justify="right")
    for u in users:
        table.add_row(u["username"], f"{u['reputation_score']:g}", str(len(u["recentEvents"])))
    console.print(table)
