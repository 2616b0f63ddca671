"""Security and moderation maintenance commands."""

from __future__ import annotations

from typing import Optional

import typer
from rich.table import Table

from ..errors import UnitedWeRiseError
from ..security import risk_level
from .core import app, console, get_services

security_app = typer.Typer(help="Security events and IP blocking")
moderation_app = typer.Typer(help="Moderation maintenance")
app.add_typer(security_app, name="security")
app.add_typer(moderation_app, name="moderation")

CLI_ACTOR = "cli"


@security_app.command("events")
def events(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n"),
    event_type: Optional[str] = typer.Option(None, "--type", help="Filter by event type"),
    min_risk: int = typer.Option(0, "--min-risk", help="Minimum risk score"),
) -> None:
    """List recent security events."""
    svc = get_services(ctx)
    rows = svc.security.get_security_events(limit=limit, event_type=event_type, min_risk_score=min_risk)
    if not rows:
        console.print("No security events")
        return
    table = Table(title="Security events")
    table.add_column("When")
    table.add_column("Type")
    table.add_column("Risk", justify="right")
    table.add_column("User")
    table.add_column("IP")
    for e in rows:
        score = int(e["risk_score"])
        table.add_row(
            e["created_at"],
            e["event_type"],
            f"{score} ({risk_level(score)})",
            e.get("username") or e.get("user_id") or "",
            e.get("ip_address") or "",
        )
    console.print(table)


@security_app.command("block-ip")
def block_ip(
    ctx: typer.Context,
    ip: str = typer.Argument(..., help="IPv4 or IPv6 address"),
    reason: str = typer.Option(..., "--reason", "-r", help="Why the address is blocked"),
    expires_at: Optional[str] = typer.Option(None, "--expires-at", help="ISO timestamp when the block lapses"),
) -> None:
    """Block an IP address."""
    svc = get_services(ctx)
    try:
        svc.security.block_ip(ip, reason, CLI_ACTOR, expires_at)
    except UnitedWeRiseError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)
    console.print(f"Blocked {ip}")


@security_app.command("unblock-ip")
def unblock_ip(ctx: typer.Context, ip: str = typer.Argument(..., help="Blocked address")) -> None:
    """Lift the block on an IP address."""
    svc = get_services(ctx)
    try:
        svc.security.unblock_ip(ip, CLI_ACTOR)
    except UnitedWeRiseError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)
    console.print(f"Unblocked {ip}")


@security_app.command("cleanup")
def cleanup(
    ctx: typer.Context,
    days: Optional[int] = typer.Option(None, "--days", help="Keep events newer than this many days"),
) -> None:
    """Delete old low-risk security events."""
    svc = get_services(ctx)
    deleted = svc.security.cleanup_old_events(days)
    console.print(f"Deleted {deleted} security events")


@moderation_app.command("cleanup-suspensions")
def cleanup_suspensions(ctx: typer.Context) -> None:
    """Deactivate suspensions whose end date has passed."""
    svc = get_services(ctx)
    count = svc.moderation.cleanup_expired_suspensions()
    console.print(f"Expired {count} suspensions")
