"""Trending topic and feed preview commands."""

from __future__ import annotations

from typing import Optional

import typer
from rich.table import Table

from ..topics import AggregationOptions
from .core import app, console, get_services

topics_app = typer.Typer(help="Trending topic aggregation")
feed_app = typer.Typer(help="Probability feed tools")
app.add_typer(topics_app, name="topics")
app.add_typer(feed_app, name="feed")


def _topic_table(topics: list) -> Table:
    table = Table(title="Trending topics")
    table.add_column("Title")
    table.add_column("Posts", justify="right")
    table.add_column("Support", justify="right")
    table.add_column("Oppose", justify="right")
    table.add_column("Neutral", justify="right")
    table.add_column("Score", justify="right")
    for t in topics:
        table.add_row(
            t.title,
            str(t.total_posts),
            f"{t.support.percentage}%",
            f"{t.oppose.percentage}%",
            f"{t.neutral_percentage}%",
            f"{t.score:.1f}",
        )
    return table


@topics_app.command("refresh")
def refresh(ctx: typer.Context) -> None:
    """Clear the topic cache and recompute national topics."""
    svc = get_services(ctx)
    svc.topics.refresh()
    topics = svc.topics.aggregate_topics(AggregationOptions())
    console.print(f"Aggregated {len(topics)} topics")


@topics_app.command("list")
def list_topics(
    ctx: typer.Context,
    scope: str = typer.Option("national", "--scope", help="national, state or local"),
    state: Optional[str] = typer.Option(None, "--state", help="Two-letter state code"),
    city: Optional[str] = typer.Option(None, "--city"),
    hours: Optional[int] = typer.Option(None, "--hours", help="Lookback window in hours"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n"),
) -> None:
    """Show trending topics with their stance split."""
    if scope not in ("national", "state", "local"):
        raise typer.BadParameter("scope must be national, state or local")
    svc = get_services(ctx)
    topics = svc.topics.aggregate_topics(
        AggregationOptions(
            timeframe_hours=hours,
            max_topics=limit,
            geographic_scope=scope,
            user_state=state,
            user_city=city,
        )
    )
    if not topics:
        console.print("No topics found")
        return
    console.print(_topic_table(topics))


@feed_app.command("preview")
def preview(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User to generate the feed for"),
    limit: int = typer.Option(20, "--limit", "-n"),
) -> None:
    """Generate a feed for a user and show the per-post scores."""
    svc = get_services(ctx)
    feed = svc.feed.generate_feed(user_id, limit=limit)
    if not feed["posts"]:
        console.print("No candidate posts")
        return
    table = Table(title=f"Feed for {user_id} ({feed['algorithm']})")
    table.add_column("Post")
    table.add_column("Author")
    table.add_column("Score", justify="right")
    table.add_column("Content")
    for post in feed["posts"]:
        table.add_row(
            post["id"][:8],
            post.get("author_username") or "",
            f"{post['feedScore']['final_score']:.3f}",
            (post.get("content") or "")[:60],
        )
    console.print(table)
    console.print(f"Candidates: {feed['stats'].get('candidateCount', 0)}")
