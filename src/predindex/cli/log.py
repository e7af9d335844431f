"""Log subcommand: stats."""

from __future__ import annotations

import typer

from predindex.storage.db import get_connection, init_schema
from predindex.storage.event_log import event_log_stats

app = typer.Typer(help="Event store statistics")


@app.command("stats")
def stats(ctx: typer.Context) -> None:
    """Show event store statistics (counts, block range, by event name)."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        s = event_log_stats(conn)
        typer.echo(f"Total events: {s['total_events']} ({s['removed_events']} removed)")
        typer.echo(f"Min block: {s.get('min_block')}")
        typer.echo(f"Max block: {s.get('max_block')}")
        if s.get("by_event"):
            typer.echo("By event:")
            for row in s["by_event"]:
                typer.echo(f"  {row['event_name']}  {row['count']}")
    finally:
        conn.close()
