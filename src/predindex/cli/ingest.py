"""Ingest subcommand: run, reorg, reindex."""

from __future__ import annotations

from pathlib import Path

import typer

from predindex.ingestion.feed import batched, read_jsonl_events
from predindex.ingestion.pipeline import BatchResult, Indexer
from predindex.storage.db import get_connection, init_schema

app = typer.Typer(help="Event ingestion, reorg retraction and reindexing")


def _echo_result(result: BatchResult) -> None:
    if result.statuses:
        summary = ", ".join(f"{k}={v}" for k, v in sorted(result.statuses.items()))
        typer.echo(f"  questions: {summary}")
    if result.questions_remaining:
        typer.echo(f"  {result.questions_remaining} question(s) left pending for the next run")


@app.command("run")
def run_ingest(
    ctx: typer.Context,
    feed: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSONL file of decoded events"),
    batch_size: int | None = typer.Option(None, "--batch-size", "-b", help="Events per batch"),
) -> None:
    """Ingest a decoded event feed and update the catalog."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        indexer = Indexer.from_settings(conn, settings)
        total = changed = applied = 0
        for batch in batched(read_jsonl_events(feed), batch_size or settings.event_batch_size):
            result = indexer.ingest(batch)
            total += result.events_received
            changed += result.events_changed
            applied += result.questions_applied
        typer.echo(f"Ingested {total} events ({changed} new), applied {applied} question update(s)")
        status = indexer.get_status()
        for name, count in sorted(status["questions"].items()):
            typer.echo(f"  {name}: {count}")
    finally:
        conn.close()


@app.command("reorg")
def reorg(
    ctx: typer.Context,
    tx: str | None = typer.Option(None, "--tx", help="Transaction hash no longer canonical"),
    from_block: int | None = typer.Option(None, "--from-block", help="Invalidate every event at or above this block"),
) -> None:
    """Invalidate events and retract the catalog state that depended on them."""
    if (tx is None) == (from_block is None):
        raise typer.BadParameter("pass exactly one of --tx or --from-block")
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        indexer = Indexer.from_settings(conn, settings)
        if tx is not None:
            result = indexer.invalidate_transaction(tx)
        else:
            result = indexer.invalidate_from_block(from_block)
        typer.echo(f"Invalidated {result.events_changed} events, re-resolved {result.questions_applied} question(s)")
        _echo_result(result)
    finally:
        conn.close()


@app.command("reindex")
def reindex(
    ctx: typer.Context,
    allow_retraction: bool = typer.Option(
        False, "--allow-retraction", help="Let recomputed state replace or remove existing rows"
    ),
) -> None:
    """Recompute every question from the event store."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        indexer = Indexer.from_settings(conn, settings)
        result = indexer.reindex(allow_retraction=allow_retraction)
        typer.echo(f"Reindexed {result.questions_applied} question(s)")
        _echo_result(result)
    finally:
        conn.close()
