"""Catalog subcommand: asset, question, list, trace, issues, export, stats."""

from __future__ import annotations

import typer

from predindex.catalog.queries import get_asset_context, get_question_assets, trace_transaction
from predindex.models import AssetContext, QuestionStatus
from predindex.storage.catalog import catalog_stats, get_question, list_issues, list_questions
from predindex.storage.db import get_connection, init_schema
from predindex.storage.export import export_catalog_to_parquet

app = typer.Typer(help="Asset catalog lookups and export")


def _echo_context(ctx: AssetContext) -> None:
    typer.echo(f"asset_id:      {ctx.asset_id}")
    typer.echo(f"outcome:       {ctx.outcome.value}")
    typer.echo(f"question_id:   {ctx.question_id}")
    typer.echo(f"market_id:     {ctx.market_id or '-'}")
    typer.echo(f"market_type:   {ctx.market_type.value}")
    typer.echo(f"description:   {ctx.description or '-'}")
    if ctx.market_description:
        typer.echo(f"market:        {ctx.market_description}")
    typer.echo(f"condition_id:  {ctx.condition_id}")
    typer.echo(f"oracle:        {ctx.oracle}")
    typer.echo(f"status:        {ctx.status.value}")


def _parse_status(value: str | None) -> QuestionStatus | None:
    if value is None:
        return None
    try:
        return QuestionStatus(value.lower())
    except ValueError:
        raise typer.BadParameter(f"status must be one of {[s.value for s in QuestionStatus]}")


@app.command("asset")
def asset(ctx: typer.Context, asset_id: str = typer.Argument(..., help="ERC1155 position id (decimal or 0x)")) -> None:
    """Show the market context of one asset id."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        context = get_asset_context(conn, asset_id)
        if context is None:
            typer.echo(f"Asset {asset_id} not found")
            raise typer.Exit(code=1)
        _echo_context(context)
    finally:
        conn.close()


@app.command("question")
def question(ctx: typer.Context, question_id: str = typer.Argument(..., help="bytes32 question id")) -> None:
    """Show a question and its sibling assets."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        q = get_question(conn, question_id.strip().lower())
        if q is None:
            typer.echo(f"Question {question_id} not found")
            raise typer.Exit(code=1)
        typer.echo(f"{q.question_id}  [{q.status.value}]  market={q.market_id or '-'}  index={q.question_index}")
        typer.echo(f"  {q.description or '(no description)'}")
        for a in get_question_assets(conn, q.question_id):
            typer.echo(f"  slot {a.slot_index}  {a.outcome.value:<7}  {a.asset_id}")
    finally:
        conn.close()


@app.command("list")
def list_cmd(
    ctx: typer.Context,
    status: str | None = typer.Option(None, "--status", "-s", help="Filter by status (pending, resolved, ...)"),
) -> None:
    """List catalogued questions."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        rows = list_questions(conn, status=_parse_status(status))
        for q in rows:
            desc = (q.description or "")[:60]
            typer.echo(f"  {q.question_id[:18]}...  {q.status.value:<12}  {desc}")
        typer.echo(f"Total: {len(rows)} questions")
    finally:
        conn.close()


@app.command("trace")
def trace(ctx: typer.Context, tx_hash: str = typer.Argument(..., help="Transaction with OrderFilled events")) -> None:
    """Resolve every asset traded in a transaction."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        pairs = trace_transaction(conn, tx_hash)
        if not pairs:
            typer.echo(f"No traded assets found in {tx_hash}")
            return
        for asset_id, context in pairs:
            if context is None:
                typer.echo(f"{asset_id}  (not in catalog)")
            else:
                typer.echo(f"{asset_id}  {context.outcome.value}  {context.description or context.question_id}")
    finally:
        conn.close()


@app.command("issues")
def issues(
    ctx: typer.Context,
    question_id: str | None = typer.Option(None, "--question", "-q", help="Filter by question id"),
    kind: str | None = typer.Option(None, "--kind", "-k", help="Filter by kind (DerivationMismatch, ...)"),
) -> None:
    """List recorded integrity issues."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        rows = list_issues(conn, question_id=question_id.lower() if question_id else None, kind=kind)
        for i in rows:
            typer.echo(f"  {i.kind:<24} {i.question_id or '-'}  {i.detail}")
        typer.echo(f"Total: {len(rows)} issues")
    finally:
        conn.close()


@app.command("export")
def export(
    ctx: typer.Context,
    output: str = typer.Option("catalog.parquet", "--output", "-o", help="Output path"),
    status: str | None = typer.Option(None, "--status", "-s", help="Only questions with this status"),
) -> None:
    """Export the long-format asset catalog to Parquet."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        count = export_catalog_to_parquet(conn, output, status=_parse_status(status))
        typer.echo(f"Exported {count} assets to {output}")
    finally:
        conn.close()


@app.command("stats")
def stats(ctx: typer.Context) -> None:
    """Show catalog table counts."""
    settings = ctx.obj["settings"]
    conn = get_connection(settings.db_path)
    init_schema(conn)
    try:
        s = catalog_stats(conn)
        for name in ("conditions", "questions", "assets", "markets", "issues"):
            typer.echo(f"{name}: {s[name]}")
        for status, count in s["questions_by_status"].items():
            typer.echo(f"  {status}: {count}")
    finally:
        conn.close()
