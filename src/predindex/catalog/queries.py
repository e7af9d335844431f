"""Catalog read API - point lookups over the built catalog."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from predindex.models import Asset, AssetContext, MarketType, Outcome, Question, QuestionStatus
from predindex.models.event import ORDER_FILLED
from predindex.storage.catalog import get_assets_for_question, get_question
from predindex.storage.event_log import find_events, normalize_hex_key

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

_CONTEXT_SQL = """
SELECT a.asset_id, a.question_id, q.market_id, q.description, a.outcome, a.condition_id, q.oracle,
       q.market_type, q.question_index, q.status, a.slot_index, a.collateral_token, m.description
FROM assets a
JOIN questions q ON a.question_id = q.question_id
LEFT JOIN markets m ON q.market_id = m.market_id
WHERE a.asset_id = ?
"""
_CONTEXT_COLUMNS = [
    "asset_id",
    "question_id",
    "market_id",
    "description",
    "outcome",
    "condition_id",
    "oracle",
    "market_type",
    "question_index",
    "status",
    "slot_index",
    "collateral_token",
    "market_description",
]


def normalize_asset_id(asset_id: Any) -> str:
    """Asset ids are uint256 decimal strings; accept ints and 0x-hex too."""
    if isinstance(asset_id, int):
        return str(asset_id)
    s = str(asset_id).strip()
    if s.lower().startswith("0x"):
        return str(int(s, 16))
    return str(int(s))


def get_asset_context(conn: DuckDBPyConnection, asset_id: Any) -> AssetContext | None:
    """Full market context for one asset id, or None if the asset is not in the catalog."""
    try:
        key = normalize_asset_id(asset_id)
    except ValueError:
        return None
    row = conn.execute(_CONTEXT_SQL, [key]).fetchone()
    if row is None:
        return None
    d = dict(zip(_CONTEXT_COLUMNS, row))
    d["outcome"] = Outcome(d["outcome"])
    d["market_type"] = MarketType(d["market_type"])
    d["status"] = QuestionStatus(d["status"])
    return AssetContext(**d)


def get_question_assets(conn: DuckDBPyConnection, question_id: str) -> list[Asset]:
    """Sibling assets of a question ordered by outcome slot; empty if the question is not catalogued."""
    qid = normalize_hex_key(question_id)
    if qid is None or get_question(conn, qid) is None:
        return []
    return get_assets_for_question(conn, qid)


def get_market_questions(conn: DuckDBPyConnection, market_id: str) -> list[Question]:
    """Questions of one NegRisk market group, ordered by question_index."""
    mid = normalize_hex_key(market_id)
    rows = conn.execute(
        "SELECT question_id FROM questions WHERE market_id = ? ORDER BY question_index NULLS LAST, question_id",
        [mid],
    ).fetchall()
    return [q for q in (get_question(conn, r[0]) for r in rows) if q is not None]


def trace_transaction(conn: DuckDBPyConnection, transaction_hash: str) -> list[tuple[str, AssetContext | None]]:
    """
    Resolve every asset traded in a transaction's OrderFilled events.
    Returns (asset_id, context) pairs in first-seen order; context is None for unknown assets.
    """
    seen: dict[str, AssetContext | None] = {}
    for ev in find_events(conn, ORDER_FILLED, transaction_hash=transaction_hash):
        for name in ("makerAssetId", "takerAssetId"):
            raw = ev.param(name)
            if raw is None:
                continue
            try:
                asset_id = normalize_asset_id(raw)
            except ValueError:
                continue
            if asset_id == "0" or asset_id in seen:
                continue
            seen[asset_id] = get_asset_context(conn, asset_id)
    return list(seen.items())
