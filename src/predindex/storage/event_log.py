"""Event Store - append-only log of decoded chain events, with reorg flags."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Iterable, Iterator

import structlog

from predindex.models.event import (
    CONDITION_PREPARATION,
    MARKET_PREPARED,
    MINT_EVENTS,
    POSITION_SPLIT,
    QUESTION_PREPARED,
    ChainEvent,
)

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

log = structlog.get_logger(__name__)

_COLUMNS = (
    "block_number, log_index, transaction_hash, contract_address, event_name, "
    "block_timestamp, condition_id, question_id, market_id, from_address, token_ids, params, removed"
)


def normalize_hex_key(value: Any) -> str | None:
    """Lowercase 0x-prefixed hex key for matching (condition/question/market ids)."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    s = str(value).strip().lower()
    if not s:
        return None
    return s if s.startswith("0x") else "0x" + s


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


def _stringify_big_ints(value: Any) -> Any:
    """uint256 values (token ids) do not survive a JSON number round trip; store them as strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value) if abs(value) >= 1 << 53 else value
    if isinstance(value, dict):
        return {k: _stringify_big_ints(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_stringify_big_ints(v) for v in value]
    return value


def _extract_event_meta(event: ChainEvent) -> tuple[str | None, str | None, str | None, str | None, list[str] | None]:
    """Pull the join keys the resolver looks up by into dedicated columns."""
    condition_id = question_id = market_id = from_address = None
    token_ids = None
    name = event.event_name
    if name in (CONDITION_PREPARATION, POSITION_SPLIT):
        condition_id = normalize_hex_key(event.param("conditionId"))
    if name in (CONDITION_PREPARATION, QUESTION_PREPARED):
        question_id = normalize_hex_key(event.param("questionId"))
    if name in (QUESTION_PREPARED, MARKET_PREPARED):
        market_id = normalize_hex_key(event.param("marketId"))
    if name in MINT_EVENTS:
        from_address = str(event.param("from") or "").lower() or None
        try:
            token_ids = event.minted_token_ids()
        except (TypeError, ValueError):
            token_ids = None
    return condition_id, question_id, market_id, from_address, token_ids


def _row_to_event(row: tuple) -> ChainEvent:
    (block_number, log_index, tx_hash, contract, name, ts, _c, _q, _m, _f, _t, params_json, removed) = row
    params = json.loads(params_json) if isinstance(params_json, str) else (params_json or {})
    return ChainEvent(
        contract_address=contract,
        event_name=name,
        transaction_hash=tx_hash,
        log_index=log_index,
        block_number=block_number,
        block_timestamp=ts or 0,
        params=params,
        removed=removed,
    )


def append_events(conn: DuckDBPyConnection, events: Iterable[ChainEvent]) -> list[ChainEvent]:
    """
    Append events, deduplicating on (block_number, log_index, transaction_hash).
    A re-delivered event that was previously invalidated becomes canonical again.
    Returns the events that changed the store (new or restored).
    Callers must serialize appends (single writer).
    """
    unique: dict[tuple[int, int, str], ChainEvent] = {}
    for ev in events:
        unique.setdefault(ev.key, ev)
    changed: list[ChainEvent] = []
    for key, ev in sorted(unique.items()):
        existing = conn.execute(
            "SELECT removed FROM chain_events WHERE block_number = ? AND log_index = ? AND transaction_hash = ?",
            list(key),
        ).fetchone()
        if existing is not None:
            if existing[0]:
                conn.execute(
                    "UPDATE chain_events SET removed = FALSE WHERE block_number = ? AND log_index = ? AND transaction_hash = ?",
                    list(key),
                )
                changed.append(ev.model_copy(update={"removed": False}))
            continue
        condition_id, question_id, market_id, from_address, token_ids = _extract_event_meta(ev)
        conn.execute(
            f"INSERT INTO chain_events ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, FALSE)",
            [
                ev.block_number,
                ev.log_index,
                ev.transaction_hash,
                ev.contract_address,
                ev.event_name,
                ev.block_timestamp,
                condition_id,
                question_id,
                market_id,
                from_address,
                token_ids,
                json.dumps(_stringify_big_ints(ev.params), default=_json_default),
            ],
        )
        changed.append(ev)
    if changed:
        log.debug("events_appended", changed=len(changed), duplicates=len(unique) - len(changed))
    return changed


def stream_events(
    conn: DuckDBPyConnection,
    event_names: Iterable[str] | None = None,
    contract_address: str | None = None,
    start_block: int | None = None,
    end_block: int | None = None,
    include_removed: bool = False,
) -> Iterator[ChainEvent]:
    """Yield events ordered by (block_number, log_index), canonical only by default."""
    conditions = []
    params: list[Any] = []
    names = list(event_names or [])
    if names:
        conditions.append(f"event_name IN ({', '.join('?' for _ in names)})")
        params.extend(names)
    if contract_address:
        conditions.append("contract_address = ?")
        params.append(contract_address.lower())
    if start_block is not None:
        conditions.append("block_number >= ?")
        params.append(start_block)
    if end_block is not None:
        conditions.append("block_number <= ?")
        params.append(end_block)
    if not include_removed:
        conditions.append("NOT removed")
    where = " AND ".join(conditions) if conditions else "1=1"
    sql = f"SELECT {_COLUMNS} FROM chain_events WHERE {where} ORDER BY block_number, log_index, transaction_hash"
    for row in conn.execute(sql, params).fetchall():
        yield _row_to_event(row)


def find_events(
    conn: DuckDBPyConnection,
    event_name: str | Iterable[str],
    *,
    question_id: str | None = None,
    condition_id: str | None = None,
    market_id: str | None = None,
    contract_address: str | None = None,
    transaction_hash: str | None = None,
    token_id: str | None = None,
    mints_only: bool = False,
) -> list[ChainEvent]:
    """Point lookup of canonical events by join key, ordered by (block_number, log_index)."""
    names = [event_name] if isinstance(event_name, str) else list(event_name)
    conditions = [f"event_name IN ({', '.join('?' for _ in names)})", "NOT removed"]
    params: list[Any] = list(names)
    for column, value in (
        ("question_id", normalize_hex_key(question_id)),
        ("condition_id", normalize_hex_key(condition_id)),
        ("market_id", normalize_hex_key(market_id)),
        ("contract_address", contract_address.lower() if contract_address else None),
        ("transaction_hash", transaction_hash.lower() if transaction_hash else None),
    ):
        if value is not None:
            conditions.append(f"{column} = ?")
            params.append(value)
    if token_id is not None:
        conditions.append("list_contains(token_ids, ?)")
        params.append(str(token_id))
    if mints_only:
        conditions.append("from_address = ?")
        params.append("0x" + "0" * 40)
    sql = (
        f"SELECT {_COLUMNS} FROM chain_events WHERE {' AND '.join(conditions)} "
        "ORDER BY block_number, log_index, transaction_hash"
    )
    return [_row_to_event(r) for r in conn.execute(sql, params).fetchall()]


def invalidate_transaction(conn: DuckDBPyConnection, transaction_hash: str) -> list[ChainEvent]:
    """Mark every canonical event of a transaction as removed. Returns the affected events."""
    tx = transaction_hash.strip().lower()
    rows = conn.execute(
        f"SELECT {_COLUMNS} FROM chain_events WHERE transaction_hash = ? AND NOT removed "
        "ORDER BY block_number, log_index",
        [tx],
    ).fetchall()
    if rows:
        conn.execute("UPDATE chain_events SET removed = TRUE WHERE transaction_hash = ? AND NOT removed", [tx])
    return [_row_to_event(r) for r in rows]


def invalidate_from_block(conn: DuckDBPyConnection, block_number: int) -> list[ChainEvent]:
    """Mark every canonical event at or above block_number as removed (chain rollback)."""
    rows = conn.execute(
        f"SELECT {_COLUMNS} FROM chain_events WHERE block_number >= ? AND NOT removed "
        "ORDER BY block_number, log_index",
        [block_number],
    ).fetchall()
    if rows:
        conn.execute("UPDATE chain_events SET removed = TRUE WHERE block_number >= ? AND NOT removed", [block_number])
    return [_row_to_event(r) for r in rows]


def head_block(conn: DuckDBPyConnection) -> int | None:
    """Highest canonical block number seen."""
    return conn.execute("SELECT MAX(block_number) FROM chain_events WHERE NOT removed").fetchone()[0]


def event_log_stats(conn: DuckDBPyConnection) -> dict[str, Any]:
    """Return event store statistics: totals, block range, counts by event name."""
    total = conn.execute("SELECT COUNT(*) FROM chain_events").fetchone()[0]
    removed = conn.execute("SELECT COUNT(*) FROM chain_events WHERE removed").fetchone()[0]
    min_block, max_block = conn.execute(
        "SELECT MIN(block_number), MAX(block_number) FROM chain_events WHERE NOT removed"
    ).fetchone()
    by_name = conn.execute(
        "SELECT event_name, COUNT(*) AS cnt FROM chain_events WHERE NOT removed GROUP BY event_name ORDER BY cnt DESC"
    ).fetchall()
    return {
        "total_events": total,
        "removed_events": removed,
        "min_block": min_block,
        "max_block": max_block,
        "by_event": [{"event_name": r[0], "count": r[1]} for r in by_name],
    }
