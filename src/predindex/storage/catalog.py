"""Catalog persistence - conditions, questions, assets, markets, integrity issues."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from predindex.models import (
    Asset,
    Condition,
    IntegrityIssue,
    Market,
    MarketType,
    Outcome,
    Question,
    QuestionStatus,
)

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

_QUESTION_COLUMNS = [
    "question_id",
    "condition_id",
    "oracle",
    "outcome_slot_count",
    "market_id",
    "market_type",
    "description",
    "question_index",
    "status",
]
_ASSET_COLUMNS = [
    "asset_id",
    "question_id",
    "condition_id",
    "slot_index",
    "index_set",
    "outcome",
    "collateral_token",
    "parent_collection_id",
]
_ISSUE_COLUMNS = [
    "kind",
    "question_id",
    "asset_id",
    "condition_id",
    "detail",
    "transaction_hash",
    "log_index",
    "block_number",
]


def _question_from_row(row: tuple) -> Question:
    d = dict(zip(_QUESTION_COLUMNS, row))
    d["market_type"] = MarketType(d["market_type"])
    d["status"] = QuestionStatus(d["status"])
    return Question(**d)


def _asset_from_row(row: tuple) -> Asset:
    d = dict(zip(_ASSET_COLUMNS, row))
    d["outcome"] = Outcome(d["outcome"])
    d["index_set"] = int(d["index_set"])
    return Asset(**d)


def _question_values(q: Question) -> list:
    return [
        q.question_id,
        q.condition_id,
        q.oracle,
        q.outcome_slot_count,
        q.market_id,
        q.market_type.value,
        q.description,
        q.question_index,
        q.status.value,
    ]


# -- conditions --------------------------------------------------------------


def get_condition(conn: DuckDBPyConnection, condition_id: str) -> Condition | None:
    row = conn.execute(
        "SELECT condition_id, oracle, question_id, outcome_slot_count, block_number, transaction_hash "
        "FROM conditions WHERE condition_id = ?",
        [condition_id],
    ).fetchone()
    if row is None:
        return None
    cols = ["condition_id", "oracle", "question_id", "outcome_slot_count", "block_number", "transaction_hash"]
    return Condition(**dict(zip(cols, row)))


def insert_condition(conn: DuckDBPyConnection, condition: Condition) -> None:
    conn.execute(
        "INSERT INTO conditions (condition_id, oracle, question_id, outcome_slot_count, block_number, transaction_hash) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        [
            condition.condition_id,
            condition.oracle,
            condition.question_id,
            condition.outcome_slot_count,
            condition.block_number,
            condition.transaction_hash,
        ],
    )


def update_condition_anchor(conn: DuckDBPyConnection, condition: Condition) -> None:
    """Move the anchoring block/tx of a condition (reorg re-inclusion)."""
    conn.execute(
        "UPDATE conditions SET block_number = ?, transaction_hash = ? WHERE condition_id = ?",
        [condition.block_number, condition.transaction_hash, condition.condition_id],
    )


def delete_condition(conn: DuckDBPyConnection, condition_id: str) -> None:
    conn.execute("DELETE FROM conditions WHERE condition_id = ?", [condition_id])


# -- questions ---------------------------------------------------------------


def get_question(conn: DuckDBPyConnection, question_id: str) -> Question | None:
    row = conn.execute(
        f"SELECT {', '.join(_QUESTION_COLUMNS)} FROM questions WHERE question_id = ?",
        [question_id],
    ).fetchone()
    return _question_from_row(row) if row else None


def insert_question(conn: DuckDBPyConnection, question: Question) -> None:
    conn.execute(
        f"INSERT INTO questions ({', '.join(_QUESTION_COLUMNS)}) VALUES ({', '.join('?' for _ in _QUESTION_COLUMNS)})",
        _question_values(question),
    )


def update_question(conn: DuckDBPyConnection, question: Question) -> None:
    """Rewrite the non-key columns of an existing question."""
    cols = _QUESTION_COLUMNS[1:]
    conn.execute(
        f"UPDATE questions SET {', '.join(f'{c} = ?' for c in cols)} WHERE question_id = ?",
        _question_values(question)[1:] + [question.question_id],
    )


def delete_question(conn: DuckDBPyConnection, question_id: str) -> None:
    conn.execute("DELETE FROM questions WHERE question_id = ?", [question_id])


def list_questions(conn: DuckDBPyConnection, status: QuestionStatus | None = None) -> list[Question]:
    """List questions ordered by market then index within the market group."""
    sql = f"SELECT {', '.join(_QUESTION_COLUMNS)} FROM questions"
    params: list = []
    if status is not None:
        sql += " WHERE status = ?"
        params.append(status.value)
    sql += " ORDER BY market_id NULLS LAST, question_index NULLS LAST, question_id"
    return [_question_from_row(r) for r in conn.execute(sql, params).fetchall()]


def question_statuses(conn: DuckDBPyConnection) -> dict[str, QuestionStatus]:
    rows = conn.execute("SELECT question_id, status FROM questions").fetchall()
    return {qid: QuestionStatus(status) for qid, status in rows}


# -- assets ------------------------------------------------------------------


def get_asset(conn: DuckDBPyConnection, asset_id: str) -> Asset | None:
    row = conn.execute(
        f"SELECT {', '.join(_ASSET_COLUMNS)} FROM assets WHERE asset_id = ?",
        [asset_id],
    ).fetchone()
    return _asset_from_row(row) if row else None


def get_assets_for_question(conn: DuckDBPyConnection, question_id: str) -> list[Asset]:
    rows = conn.execute(
        f"SELECT {', '.join(_ASSET_COLUMNS)} FROM assets WHERE question_id = ? ORDER BY slot_index",
        [question_id],
    ).fetchall()
    return [_asset_from_row(r) for r in rows]


def insert_asset(conn: DuckDBPyConnection, asset: Asset) -> None:
    conn.execute(
        f"INSERT INTO assets ({', '.join(_ASSET_COLUMNS)}) VALUES ({', '.join('?' for _ in _ASSET_COLUMNS)})",
        [
            asset.asset_id,
            asset.question_id,
            asset.condition_id,
            asset.slot_index,
            str(asset.index_set),
            asset.outcome.value,
            asset.collateral_token,
            asset.parent_collection_id,
        ],
    )


def update_asset_outcome(conn: DuckDBPyConnection, asset_id: str, outcome: Outcome) -> None:
    conn.execute("UPDATE assets SET outcome = ? WHERE asset_id = ?", [outcome.value, asset_id])


def delete_asset(conn: DuckDBPyConnection, asset_id: str) -> None:
    conn.execute("DELETE FROM assets WHERE asset_id = ?", [asset_id])


def find_orphan_assets(conn: DuckDBPyConnection) -> list[str]:
    """Asset ids whose question_id has no row in questions (should always be empty)."""
    rows = conn.execute(
        "SELECT a.asset_id FROM assets a LEFT JOIN questions q ON a.question_id = q.question_id "
        "WHERE q.question_id IS NULL ORDER BY a.asset_id"
    ).fetchall()
    return [r[0] for r in rows]


# -- markets -----------------------------------------------------------------


def get_market(conn: DuckDBPyConnection, market_id: str) -> Market | None:
    row = conn.execute(
        "SELECT market_id, oracle, fee_bips, description FROM markets WHERE market_id = ?",
        [market_id],
    ).fetchone()
    if row is None:
        return None
    return Market(market_id=row[0], oracle=row[1], fee_bips=row[2], description=row[3])


def insert_market(conn: DuckDBPyConnection, market: Market) -> None:
    conn.execute(
        "INSERT INTO markets (market_id, oracle, fee_bips, description) VALUES (?, ?, ?, ?)",
        [market.market_id, market.oracle, market.fee_bips, market.description],
    )


def update_market(conn: DuckDBPyConnection, market: Market) -> None:
    conn.execute(
        "UPDATE markets SET oracle = ?, fee_bips = ?, description = ? WHERE market_id = ?",
        [market.oracle, market.fee_bips, market.description, market.market_id],
    )


def delete_market(conn: DuckDBPyConnection, market_id: str) -> None:
    conn.execute("DELETE FROM markets WHERE market_id = ?", [market_id])


# -- integrity issues --------------------------------------------------------


def record_issue(conn: DuckDBPyConnection, issue: IntegrityIssue) -> bool:
    """Insert an issue unless an identical one is already recorded. Returns True if new."""
    key = issue.issue_key
    if conn.execute("SELECT 1 FROM integrity_issues WHERE issue_key = ?", [key]).fetchone():
        return False
    conn.execute(
        f"INSERT INTO integrity_issues (issue_key, {', '.join(_ISSUE_COLUMNS)}, recorded_at) "
        f"VALUES (?, {', '.join('?' for _ in _ISSUE_COLUMNS)}, ?)",
        [
            key,
            issue.kind,
            issue.question_id,
            issue.asset_id,
            issue.condition_id,
            issue.detail,
            issue.transaction_hash,
            issue.log_index,
            issue.block_number,
            int(time.time() * 1000),
        ],
    )
    return True


def list_issues(
    conn: DuckDBPyConnection,
    question_id: str | None = None,
    kind: str | None = None,
) -> list[IntegrityIssue]:
    conditions = []
    params: list = []
    if question_id is not None:
        conditions.append("question_id = ?")
        params.append(question_id)
    if kind is not None:
        conditions.append("kind = ?")
        params.append(kind)
    where = " AND ".join(conditions) if conditions else "1=1"
    rows = conn.execute(
        f"SELECT {', '.join(_ISSUE_COLUMNS)} FROM integrity_issues WHERE {where} ORDER BY recorded_at, issue_key",
        params,
    ).fetchall()
    return [IntegrityIssue(**dict(zip(_ISSUE_COLUMNS, r))) for r in rows]


def catalog_stats(conn: DuckDBPyConnection) -> dict:
    """Counts per table and questions by status."""
    by_status = conn.execute(
        "SELECT status, COUNT(*) FROM questions GROUP BY status ORDER BY status"
    ).fetchall()
    return {
        "conditions": conn.execute("SELECT COUNT(*) FROM conditions").fetchone()[0],
        "questions": conn.execute("SELECT COUNT(*) FROM questions").fetchone()[0],
        "assets": conn.execute("SELECT COUNT(*) FROM assets").fetchone()[0],
        "markets": conn.execute("SELECT COUNT(*) FROM markets").fetchone()[0],
        "issues": conn.execute("SELECT COUNT(*) FROM integrity_issues").fetchone()[0],
        "questions_by_status": {s: c for s, c in by_status},
    }
