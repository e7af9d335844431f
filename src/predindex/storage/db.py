"""DuckDB connection and schema init."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import duckdb

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

SCHEMA_SQL = """
-- Decoded chain events, append-only. Reorged events are flagged, never deleted
CREATE TABLE IF NOT EXISTS chain_events (
    block_number     BIGINT NOT NULL,
    log_index        INTEGER NOT NULL,
    transaction_hash VARCHAR NOT NULL,
    contract_address VARCHAR NOT NULL,
    event_name       VARCHAR NOT NULL,
    block_timestamp  BIGINT,
    condition_id     VARCHAR,
    question_id      VARCHAR,
    market_id        VARCHAR,
    from_address     VARCHAR,
    token_ids        VARCHAR[],
    params           JSON NOT NULL,
    removed          BOOLEAN NOT NULL DEFAULT FALSE,
    PRIMARY KEY (block_number, log_index, transaction_hash)
);

CREATE INDEX IF NOT EXISTS idx_events_question ON chain_events (question_id);
CREATE INDEX IF NOT EXISTS idx_events_condition ON chain_events (condition_id);
CREATE INDEX IF NOT EXISTS idx_events_market ON chain_events (market_id);
CREATE INDEX IF NOT EXISTS idx_events_tx ON chain_events (transaction_hash);

-- Verified conditions (condition_id recomputed from oracle/question/slots)
CREATE TABLE IF NOT EXISTS conditions (
    condition_id        VARCHAR PRIMARY KEY,
    oracle              VARCHAR NOT NULL,
    question_id         VARCHAR NOT NULL,
    outcome_slot_count  INTEGER NOT NULL,
    block_number        BIGINT,
    transaction_hash    VARCHAR
);

-- Questions dimension: one row per question_id
CREATE TABLE IF NOT EXISTS questions (
    question_id         VARCHAR PRIMARY KEY,
    condition_id        VARCHAR NOT NULL,
    oracle              VARCHAR NOT NULL,
    outcome_slot_count  INTEGER NOT NULL,
    market_id           VARCHAR,
    market_type         VARCHAR NOT NULL,
    description         VARCHAR,
    question_index      INTEGER,
    status              VARCHAR NOT NULL
);

-- Assets fact table: one row per asset_id, owned by exactly one question.
-- index_set is a uint256 bitmask, stored as decimal text
CREATE TABLE IF NOT EXISTS assets (
    asset_id             VARCHAR PRIMARY KEY,
    question_id          VARCHAR NOT NULL,
    condition_id         VARCHAR NOT NULL,
    slot_index           INTEGER NOT NULL,
    index_set            VARCHAR NOT NULL,
    outcome              VARCHAR NOT NULL,
    collateral_token     VARCHAR NOT NULL,
    parent_collection_id VARCHAR NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_assets_question ON assets (question_id);

-- NegRisk market groups (MarketPrepared)
CREATE TABLE IF NOT EXISTS markets (
    market_id       VARCHAR PRIMARY KEY,
    oracle          VARCHAR NOT NULL,
    fee_bips        INTEGER,
    description     VARCHAR
);

-- Integrity faults for operator review
CREATE TABLE IF NOT EXISTS integrity_issues (
    issue_key        VARCHAR PRIMARY KEY,
    kind             VARCHAR NOT NULL,
    question_id      VARCHAR,
    asset_id         VARCHAR,
    condition_id     VARCHAR,
    detail           VARCHAR,
    transaction_hash VARCHAR,
    log_index        INTEGER,
    block_number     BIGINT,
    recorded_at      BIGINT NOT NULL
);
"""


def get_connection(db_path: str | Path, read_only: bool = False) -> DuckDBPyConnection:
    """Return a DuckDB connection. Caller must close or use as context manager.
    Use read_only=True for lookups while an ingestion process holds the write lock."""
    path = Path(db_path)
    if str(db_path) == ":memory:":
        return duckdb.connect(":memory:")
    if not read_only:
        path.parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(str(path), read_only=read_only)


def init_schema(conn: DuckDBPyConnection) -> None:
    """Create tables and indexes if they do not exist."""
    for stmt in SCHEMA_SQL.split(";"):
        stmt = stmt.strip()
        if stmt:
            try:
                conn.execute(stmt)
            except duckdb.Error as e:
                if "already exists" not in str(e).lower():
                    raise
