"""Export the long-format asset catalog to Parquet."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from predindex.models import QuestionStatus

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

_LONG_FORMAT_SQL = """
SELECT a.asset_id, a.question_id, q.market_id, q.market_type, q.description AS market_description,
       a.condition_id, q.oracle AS oracle_address, a.outcome, q.question_index, q.status
FROM assets a
JOIN questions q ON a.question_id = q.question_id
"""


def export_catalog_to_parquet(
    conn: DuckDBPyConnection,
    output_path: str | Path,
    status: QuestionStatus | None = None,
) -> int:
    """Export one row per asset with its question context. Optional filter by question status. Returns row count."""
    path = Path(output_path).resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    path_str = str(path).replace("\\", "\\\\").replace("'", "''")
    select = _LONG_FORMAT_SQL
    if status is not None:
        # enum values are fixed identifiers, safe to inline (COPY takes no parameters)
        select += f" WHERE q.status = '{QuestionStatus(status).value}'"
    select += " ORDER BY q.market_id, q.question_index, a.slot_index"
    conn.execute(f"COPY ({select}) TO '{path_str}' (FORMAT PARQUET)")
    return conn.execute(f"SELECT COUNT(*) FROM ({select})").fetchone()[0]
