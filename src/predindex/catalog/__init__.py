"""Questions/Assets catalog: builder (writes) and point-lookup read API."""

from predindex.catalog.builder import CatalogBuilder
from predindex.catalog.queries import (
    get_asset_context,
    get_market_questions,
    get_question_assets,
    trace_transaction,
)

__all__ = [
    "CatalogBuilder",
    "get_asset_context",
    "get_market_questions",
    "get_question_assets",
    "trace_transaction",
]
