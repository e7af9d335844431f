"""Canonical schema (Pydantic) - ChainEvent, Condition, Question, Asset."""

from predindex.models.catalog import (
    Asset,
    AssetContext,
    Condition,
    IntegrityIssue,
    Market,
    MarketType,
    MintReference,
    Outcome,
    Question,
    QuestionStatus,
    SplitReference,
)
from predindex.models.event import ChainEvent

__all__ = [
    "ChainEvent",
    "Condition",
    "Question",
    "Asset",
    "Market",
    "AssetContext",
    "IntegrityIssue",
    "MintReference",
    "SplitReference",
    "Outcome",
    "MarketType",
    "QuestionStatus",
]
