"""Error taxonomy for derivation, resolution and catalog writes."""

from __future__ import annotations


class IndexerError(Exception):
    """Base error. Carries the entity keys the failure concerns, when known."""

    kind = "IndexerError"

    def __init__(
        self,
        message: str,
        *,
        question_id: str | None = None,
        asset_id: str | None = None,
        condition_id: str | None = None,
    ):
        super().__init__(message)
        self.question_id = question_id
        self.asset_id = asset_id
        self.condition_id = condition_id


class InvalidInput(IndexerError, ValueError):
    """Malformed derivation input (bad hex, bad address, slot count < 2)."""

    kind = "InvalidInput"


class DerivationMismatch(IndexerError):
    """An identifier reported on-chain disagrees with its recomputation."""

    kind = "DerivationMismatch"


class ConflictingQuestionData(IndexerError):
    """Duplicate question events for one question_id with differing payloads."""

    kind = "ConflictingQuestionData"


class CatalogConflict(IndexerError):
    """Upsert of an existing primary key with different content."""

    kind = "CatalogConflict"


class Unresolvable(IndexerError):
    """A pending question exceeded its resolution timeout."""

    kind = "Unresolvable"
