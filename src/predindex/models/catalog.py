"""Condition, Question, Asset, Market - catalog entities."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class Outcome(str, Enum):
    YES = "Yes"
    NO = "No"
    UNKNOWN = "Unknown"


class MarketType(str, Enum):
    NEGRISK = "NEGRISK"


class QuestionStatus(str, Enum):
    """Per-question resolution state. Forward moves only, except on reorg."""

    UNSEEN = "unseen"
    PENDING = "pending"
    RESOLVED = "resolved"
    UNRESOLVABLE = "unresolvable"
    FAULTED = "faulted"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


# Unresolvable sits below Resolved so late corroborating events can still promote it
_STATUS_RANK = {
    QuestionStatus.UNSEEN: 0,
    QuestionStatus.PENDING: 1,
    QuestionStatus.UNRESOLVABLE: 2,
    QuestionStatus.RESOLVED: 3,
    QuestionStatus.FAULTED: 4,
}


class Condition(BaseModel):
    """Governed outcome space. condition_id is always recomputed, never copied from a log."""

    condition_id: str
    oracle: str
    question_id: str
    outcome_slot_count: int = Field(..., ge=2)
    block_number: int | None = None
    log_index: int | None = None
    transaction_hash: str | None = None


class Question(BaseModel):
    """One row per question_id. Fields other than the keys may be backfilled."""

    question_id: str
    condition_id: str
    oracle: str
    outcome_slot_count: int = 2
    market_id: str | None = None
    market_type: MarketType = MarketType.NEGRISK
    description: str | None = None
    question_index: int | None = None
    status: QuestionStatus = QuestionStatus.PENDING


class Asset(BaseModel):
    """ERC1155 position token for one outcome slot of a condition."""

    asset_id: str  # uint256 as decimal string
    question_id: str
    condition_id: str
    slot_index: int
    index_set: int
    outcome: Outcome = Outcome.UNKNOWN
    collateral_token: str
    parent_collection_id: str


class Market(BaseModel):
    """NegRisk market group (MarketPrepared)."""

    market_id: str
    oracle: str
    fee_bips: int | None = None
    description: str | None = None


class AssetContext(BaseModel):
    """Denormalized asset lookup result: asset + question + condition + market group."""

    asset_id: str
    question_id: str
    market_id: str | None = None
    description: str | None = None
    outcome: Outcome = Outcome.UNKNOWN
    condition_id: str
    oracle: str
    market_type: MarketType = MarketType.NEGRISK
    question_index: int | None = None
    status: QuestionStatus = QuestionStatus.PENDING
    slot_index: int
    collateral_token: str
    market_description: str | None = None


class IntegrityIssue(BaseModel):
    """Recorded integrity fault, keyed deterministically so re-recording is a no-op."""

    kind: str
    question_id: str | None = None
    asset_id: str | None = None
    condition_id: str | None = None
    detail: str = ""
    transaction_hash: str | None = None
    log_index: int | None = None
    block_number: int | None = None

    @property
    def issue_key(self) -> str:
        return ":".join(
            str(p or "")
            for p in (self.kind, self.question_id, self.asset_id, self.condition_id, self.transaction_hash, self.log_index)
        )


class SplitReference(BaseModel):
    """First PositionSplit for a condition; fixes collateral and parent collection."""

    transaction_hash: str
    block_number: int
    log_index: int
    collateral_token: str
    parent_collection_id: str
    partition: list[int] = Field(default_factory=list)


class MintReference(BaseModel):
    """First transfer-from-zero that put one of the question's assets into circulation."""

    transaction_hash: str
    block_number: int
    log_index: int
    asset_ids: list[str] = Field(default_factory=list)
