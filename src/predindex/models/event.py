"""ChainEvent - a decoded contract log, as delivered by the decoding layer."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

ZERO_ADDRESS = "0x" + "0" * 40

# Event families consumed by the resolver
CONDITION_PREPARATION = "ConditionPreparation"
QUESTION_PREPARED = "QuestionPrepared"
MARKET_PREPARED = "MarketPrepared"
POSITION_SPLIT = "PositionSplit"
TRANSFER_SINGLE = "TransferSingle"
TRANSFER_BATCH = "TransferBatch"
ORDER_FILLED = "OrderFilled"

# Emitted by ConditionalTokens; filtered by the configured CTF addresses
CTF_EVENTS = frozenset({CONDITION_PREPARATION, POSITION_SPLIT, TRANSFER_SINGLE, TRANSFER_BATCH})
MINT_EVENTS = frozenset({TRANSFER_SINGLE, TRANSFER_BATCH})


def _snake(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


def _token_id_str(value: Any) -> str:
    if isinstance(value, str) and value.lower().startswith("0x"):
        return str(int(value, 16))
    return str(int(value))


class ChainEvent(BaseModel):
    """One decoded log. Ordering key is (block_number, log_index)."""

    contract_address: str
    event_name: str
    transaction_hash: str
    log_index: int = Field(..., ge=0)
    block_number: int = Field(..., ge=0)
    block_timestamp: int = 0  # unix seconds
    params: dict[str, Any] = Field(default_factory=dict)
    removed: bool = False

    @field_validator("contract_address", "transaction_hash")
    @classmethod
    def _lower_hex(cls, v: str) -> str:
        return str(v).strip().lower()

    @field_validator("block_timestamp", mode="before")
    @classmethod
    def _epoch_seconds(cls, v: Any) -> int:
        if v is None:
            return 0
        if isinstance(v, datetime):
            return int(v.timestamp())
        if isinstance(v, str) and not v.strip().isdigit():
            return int(datetime.fromisoformat(v.strip().replace("Z", "+00:00")).timestamp())
        return int(v)

    @property
    def order_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    @property
    def key(self) -> tuple[int, int, str]:
        """Deduplication key in the event store."""
        return (self.block_number, self.log_index, self.transaction_hash)

    def param(self, name: str, default: Any = None) -> Any:
        """Look up a param by its ABI name, falling back to the snake_case spelling."""
        if name in self.params:
            return self.params[name]
        return self.params.get(_snake(name), default)

    def minted_token_ids(self) -> list[str]:
        """Token ids moved by a TransferSingle/TransferBatch, as decimal strings."""
        if self.event_name == TRANSFER_SINGLE:
            token_id = self.param("id")
            return [_token_id_str(token_id)] if token_id is not None else []
        if self.event_name == TRANSFER_BATCH:
            return [_token_id_str(i) for i in self.param("ids") or []]
        return []

    @property
    def is_mint(self) -> bool:
        return self.event_name in MINT_EVENTS and str(self.param("from") or "").lower() == ZERO_ADDRESS
