"""Decoded event feed readers - JSONL records -> ChainEvent."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable, Iterator

import structlog
from pydantic import ValidationError

from predindex.models import ChainEvent

log = structlog.get_logger(__name__)

# Column names used by decoded-log warehouses (address/name/...) -> ChainEvent fields
_ALIASES = {
    "address": "contract_address",
    "contract": "contract_address",
    "name": "event_name",
    "event": "event_name",
    "tx_hash": "transaction_hash",
    "transactionHash": "transaction_hash",
    "logIndex": "log_index",
    "blockNumber": "block_number",
    "timestamp": "block_timestamp",
    "blockTimestamp": "block_timestamp",
    "args": "params",
}


def parse_event(record: dict[str, Any]) -> ChainEvent:
    """Build a ChainEvent from one decoded-log record. Raises ValidationError if incomplete."""
    data = {_ALIASES.get(k, k): v for k, v in record.items()}
    params = data.get("params")
    if isinstance(params, str):
        data["params"] = json.loads(params)
    return ChainEvent.model_validate(data)


def read_jsonl_events(path: str | Path) -> Iterator[ChainEvent]:
    """Yield events from a JSONL file. Malformed lines are logged and skipped."""
    with open(path, encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
                if not isinstance(record, dict):
                    raise ValueError("record is not an object")
                yield parse_event(record)
            except (ValueError, ValidationError) as e:
                log.warning("feed_record_invalid", path=str(path), line=line_no, error=str(e))


def batched(events: Iterable[ChainEvent], size: int) -> Iterator[list[ChainEvent]]:
    """Group an event stream into lists of at most `size`."""
    batch: list[ChainEvent] = []
    for ev in events:
        batch.append(ev)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
