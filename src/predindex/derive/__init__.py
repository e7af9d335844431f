"""Protocol identifier derivation (condition, collection and position ids)."""

from predindex.derive.identifiers import (
    DerivedPosition,
    derive_collection_id,
    derive_condition_id,
    derive_position_id,
    derive_positions,
    index_set_for_slot,
    normalize_address,
    normalize_bytes32,
    verify_condition_id,
)

__all__ = [
    "DerivedPosition",
    "derive_collection_id",
    "derive_condition_id",
    "derive_position_id",
    "derive_positions",
    "index_set_for_slot",
    "normalize_address",
    "normalize_bytes32",
    "verify_condition_id",
]
