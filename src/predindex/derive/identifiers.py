"""
ConditionalTokens identifier derivation.

Byte-for-byte reimplementation of the CTHelpers library used by the
Gnosis ConditionalTokens contract (and the NegRisk adapter on top of it):

    conditionId  = keccak256(abi.encodePacked(oracle, questionId, outcomeSlotCount))
    collectionId = alt_bn128 point compression of
                   hashToCurve(keccak256(abi.encodePacked(conditionId, indexSet)))
                   [+ decompress(parentCollectionId)]
    positionId   = uint256(keccak256(abi.encodePacked(collateralToken, collectionId)))

All functions are pure and safe to call from any thread.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from eth_abi.packed import encode_packed
from eth_utils import is_address
from web3 import Web3

from predindex.errors import DerivationMismatch, InvalidInput

# alt_bn128: y^2 = x^3 + 3 over F_P
P = 21888242871839275222246405745257275088696311157297823662689037894645226208583
B = 3

MAX_OUTCOME_SLOTS = 256
ZERO_COLLECTION_ID = "0x" + "00" * 32

_UINT254_MASK = (1 << 254) - 1


@dataclass(frozen=True)
class DerivedPosition:
    """Asset id derived for one outcome slot."""

    slot_index: int
    index_set: int
    collection_id: str
    asset_id: str


def normalize_bytes32(value: Any, field: str = "bytes32") -> str:
    """Canonical 0x-prefixed lowercase 64-hex form. Raises InvalidInput if malformed."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise InvalidInput(f"{field}: expected 32 bytes, got {len(value)}")
        return "0x" + bytes(value).hex()
    if isinstance(value, int) and not isinstance(value, bool):
        if not 0 <= value < 1 << 256:
            raise InvalidInput(f"{field}: integer out of uint256 range")
        return "0x" + value.to_bytes(32, "big").hex()
    s = str(value or "").strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    if len(s) != 64:
        raise InvalidInput(f"{field}: expected 64 hex chars, got {len(s)}")
    try:
        bytes.fromhex(s)
    except ValueError as e:
        raise InvalidInput(f"{field}: not hex ({e})") from e
    return "0x" + s


def normalize_address(value: Any, field: str = "address") -> str:
    """Canonical lowercase 0x address. Raises InvalidInput if malformed."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 20:
            raise InvalidInput(f"{field}: expected 20 bytes, got {len(value)}")
        return "0x" + bytes(value).hex()
    s = str(value or "").strip()
    if not is_address(s.lower()) or not s.lower().startswith("0x"):
        raise InvalidInput(f"{field}: malformed address {s!r}")
    return s.lower()


def _bytes32(value: str) -> bytes:
    return bytes.fromhex(value[2:])


def _keccak_int(packed: bytes) -> int:
    return int.from_bytes(Web3.keccak(packed), "big")


def index_set_for_slot(slot_index: int) -> int:
    """Index set selecting a single outcome slot (bit i for slot i)."""
    if slot_index < 0 or slot_index >= MAX_OUTCOME_SLOTS:
        raise InvalidInput(f"slot_index out of range: {slot_index}")
    return 1 << slot_index


def derive_condition_id(oracle: Any, question_id: Any, outcome_slot_count: int) -> str:
    """keccak256(abi.encodePacked(address oracle, bytes32 questionId, uint256 outcomeSlotCount))."""
    if isinstance(outcome_slot_count, bool) or not isinstance(outcome_slot_count, int):
        raise InvalidInput(f"outcome_slot_count must be an integer, got {outcome_slot_count!r}")
    if outcome_slot_count < 2 or outcome_slot_count > MAX_OUTCOME_SLOTS:
        raise InvalidInput(f"outcome_slot_count must be in [2, {MAX_OUTCOME_SLOTS}], got {outcome_slot_count}")
    oracle_addr = normalize_address(oracle, "oracle")
    qid = normalize_bytes32(question_id, "question_id")
    packed = encode_packed(
        ["address", "bytes32", "uint256"],
        [oracle_addr, _bytes32(qid), outcome_slot_count],
    )
    return "0x" + Web3.keccak(packed).hex().removeprefix("0x")


def verify_condition_id(
    reported_condition_id: Any,
    oracle: Any,
    question_id: Any,
    outcome_slot_count: int,
) -> str:
    """Recompute the condition id and compare with what the log reported."""
    reported = normalize_bytes32(reported_condition_id, "condition_id")
    derived = derive_condition_id(oracle, question_id, outcome_slot_count)
    if derived != reported:
        raise DerivationMismatch(
            f"condition id mismatch: reported {reported}, derived {derived}",
            question_id=normalize_bytes32(question_id, "question_id"),
            condition_id=reported,
        )
    return derived


def _sqrt(yy: int) -> int:
    # P % 4 == 3
    return pow(yy, (P + 1) // 4, P)


def _ec_add(p1: tuple[int, int] | None, p2: tuple[int, int] | None) -> tuple[int, int] | None:
    """Affine point addition on alt_bn128 (None is the point at infinity)."""
    if p1 is None:
        return p2
    if p2 is None:
        return p1
    x1, y1 = p1
    x2, y2 = p2
    if x1 == x2:
        if (y1 + y2) % P == 0:
            return None
        lam = 3 * x1 * x1 * pow(2 * y1, -1, P) % P
    else:
        lam = (y2 - y1) * pow((x2 - x1) % P, -1, P) % P
    x3 = (lam * lam - x1 - x2) % P
    y3 = (lam * (x1 - x3) - y1) % P
    return x3, y3


def derive_collection_id(parent_collection_id: Any, condition_id: Any, index_set: int) -> str:
    """CTHelpers.getCollectionId: hash to curve, add the parent point, compress."""
    if isinstance(index_set, bool) or not isinstance(index_set, int) or index_set <= 0 or index_set >= 1 << 256:
        raise InvalidInput(f"index_set must be a positive uint256, got {index_set!r}")
    parent = normalize_bytes32(parent_collection_id, "parent_collection_id")
    cond = normalize_bytes32(condition_id, "condition_id")

    x1 = _keccak_int(encode_packed(["bytes32", "uint256"], [_bytes32(cond), index_set]))
    odd = x1 >> 255 != 0
    while True:
        x1 = (x1 + 1) % P
        yy = (x1 * x1 % P * x1 + B) % P
        y1 = _sqrt(yy)
        if y1 * y1 % P == yy:
            break
    if (odd and y1 % 2 == 0) or (not odd and y1 % 2 == 1):
        y1 = P - y1

    x2 = int(parent, 16)
    if x2 != 0:
        odd = x2 >> 254 != 0
        x2 &= _UINT254_MASK
        yy = (x2 * x2 % P * x2 + B) % P
        y2 = _sqrt(yy)
        if (odd and y2 % 2 == 0) or (not odd and y2 % 2 == 1):
            y2 = P - y2
        if y2 * y2 % P != yy:
            raise InvalidInput(f"invalid parent collection id {parent}", condition_id=cond)
        point = _ec_add((x1, y1), (x2, y2))
        x1, y1 = point if point is not None else (0, 0)

    if y1 % 2 == 1:
        x1 ^= 1 << 254
    return "0x" + x1.to_bytes(32, "big").hex()


def derive_position_id(collateral_token: Any, collection_id: Any) -> str:
    """CTHelpers.getPositionId as a decimal string (the ERC1155 token id)."""
    collateral = normalize_address(collateral_token, "collateral_token")
    collection = normalize_bytes32(collection_id, "collection_id")
    packed = encode_packed(["address", "bytes32"], [collateral, _bytes32(collection)])
    return str(_keccak_int(packed))


def derive_positions(
    collateral_token: Any,
    condition_id: Any,
    outcome_slot_count: int,
    parent_collection_id: Any = ZERO_COLLECTION_ID,
) -> list[DerivedPosition]:
    """Asset ids for every single-slot index set of a condition, ordered by slot."""
    if isinstance(outcome_slot_count, bool) or not isinstance(outcome_slot_count, int):
        raise InvalidInput(f"outcome_slot_count must be an integer, got {outcome_slot_count!r}")
    if outcome_slot_count < 2 or outcome_slot_count > MAX_OUTCOME_SLOTS:
        raise InvalidInput(f"outcome_slot_count must be in [2, {MAX_OUTCOME_SLOTS}], got {outcome_slot_count}")
    out = []
    for slot in range(outcome_slot_count):
        index_set = index_set_for_slot(slot)
        collection_id = derive_collection_id(parent_collection_id, condition_id, index_set)
        out.append(
            DerivedPosition(
                slot_index=slot,
                index_set=index_set,
                collection_id=collection_id,
                asset_id=derive_position_id(collateral_token, collection_id),
            )
        )
    return out
