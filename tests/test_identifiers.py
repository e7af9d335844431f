"""ConditionalTokens identifier derivation."""

import pytest
from web3 import Web3

from predindex.derive import (
    derive_collection_id,
    derive_condition_id,
    derive_position_id,
    derive_positions,
    index_set_for_slot,
    normalize_address,
    normalize_bytes32,
    verify_condition_id,
)
from predindex.derive.identifiers import P, ZERO_COLLECTION_ID
from predindex.errors import DerivationMismatch, InvalidInput

from chainfactory import ORACLE, QID, WCOL


def _is_on_curve_x(x: int) -> bool:
    yy = (x * x * x + 3) % P
    return yy == 0 or pow(yy, (P - 1) // 2, P) == 1


def _non_residue_x() -> int:
    x = 1
    while _is_on_curve_x(x):
        x += 1
    return x


def test_keccak_is_ethereum_keccak_not_sha3():
    assert Web3.keccak(b"").hex().removeprefix("0x") == (
        "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"
    )


def test_field_modulus_is_alt_bn128_prime():
    assert P == 21888242871839275222246405745257275088696311157297823662689037894645226208583
    # Fermat witnesses; a composite modulus makes the square-root search loop forever
    assert all(pow(a, P - 1, P) == 1 for a in (2, 3, 5, 7, 11, 13))
    assert P % 4 == 3


# Polymarket binary markets: conditionId with the clob token ids of its two outcomes
USDC_E = "0x2791bca1f2de4661ed88a30c99a7a9449aa84174"
POLYMARKET_MARKETS = [
    (
        "0x44878f202dd18a286de9235acec372e9e6e6ca2b28d269c4138fc2604c9b78a9",
        "110325437323003864440364193681628128179433892752231328064623776035311134623682",
        "77680902575693269510705775150133261883431641996305813878639196300490247886068",
    ),
    (
        "0x03de82c50244e51820f56b682cd2227ce0d35fac94178275811034294a7d1e8b",
        "104771646709660831592727707032658923058293444911215259720234012315470229507167",
        "91704486839398022652930625279905848372527977307744447009017770224967808697336",
    ),
    (
        "0xd008c45c5320e7453b4e7725bda285cd822a3a61adef14759f2aadf0778c64b6",
        "105292534464588119413823901919588224897612305776681795693919323419047416388812",
        "98646985707839121837958202212263078387820716702786874164268337295747851893706",
    ),
]


@pytest.mark.parametrize("condition_id,yes_token,no_token", POLYMARKET_MARKETS)
def test_positions_match_live_polymarket_tokens(condition_id, yes_token, no_token):
    # Standard markets are collateralised in USDC.e, NegRisk ones in WrappedCollateral
    derived = {
        frozenset(p.asset_id for p in derive_positions(collateral, condition_id, 2)) for collateral in (USDC_E, WCOL)
    }
    assert frozenset({yes_token, no_token}) in derived


def test_condition_id_matches_manual_packing():
    packed = bytes.fromhex(ORACLE[2:]) + bytes.fromhex(QID[2:]) + (2).to_bytes(32, "big")
    expected = "0x" + Web3.keccak(packed).hex().removeprefix("0x")
    assert derive_condition_id(ORACLE, QID, 2) == expected
    assert len(expected) == 66


def test_condition_id_input_forms_normalize():
    checksum = Web3.to_checksum_address(ORACLE)
    a = derive_condition_id(ORACLE, QID, 2)
    b = derive_condition_id(checksum, QID.upper().replace("0X", "0x"), 2)
    c = derive_condition_id(ORACLE, bytes.fromhex(QID[2:]), 2)
    assert a == b == c


def test_condition_id_depends_on_every_input():
    base = derive_condition_id(ORACLE, QID, 2)
    assert derive_condition_id(ORACLE, QID, 3) != base
    assert derive_condition_id(WCOL, QID, 2) != base
    assert derive_condition_id(ORACLE, "0x" + "ab" * 31 + "ac", 2) != base


@pytest.mark.parametrize("slots", [0, 1, 257, True, "2"])
def test_condition_id_rejects_bad_slot_count(slots):
    with pytest.raises(InvalidInput):
        derive_condition_id(ORACLE, QID, slots)


@pytest.mark.parametrize(
    "oracle,qid",
    [
        ("0x1234", QID),
        ("not an address", QID),
        (ORACLE, "0x1234"),
        (ORACLE, "0x" + "zz" * 32),
        (ORACLE, None),
    ],
)
def test_condition_id_rejects_malformed_inputs(oracle, qid):
    with pytest.raises(InvalidInput):
        derive_condition_id(oracle, qid, 2)
    # InvalidInput is also a ValueError for callers that only know the builtin
    with pytest.raises(ValueError):
        derive_condition_id(oracle, qid, 2)


def test_verify_condition_id():
    cid = derive_condition_id(ORACLE, QID, 2)
    assert verify_condition_id(cid.upper().replace("0X", "0x"), ORACLE, QID, 2) == cid
    with pytest.raises(DerivationMismatch) as exc:
        verify_condition_id("0x" + "11" * 32, ORACLE, QID, 2)
    assert exc.value.question_id == QID
    assert exc.value.condition_id == "0x" + "11" * 32


def test_normalizers():
    assert normalize_bytes32(1) == "0x" + "00" * 31 + "01"
    assert normalize_bytes32("AB" * 32) == "0x" + "ab" * 32
    assert normalize_address(Web3.to_checksum_address(WCOL)) == WCOL
    with pytest.raises(InvalidInput):
        normalize_bytes32(1 << 256)
    with pytest.raises(InvalidInput):
        normalize_address(WCOL[2:] + "00")


def test_index_set_for_slot():
    assert [index_set_for_slot(i) for i in range(4)] == [1, 2, 4, 8]
    with pytest.raises(InvalidInput):
        index_set_for_slot(-1)
    with pytest.raises(InvalidInput):
        index_set_for_slot(256)


def test_collection_id_compresses_a_curve_point():
    cid = derive_condition_id(ORACLE, QID, 2)
    for index_set in (1, 2, 3):
        value = int(derive_collection_id(ZERO_COLLECTION_ID, cid, index_set), 16)
        assert value >> 255 == 0
        x = value & ((1 << 254) - 1)
        assert x < P
        assert _is_on_curve_x(x)


def test_collection_ids_distinct_per_index_set():
    cid = derive_condition_id(ORACLE, QID, 4)
    ids = {derive_collection_id(ZERO_COLLECTION_ID, cid, index_set_for_slot(i)) for i in range(4)}
    assert len(ids) == 4


def test_nested_collection_is_order_independent():
    # Point addition commutes, so nesting A under B equals nesting B under A
    cid_a = derive_condition_id(ORACLE, QID, 2)
    cid_b = derive_condition_id(ORACLE, "0x" + "ef" * 32, 2)
    coll_a = derive_collection_id(ZERO_COLLECTION_ID, cid_a, 1)
    coll_b = derive_collection_id(ZERO_COLLECTION_ID, cid_b, 2)
    a_then_b = derive_collection_id(coll_a, cid_b, 2)
    b_then_a = derive_collection_id(coll_b, cid_a, 1)
    assert a_then_b == b_then_a
    assert a_then_b not in (coll_a, coll_b)


def test_collection_id_rejects_invalid_parent():
    cid = derive_condition_id(ORACLE, QID, 2)
    bad_parent = "0x" + _non_residue_x().to_bytes(32, "big").hex()
    with pytest.raises(InvalidInput):
        derive_collection_id(bad_parent, cid, 1)


@pytest.mark.parametrize("index_set", [0, -1, 1 << 256, True])
def test_collection_id_rejects_bad_index_set(index_set):
    cid = derive_condition_id(ORACLE, QID, 2)
    with pytest.raises(InvalidInput):
        derive_collection_id(ZERO_COLLECTION_ID, cid, index_set)


def test_position_id_matches_manual_packing():
    cid = derive_condition_id(ORACLE, QID, 2)
    coll = derive_collection_id(ZERO_COLLECTION_ID, cid, 1)
    packed = bytes.fromhex(WCOL[2:]) + bytes.fromhex(coll[2:])
    expected = str(int.from_bytes(Web3.keccak(packed), "big"))
    assert derive_position_id(WCOL, coll) == expected


def test_derive_positions():
    cid = derive_condition_id(ORACLE, QID, 2)
    positions = derive_positions(WCOL, cid, 2)
    assert [p.slot_index for p in positions] == [0, 1]
    assert [p.index_set for p in positions] == [1, 2]
    assert positions[0].asset_id != positions[1].asset_id
    assert all(p.asset_id.isdigit() for p in positions)
    # Same condition under a different collateral yields different tokens
    other = derive_positions("0x2791bca1f2de4661ed88a30c99a7a9449aa84174", cid, 2)
    assert {p.asset_id for p in other}.isdisjoint({p.asset_id for p in positions})
    # Deterministic
    assert derive_positions(WCOL, cid, 2) == positions
