"""Indexer pipeline: ingestion, convergence, reorg retraction, cancellation, timeouts."""

import asyncio
import threading

from predindex.catalog import get_asset_context, get_question_assets
from predindex.ingestion.pipeline import Indexer
from predindex.models import Outcome, QuestionStatus
from predindex.resolver import ResolverConfig, negrisk_outcome_labeler
from predindex.storage.catalog import find_orphan_assets, get_market, get_question, list_issues
from predindex.storage.db import get_connection, init_schema

from chainfactory import (
    CTF,
    MARKET,
    ORACLE,
    QID,
    QID2,
    QID3,
    WCOL,
    catalog_snapshot,
    condition_preparation,
    lifecycle,
    market_prepared,
    position_ids,
    question_prepared,
    tx,
)

SCOPED = ResolverConfig(conditional_tokens=frozenset({CTF}), negrisk_adapters=frozenset({ORACLE}))


def _indexer(conn, **kwargs):
    kwargs.setdefault("resolver_config", SCOPED)
    kwargs.setdefault("labeler", negrisk_outcome_labeler)
    return Indexer(conn, **kwargs)


def _fresh_db(tmp_path, name):
    conn = get_connection(tmp_path / f"{name}.duckdb")
    init_schema(conn)
    return conn


def test_end_to_end_lookup(temp_db):
    indexer = _indexer(temp_db)
    result = indexer.ingest([market_prepared()] + lifecycle())
    assert result.events_changed == 5
    assert result.statuses["resolved"] == 1
    yes_id, no_id = position_ids()
    ctx = get_asset_context(temp_db, yes_id)
    assert ctx.question_id == QID
    assert ctx.market_id == MARKET
    assert ctx.description == "Will it rain?"
    assert ctx.outcome == Outcome.YES
    assert get_asset_context(temp_db, no_id).outcome == Outcome.NO
    assert indexer.resolver.state(QID) == QuestionStatus.RESOLVED


def test_duplicate_delivery_is_a_no_op(temp_db):
    indexer = _indexer(temp_db)
    indexer.ingest(lifecycle())
    before = catalog_snapshot(temp_db)
    result = indexer.ingest(lifecycle())
    assert result.events_changed == 0
    assert result.questions_applied == 0
    assert catalog_snapshot(temp_db) == before


def test_delivery_order_does_not_matter(tmp_path):
    events = [market_prepared()] + lifecycle() + lifecycle(QID2, base_block=110, tx_base=11, index=1, text="Other?")
    orders = [
        [events],
        [[e] for e in events],
        [[e] for e in reversed(events)],
        [[events[i]] for i in (3, 7, 0, 5, 2, 8, 1, 6, 4)],
    ]
    snapshots = []
    for n, batches in enumerate(orders):
        conn = _fresh_db(tmp_path, f"order{n}")
        try:
            indexer = _indexer(conn)
            for batch in batches:
                indexer.ingest(batch)
            assert get_question(conn, QID).status == QuestionStatus.RESOLVED
            assert get_question(conn, QID2).status == QuestionStatus.RESOLVED
            snapshots.append(catalog_snapshot(conn))
        finally:
            conn.close()
    assert all(s == snapshots[0] for s in snapshots[1:])


def test_conflicting_question_is_faulted(temp_db):
    indexer = _indexer(temp_db)
    second = question_prepared(block=100, log_index=5, tx_hash=tx(7), text="Will it snow?")
    indexer.ingest(lifecycle() + [second])
    q = get_question(temp_db, QID)
    assert q.status == QuestionStatus.FAULTED
    assert q.description == "Will it rain?"
    assert len(list_issues(temp_db, question_id=QID, kind="ConflictingQuestionData")) == 1


def test_faulted_is_sticky(temp_db):
    indexer = _indexer(temp_db)
    indexer.ingest(lifecycle() + [question_prepared(block=100, log_index=5, tx_hash=tx(7), text="Will it snow?")])
    indexer.ingest([market_prepared()])
    assert get_question(temp_db, QID).status == QuestionStatus.FAULTED


def test_derivation_mismatch_never_catalogued(temp_db):
    indexer = _indexer(temp_db)
    indexer.ingest([condition_preparation(condition_id="0x" + "11" * 32), question_prepared()])
    assert get_question(temp_db, QID) is None
    assert len(list_issues(temp_db, question_id=QID, kind="DerivationMismatch")) == 1


def test_reorg_of_question_prepared_returns_to_pending(temp_db):
    events = [market_prepared()] + lifecycle()
    events[2] = question_prepared(block=100, log_index=1, tx_hash=tx(5))
    indexer = _indexer(temp_db)
    indexer.ingest(events)
    assert get_question(temp_db, QID).status == QuestionStatus.RESOLVED

    result = indexer.invalidate_transaction(tx(5))
    assert result.events_changed == 1
    q = get_question(temp_db, QID)
    assert q.status == QuestionStatus.PENDING
    assert q.market_id is None
    assert q.description is None
    assert get_market(temp_db, MARKET) is None
    # Assets are still corroborated by the split
    assert len(get_question_assets(temp_db, QID)) == 2
    assert indexer.resolver.state(QID) == QuestionStatus.PENDING


def test_reorg_of_condition_retracts_everything(temp_db):
    indexer = _indexer(temp_db)
    indexer.ingest(lifecycle())
    indexer.invalidate_transaction(tx(1))
    assert get_question(temp_db, QID) is None
    assert get_asset_context(temp_db, position_ids()[0]) is None
    assert find_orphan_assets(temp_db) == []
    assert indexer.resolver.state(QID) == QuestionStatus.UNSEEN

    # Re-inclusion restores the question
    indexer.ingest(lifecycle())
    assert get_question(temp_db, QID).status == QuestionStatus.RESOLVED


def test_reorg_of_sole_event_removes_pending_question(temp_db):
    indexer = _indexer(temp_db)
    indexer.ingest([condition_preparation()])
    assert get_question(temp_db, QID).status == QuestionStatus.PENDING
    indexer.invalidate_transaction(tx(1))
    assert get_question(temp_db, QID) is None
    assert indexer.resolver.states() == {}


def test_rollback_from_block_drops_assets(temp_db):
    indexer = _indexer(temp_db)
    indexer.ingest(lifecycle())
    result = indexer.invalidate_from_block(101)
    assert result.events_changed == 2
    assert get_question(temp_db, QID).status == QuestionStatus.PENDING
    assert get_question_assets(temp_db, QID) == []
    assert find_orphan_assets(temp_db) == []


def test_cancelled_batch_is_resumed(temp_db):
    indexer = _indexer(temp_db)
    cancel = threading.Event()
    cancel.set()
    result = indexer.ingest(lifecycle(), cancel=cancel)
    assert result.cancelled
    assert result.questions_applied == 0
    assert indexer.pending_questions == {QID}
    assert get_question(temp_db, QID) is None

    result = indexer.ingest([])
    assert not result.cancelled
    assert result.questions_applied == 1
    assert indexer.pending_questions == set()
    assert get_question(temp_db, QID).status == QuestionStatus.RESOLVED


def test_stale_pending_becomes_unresolvable_then_resolves(temp_db):
    config = ResolverConfig(
        conditional_tokens=frozenset({CTF}), negrisk_adapters=frozenset({ORACLE}), pending_timeout_blocks=10
    )
    indexer = _indexer(temp_db, resolver_config=config)
    indexer.ingest([condition_preparation(block=100, tx_hash=tx(1))])
    assert get_question(temp_db, QID).status == QuestionStatus.PENDING

    # Unrelated activity moves the head past the timeout
    indexer.ingest([condition_preparation(QID2, block=120, tx_hash=tx(20))])
    assert get_question(temp_db, QID).status == QuestionStatus.UNRESOLVABLE
    assert get_question(temp_db, QID2).status == QuestionStatus.PENDING
    assert len(list_issues(temp_db, question_id=QID, kind="Unresolvable")) == 1

    late = lifecycle(base_block=121, tx_base=30)[1:]
    indexer.ingest(late)
    assert get_question(temp_db, QID).status == QuestionStatus.RESOLVED


def test_state_survives_restart(temp_db):
    _indexer(temp_db).ingest(lifecycle())
    again = _indexer(temp_db)
    assert again.resolver.state(QID) == QuestionStatus.RESOLVED
    assert again.get_status()["questions"] == {"resolved": 1}


def test_reindex_is_stable(temp_db):
    indexer = _indexer(temp_db)
    indexer.ingest([market_prepared()] + lifecycle())
    before = catalog_snapshot(temp_db)
    result = indexer.reindex()
    assert result.statuses["resolved"] == 1
    assert catalog_snapshot(temp_db) == before


def test_multiple_workers(temp_db):
    events = []
    for n, qid in enumerate((QID, QID2, QID3)):
        events += lifecycle(qid, base_block=100 + 10 * n, tx_base=10 * n + 1, index=n, text=f"Q{n}")
    indexer = _indexer(temp_db, resolve_workers=3)
    result = indexer.ingest(events)
    assert result.statuses["resolved"] == 3
    assert find_orphan_assets(temp_db) == []


def test_async_run(temp_db):
    indexer = _indexer(temp_db)
    batches = [[market_prepared()], lifecycle()[:2], lifecycle()[2:]]

    async def source():
        for batch in batches:
            yield batch

    asyncio.run(indexer.run(source()))
    assert get_question(temp_db, QID).status == QuestionStatus.RESOLVED
    assert indexer.get_status()["event_count"] == 5


def test_async_run_stops_on_event(temp_db):
    indexer = _indexer(temp_db)

    async def main():
        stop = asyncio.Event()
        stop.set()

        async def source():
            yield lifecycle()

        await indexer.run(source(), stop_event=stop)

    asyncio.run(main())
    assert get_question(temp_db, QID) is None


def test_conflicting_question_converges_to_first_emission(tmp_path):
    events = lifecycle() + [question_prepared(block=100, log_index=5, tx_hash=tx(7), text="Will it snow?")]
    rain, snow = events[1], events[4]
    orders = [
        [events],
        [[e] for e in events],
        [[e] for e in reversed(events)],
        # later emission catalogued first, earlier one arrives afterwards
        [[events[0], snow, events[2], events[3]], [rain]],
    ]
    snapshots = []
    for n, batches in enumerate(orders):
        conn = _fresh_db(tmp_path, f"conflict{n}")
        try:
            indexer = _indexer(conn)
            for batch in batches:
                indexer.ingest(batch)
            q = get_question(conn, QID)
            assert q.status == QuestionStatus.FAULTED
            assert q.description == "Will it rain?"
            assert len(list_issues(conn, question_id=QID, kind="ConflictingQuestionData")) == 1
            assert list_issues(conn, question_id=QID, kind="CatalogConflict") == []
            snapshots.append(catalog_snapshot(conn))
        finally:
            conn.close()
    assert all(s == snapshots[0] for s in snapshots[1:])


def test_malformed_param_does_not_block_other_questions(temp_db):
    indexer = _indexer(temp_db)
    bad = question_prepared(QID2, tx_hash=tx(40), index="first")
    indexer.ingest([condition_preparation(QID2, tx_hash=tx(40)), bad])
    q2 = get_question(temp_db, QID2)
    assert q2.status == QuestionStatus.PENDING
    assert q2.question_index is None
    assert q2.description == "Will it rain?"
    assert len(list_issues(temp_db, question_id=QID2, kind="InvalidInput")) == 1
    assert indexer.pending_questions == set()

    indexer.ingest(lifecycle())
    assert get_question(temp_db, QID).status == QuestionStatus.RESOLVED


def test_bad_market_fee_is_reported_not_fatal(temp_db):
    indexer = _indexer(temp_db)
    indexer.ingest([market_prepared(fee_bips="lots")] + lifecycle())
    assert get_question(temp_db, QID).status == QuestionStatus.RESOLVED
    assert get_market(temp_db, MARKET).fee_bips is None
    assert len(list_issues(temp_db, question_id=QID, kind="InvalidInput")) == 1


def test_failed_resolution_is_recorded_and_dropped(temp_db, monkeypatch):
    indexer = _indexer(temp_db)
    resolve = indexer.resolver.resolve

    def flaky(question_id, conn=None):
        if question_id == QID2:
            raise ValueError("corrupt event data")
        return resolve(question_id, conn=conn)

    monkeypatch.setattr(indexer.resolver, "resolve", flaky)
    result = indexer.ingest(lifecycle() + lifecycle(QID2, base_block=110, tx_base=11, index=1, text="Other?"))
    assert result.statuses["resolved"] == 1
    assert result.statuses["failed"] == 1
    assert get_question(temp_db, QID).status == QuestionStatus.RESOLVED
    assert get_question(temp_db, QID2) is None
    issues = list_issues(temp_db, question_id=QID2, kind="InvalidInput")
    assert len(issues) == 1
    assert "corrupt event data" in issues[0].detail
    assert indexer.pending_questions == set()


def test_wide_condition_index_sets_are_stored(temp_db):
    config = ResolverConfig(
        conditional_tokens=frozenset({CTF}),
        negrisk_adapters=frozenset({ORACLE}),
        collateral_by_oracle={ORACLE: WCOL},
    )
    indexer = _indexer(temp_db, resolver_config=config)
    indexer.ingest([condition_preparation(slots=70)])
    assets = get_question_assets(temp_db, QID)
    assert len(assets) == 70
    assert assets[-1].index_set == 1 << 69
    assert len({a.asset_id for a in assets}) == 70
    assert get_question(temp_db, QID).status == QuestionStatus.PENDING
