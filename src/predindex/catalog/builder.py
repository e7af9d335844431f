"""Catalog builder - applies resolver output to the catalog tables."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from predindex.errors import CatalogConflict, ConflictingQuestionData
from predindex.models import Asset, Condition, IntegrityIssue, Market, Outcome, Question, QuestionStatus
from predindex.resolver.graph import QuestionResolution
from predindex.storage import catalog as store

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

log = structlog.get_logger(__name__)

# Content columns compared on upsert; status is governed by the resolver state machine
_QUESTION_FIELDS = (
    "condition_id",
    "oracle",
    "outcome_slot_count",
    "market_id",
    "market_type",
    "description",
    "question_index",
)
_MARKET_FIELDS = ("oracle", "fee_bips", "description")
_ASSET_FIXED_FIELDS = ("condition_id", "slot_index", "index_set", "collateral_token", "parent_collection_id")


def _merge_field(name: str, old: Any, new: Any, reorg: bool, key: str) -> Any:
    """
    Upsert rule for one column: identical -> keep, NULL -> backfill,
    differing values -> CatalogConflict. During reorg retraction the new value wins,
    including clearing a field back to NULL.
    """
    if old == new:
        return old
    if old is None:
        return new
    if new is None:
        return None if reorg else old
    if reorg:
        return new
    raise CatalogConflict(f"{key}: {name} is {old!r}, refusing to overwrite with {new!r}")


class CatalogBuilder:
    """Writes questions and assets with idempotent upsert semantics, one transaction per question."""

    def __init__(self, conn: DuckDBPyConnection) -> None:
        self._conn = conn

    def apply(self, resolution: QuestionResolution, reorg: bool = False) -> QuestionStatus:
        """
        Persist one resolution. Returns the status the catalog now holds.
        A CatalogConflict rolls back the write, records the issue and faults the question.
        """
        conn = self._conn
        conn.begin()
        try:
            for issue in resolution.issues:
                if store.record_issue(conn, issue):
                    log.warning("integrity_issue", kind=issue.kind, question_id=issue.question_id, detail=issue.detail)
            if resolution.status == QuestionStatus.UNSEEN:
                self._retract(resolution.question_id)
            else:
                self._upsert_condition(resolution.condition, reorg)
                if resolution.market is not None:
                    self._upsert_market(resolution.market, reorg)
                elif reorg and resolution.question is not None and resolution.question.market_id:
                    # MarketPrepared no longer canonical
                    if store.get_market(conn, resolution.question.market_id) is not None:
                        store.delete_market(conn, resolution.question.market_id)
                # A ConflictingQuestionData verdict means the resolver already picked the
                # first-by-order QuestionPrepared, which replaces whatever was stored
                override = reorg or any(i.kind == ConflictingQuestionData.kind for i in resolution.issues)
                self._upsert_question(resolution.question, override)
                self._sync_assets(resolution.question_id, resolution.assets, reorg)
            conn.commit()
        except CatalogConflict as e:
            conn.rollback()
            self._record_conflict(resolution, e)
            resolution.set_status(QuestionStatus.FAULTED)
        except Exception:
            conn.rollback()
            raise
        return resolution.status

    def record_issues(self, issues: list[IntegrityIssue]) -> int:
        """Record issues without touching catalog rows. Returns how many were new."""
        conn = self._conn
        conn.begin()
        try:
            new = 0
            for issue in issues:
                if store.record_issue(conn, issue):
                    new += 1
                    log.warning("integrity_issue", kind=issue.kind, question_id=issue.question_id, detail=issue.detail)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return new

    # -- writes ----------------------------------------------------------------

    def _retract(self, question_id: str) -> None:
        """Remove a question and everything derived from it. Assets go first."""
        existing = store.get_question(self._conn, question_id)
        for asset in store.get_assets_for_question(self._conn, question_id):
            store.delete_asset(self._conn, asset.asset_id)
        if existing is None:
            return
        store.delete_question(self._conn, question_id)
        store.delete_condition(self._conn, existing.condition_id)
        log.info("question_retracted", question_id=question_id, condition_id=existing.condition_id)

    def _upsert_condition(self, condition: Condition | None, reorg: bool) -> None:
        if condition is None:
            return
        existing = store.get_condition(self._conn, condition.condition_id)
        if existing is None:
            store.insert_condition(self._conn, condition)
            return
        for name in ("oracle", "question_id", "outcome_slot_count"):
            if getattr(existing, name) != getattr(condition, name):
                raise CatalogConflict(
                    f"condition {condition.condition_id}: {name} differs",
                    question_id=condition.question_id,
                    condition_id=condition.condition_id,
                )
        if (existing.block_number, existing.transaction_hash) != (condition.block_number, condition.transaction_hash):
            store.update_condition_anchor(self._conn, condition)

    def _upsert_market(self, market: Market, reorg: bool) -> None:
        existing = store.get_market(self._conn, market.market_id)
        if existing is None:
            store.insert_market(self._conn, market)
            return
        merged = {
            name: _merge_field(name, getattr(existing, name), getattr(market, name), reorg, f"market {market.market_id}")
            for name in _MARKET_FIELDS
        }
        updated = existing.model_copy(update=merged)
        if updated != existing:
            store.update_market(self._conn, updated)

    def _upsert_question(self, question: Question | None, reorg: bool) -> None:
        if question is None:
            return
        existing = store.get_question(self._conn, question.question_id)
        if existing is None:
            store.insert_question(self._conn, question)
            return
        try:
            merged = {
                name: _merge_field(
                    name, getattr(existing, name), getattr(question, name), reorg, f"question {question.question_id}"
                )
                for name in _QUESTION_FIELDS
            }
        except CatalogConflict as e:
            raise CatalogConflict(str(e), question_id=question.question_id, condition_id=question.condition_id) from e
        merged["status"] = question.status
        updated = existing.model_copy(update=merged)
        if reorg and existing.condition_id != updated.condition_id:
            store.delete_condition(self._conn, existing.condition_id)
        if existing.market_id and existing.market_id != updated.market_id and reorg:
            self._drop_unreferenced_market(existing.market_id, question.question_id)
        if updated != existing:
            store.update_question(self._conn, updated)

    def _drop_unreferenced_market(self, market_id: str, leaving_question_id: str) -> None:
        others = self._conn.execute(
            "SELECT COUNT(*) FROM questions WHERE market_id = ? AND question_id <> ?",
            [market_id, leaving_question_id],
        ).fetchone()[0]
        if not others:
            store.delete_market(self._conn, market_id)

    def _sync_assets(self, question_id: str, assets: list[Asset], reorg: bool) -> None:
        existing = {a.asset_id: a for a in store.get_assets_for_question(self._conn, question_id)}
        wanted = {a.asset_id for a in assets}
        stale = [aid for aid in existing if aid not in wanted]
        if stale:
            if reorg:
                for aid in stale:
                    store.delete_asset(self._conn, aid)
            elif assets:
                raise CatalogConflict(
                    f"question {question_id}: derived asset set changed ({len(stale)} existing assets not re-derived)",
                    question_id=question_id,
                    asset_id=stale[0],
                )
        for asset in assets:
            current = existing.get(asset.asset_id) or store.get_asset(self._conn, asset.asset_id)
            if current is None:
                store.insert_asset(self._conn, asset)
                continue
            if current.question_id != asset.question_id:
                raise CatalogConflict(
                    f"asset {asset.asset_id} already belongs to question {current.question_id}",
                    question_id=asset.question_id,
                    asset_id=asset.asset_id,
                )
            for name in _ASSET_FIXED_FIELDS:
                if getattr(current, name) != getattr(asset, name):
                    raise CatalogConflict(
                        f"asset {asset.asset_id}: {name} differs",
                        question_id=asset.question_id,
                        asset_id=asset.asset_id,
                    )
            outcome = self._merge_outcome(current, asset, reorg)
            if outcome != current.outcome:
                store.update_asset_outcome(self._conn, asset.asset_id, outcome)

    @staticmethod
    def _merge_outcome(current: Asset, asset: Asset, reorg: bool) -> Outcome:
        if current.outcome == asset.outcome:
            return current.outcome
        if current.outcome == Outcome.UNKNOWN:
            return asset.outcome
        if asset.outcome == Outcome.UNKNOWN:
            return asset.outcome if reorg else current.outcome
        if reorg:
            return asset.outcome
        raise CatalogConflict(
            f"asset {asset.asset_id}: outcome is {current.outcome.value}, refusing {asset.outcome.value}",
            question_id=asset.question_id,
            asset_id=asset.asset_id,
        )

    def _record_conflict(self, resolution: QuestionResolution, err: CatalogConflict) -> None:
        """Record the conflict (and the resolution's other issues) and mark the question faulted."""
        log.warning("catalog_conflict", question_id=resolution.question_id, error=str(err))
        conn = self._conn
        conn.begin()
        try:
            for issue in resolution.issues:
                store.record_issue(conn, issue)
            store.record_issue(
                conn,
                IntegrityIssue(
                    kind=err.kind,
                    question_id=err.question_id or resolution.question_id,
                    asset_id=err.asset_id,
                    condition_id=err.condition_id,
                    detail=str(err),
                ),
            )
            existing = store.get_question(conn, resolution.question_id)
            if existing is not None:
                if existing.status != QuestionStatus.FAULTED:
                    store.update_question(conn, existing.model_copy(update={"status": QuestionStatus.FAULTED}))
            elif resolution.question is not None and resolution.condition is not None:
                if store.get_condition(conn, resolution.condition.condition_id) is None:
                    store.insert_condition(conn, resolution.condition)
                store.insert_question(conn, resolution.question.model_copy(update={"status": QuestionStatus.FAULTED}))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
