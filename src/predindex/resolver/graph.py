"""
Market graph resolver.

For each question_id with on-chain evidence, rebuilds the chain

    PositionSplit / mint  ->  ConditionPreparation  ->  QuestionPrepared  ->  market group

from the event store, verifying every identifier by recomputation. Resolution
of one question is a pure function of the canonical events in the store, so
duplicate delivery, out-of-order delivery and reorg retraction all reduce to
"re-resolve the affected questions". The resolver additionally keeps the
per-question status so that, outside of reorgs, a question only moves forward.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable

import structlog

from predindex.derive import (
    derive_collection_id,
    derive_position_id,
    derive_positions,
    normalize_address,
    normalize_bytes32,
    verify_condition_id,
)
from predindex.derive.identifiers import ZERO_COLLECTION_ID
from predindex.errors import (
    ConflictingQuestionData,
    DerivationMismatch,
    IndexerError,
    InvalidInput,
    Unresolvable,
)
from predindex.models import (
    Asset,
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
from predindex.models.event import (
    CONDITION_PREPARATION,
    MARKET_PREPARED,
    MINT_EVENTS,
    POSITION_SPLIT,
    QUESTION_PREPARED,
    ChainEvent,
)
from predindex.resolver.labeler import OutcomeLabeler, coerce_outcome
from predindex.storage.catalog import get_asset, question_statuses
from predindex.storage.event_log import find_events, normalize_hex_key

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

    from predindex.config import Settings

log = structlog.get_logger(__name__)

# Issue kinds that exclude a question from the resolved set
FAULT_KINDS = frozenset({DerivationMismatch.kind, ConflictingQuestionData.kind})


@dataclass(frozen=True)
class ResolverConfig:
    """Contract scoping. Empty sets accept any address."""

    conditional_tokens: frozenset[str] = frozenset()
    negrisk_adapters: frozenset[str] = frozenset()
    collateral_by_oracle: dict[str, str] = field(default_factory=dict)
    pending_timeout_blocks: int = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> ResolverConfig:
        return cls(
            conditional_tokens=frozenset(settings.conditional_tokens),
            negrisk_adapters=frozenset(settings.negrisk_adapters),
            collateral_by_oracle=settings.collateral_by_oracle,
            pending_timeout_blocks=settings.pending_timeout_blocks,
        )


@dataclass
class QuestionResolution:
    """Everything the catalog needs to write (or retract) for one question."""

    question_id: str
    status: QuestionStatus
    condition: Condition | None = None
    question: Question | None = None
    assets: list[Asset] = field(default_factory=list)
    market: Market | None = None
    split: SplitReference | None = None
    mint: MintReference | None = None
    issues: list[IntegrityIssue] = field(default_factory=list)
    failed: bool = False

    @property
    def anchor_block(self) -> int | None:
        return self.condition.block_number if self.condition else None

    def set_status(self, status: QuestionStatus) -> None:
        self.status = status
        if self.question is not None:
            self.question = self.question.model_copy(update={"status": status})


def decode_description(data: Any) -> str | None:
    """Decode QuestionPrepared/MarketPrepared `data` bytes as UTF-8. None if not decodable."""
    if data is None:
        return None
    if isinstance(data, (bytes, bytearray)):
        raw = bytes(data)
    else:
        s = str(data).strip()
        if not s.lower().startswith("0x"):
            return s
        try:
            raw = bytes.fromhex(s[2:])
        except ValueError:
            return None
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return None


def _as_question_id(value: Any) -> str | None:
    try:
        return normalize_bytes32(value, "question_id")
    except InvalidInput:
        return None


def _issue(
    kind: str,
    detail: str,
    event: ChainEvent | None = None,
    *,
    question_id: str | None = None,
    asset_id: str | None = None,
    condition_id: str | None = None,
) -> IntegrityIssue:
    return IntegrityIssue(
        kind=kind,
        question_id=question_id,
        asset_id=asset_id,
        condition_id=condition_id,
        detail=detail,
        transaction_hash=event.transaction_hash if event else None,
        log_index=event.log_index if event else None,
        block_number=event.block_number if event else None,
    )


def _issue_from_error(err: IndexerError, event: ChainEvent | None, question_id: str) -> IntegrityIssue:
    return _issue(
        err.kind,
        str(err),
        event,
        question_id=err.question_id or question_id,
        asset_id=err.asset_id,
        condition_id=err.condition_id,
    )


def _parse_int(ev: ChainEvent, name: str, question_id: str, issues: list[IntegrityIssue] | None) -> int | None:
    """Integer event param, or None (with an InvalidInput issue) when missing or malformed."""
    value = ev.param(name)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        if issues is not None:
            log.warning("param_invalid", question_id=question_id, event_name=ev.event_name, param=name, tx=ev.transaction_hash)
            issues.append(
                _issue(InvalidInput.kind, f"{ev.event_name}.{name} is not an integer: {value!r}", ev, question_id=question_id)
            )
        return None


class MarketGraphResolver:
    """Resolves questions from the event store and tracks per-question status."""

    def __init__(
        self,
        conn: DuckDBPyConnection,
        config: ResolverConfig | None = None,
        labeler: OutcomeLabeler | None = None,
    ) -> None:
        self._conn = conn
        self.config = config or ResolverConfig()
        self.labeler = labeler
        self._states: dict[str, QuestionStatus] = {}
        self._anchor_blocks: dict[str, int] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # -- state ---------------------------------------------------------------

    def load_state(self) -> None:
        """Restore per-question status and anchors from the persisted catalog."""
        self._states = {
            qid: status for qid, status in question_statuses(self._conn).items() if status != QuestionStatus.UNSEEN
        }
        rows = self._conn.execute(
            "SELECT q.question_id, c.block_number FROM questions q JOIN conditions c ON q.condition_id = c.condition_id"
        ).fetchall()
        self._anchor_blocks = {qid: block for qid, block in rows if block is not None}

    def state(self, question_id: str) -> QuestionStatus:
        return self._states.get(question_id, QuestionStatus.UNSEEN)

    def states(self) -> dict[str, QuestionStatus]:
        return dict(self._states)

    def question_lock(self, question_id: str) -> threading.Lock:
        """Per-question lock: same-question work is serialized, different questions never block."""
        with self._locks_guard:
            lock = self._locks.get(question_id)
            if lock is None:
                lock = self._locks[question_id] = threading.Lock()
            return lock

    def accepts(self, resolution: QuestionResolution, reorg: bool = False) -> bool:
        """True if moving to resolution.status is a legal transition."""
        current = self.state(resolution.question_id)
        if reorg or resolution.status.rank >= current.rank:
            return True
        log.warning(
            "question_regression_ignored",
            question_id=resolution.question_id,
            current=current.value,
            proposed=resolution.status.value,
        )
        return False

    def commit(self, resolution: QuestionResolution) -> None:
        """Record the status the catalog now holds for this question."""
        qid = resolution.question_id
        if resolution.status == QuestionStatus.UNSEEN:
            self._states.pop(qid, None)
            self._anchor_blocks.pop(qid, None)
            return
        previous = self._states.get(qid, QuestionStatus.UNSEEN)
        self._states[qid] = resolution.status
        if resolution.anchor_block is not None:
            self._anchor_blocks[qid] = resolution.anchor_block
        if previous != resolution.status:
            log.info("question_transition", question_id=qid, previous=previous.value, status=resolution.status.value)

    # -- dirty-key mapping -----------------------------------------------------

    def questions_for_events(self, events: Iterable[ChainEvent], conn: DuckDBPyConnection | None = None) -> set[str]:
        """Question ids whose resolution may change because of these events."""
        conn = conn or self._conn
        out: set[str] = set()
        for ev in events:
            name = ev.event_name
            if name in (CONDITION_PREPARATION, QUESTION_PREPARED):
                qid = _as_question_id(ev.param("questionId"))
                if qid:
                    out.add(qid)
            elif name == POSITION_SPLIT:
                out.update(self._questions_for_condition(conn, ev.param("conditionId")))
            elif name in MINT_EVENTS:
                try:
                    token_ids = ev.minted_token_ids()
                except (TypeError, ValueError):
                    token_ids = []
                for token_id in token_ids:
                    asset = get_asset(conn, token_id)
                    if asset is not None:
                        out.add(asset.question_id)
                for split in find_events(conn, POSITION_SPLIT, transaction_hash=ev.transaction_hash):
                    out.update(self._questions_for_condition(conn, split.param("conditionId")))
            elif name == MARKET_PREPARED:
                for qp in find_events(conn, QUESTION_PREPARED, market_id=ev.param("marketId")):
                    qid = _as_question_id(qp.param("questionId"))
                    if qid:
                        out.add(qid)
        return out

    def _questions_for_condition(self, conn: DuckDBPyConnection, condition_id: Any) -> set[str]:
        cid = normalize_hex_key(condition_id)
        if not cid:
            return set()
        out = set()
        for cp in find_events(conn, CONDITION_PREPARATION, condition_id=cid):
            qid = _as_question_id(cp.param("questionId"))
            if qid:
                out.add(qid)
        return out

    def all_question_ids(self) -> list[str]:
        """Every question with a canonical ConditionPreparation or an existing catalog row."""
        rows = self._conn.execute(
            "SELECT question_id FROM chain_events WHERE event_name = ? AND NOT removed AND question_id IS NOT NULL "
            "UNION SELECT question_id FROM questions",
            [CONDITION_PREPARATION],
        ).fetchall()
        return sorted(r[0] for r in rows)

    # -- resolution ------------------------------------------------------------

    def _accept_ctf(self, ev: ChainEvent) -> bool:
        allowed = self.config.conditional_tokens
        return not allowed or ev.contract_address in allowed

    def _label(self, condition_id: str, slot_index: int) -> Outcome:
        if self.labeler is None:
            return Outcome.UNKNOWN
        try:
            return coerce_outcome(self.labeler(condition_id, slot_index))
        except Exception:
            log.exception("outcome_labeler_failed", condition_id=condition_id, slot_index=slot_index)
            return Outcome.UNKNOWN

    def _resolve_condition(
        self, conn: DuckDBPyConnection, qid: str, issues: list[IntegrityIssue]
    ) -> Condition | None:
        """First verified, in-scope ConditionPreparation for the question."""
        condition: Condition | None = None
        for ev in find_events(conn, CONDITION_PREPARATION, question_id=qid):
            if not self._accept_ctf(ev):
                continue
            try:
                oracle = normalize_address(ev.param("oracle"), "oracle")
                if self.config.negrisk_adapters and oracle not in self.config.negrisk_adapters:
                    log.debug("condition_out_of_scope", question_id=qid, oracle=oracle)
                    continue
                slot_count = int(ev.param("outcomeSlotCount"))
                condition_id = verify_condition_id(ev.param("conditionId"), oracle, qid, slot_count)
            except DerivationMismatch as e:
                log.warning("condition_id_mismatch", question_id=qid, tx=ev.transaction_hash, error=str(e))
                issues.append(_issue_from_error(e, ev, qid))
                continue
            except (InvalidInput, TypeError, ValueError) as e:
                log.warning("condition_invalid", question_id=qid, tx=ev.transaction_hash, error=str(e))
                issues.append(_issue(InvalidInput.kind, str(e), ev, question_id=qid))
                continue
            candidate = Condition(
                condition_id=condition_id,
                oracle=oracle,
                question_id=qid,
                outcome_slot_count=slot_count,
                block_number=ev.block_number,
                log_index=ev.log_index,
                transaction_hash=ev.transaction_hash,
            )
            if condition is None:
                condition = candidate
            elif candidate.condition_id != condition.condition_id:
                issues.append(
                    _issue(
                        ConflictingQuestionData.kind,
                        f"second condition {candidate.condition_id} for question (first {condition.condition_id})",
                        ev,
                        question_id=qid,
                        condition_id=candidate.condition_id,
                    )
                )
        return condition

    def _resolve_split(
        self, conn: DuckDBPyConnection, condition: Condition, issues: list[IntegrityIssue]
    ) -> SplitReference | None:
        for ev in find_events(conn, POSITION_SPLIT, condition_id=condition.condition_id):
            if not self._accept_ctf(ev):
                continue
            try:
                return SplitReference(
                    transaction_hash=ev.transaction_hash,
                    block_number=ev.block_number,
                    log_index=ev.log_index,
                    collateral_token=normalize_address(ev.param("collateralToken"), "collateral_token"),
                    parent_collection_id=normalize_bytes32(
                        ev.param("parentCollectionId") or ZERO_COLLECTION_ID, "parent_collection_id"
                    ),
                    partition=[int(i) for i in ev.param("partition") or []],
                )
            except (InvalidInput, TypeError, ValueError) as e:
                issues.append(
                    _issue(InvalidInput.kind, str(e), ev, question_id=condition.question_id, condition_id=condition.condition_id)
                )
        return None

    def _check_split_mints(
        self,
        conn: DuckDBPyConnection,
        condition: Condition,
        split: SplitReference,
        issues: list[IntegrityIssue],
    ) -> None:
        """Mints in the split transaction must carry the positions derived for its partition."""
        minted: set[str] = set()
        for ev in find_events(conn, MINT_EVENTS, transaction_hash=split.transaction_hash, mints_only=True):
            if not self._accept_ctf(ev):
                continue
            try:
                minted.update(ev.minted_token_ids())
            except (TypeError, ValueError) as e:
                log.warning("mint_invalid", question_id=condition.question_id, tx=ev.transaction_hash, error=str(e))
                issues.append(
                    _issue(
                        InvalidInput.kind,
                        f"unreadable token ids: {e}",
                        ev,
                        question_id=condition.question_id,
                        condition_id=condition.condition_id,
                    )
                )
        if not minted:
            return
        for index_set in split.partition:
            try:
                collection_id = derive_collection_id(split.parent_collection_id, condition.condition_id, index_set)
                asset_id = derive_position_id(split.collateral_token, collection_id)
            except InvalidInput as e:
                issues.append(_issue_from_error(e, None, condition.question_id))
                continue
            if asset_id not in minted:
                log.warning(
                    "position_id_mismatch",
                    question_id=condition.question_id,
                    asset_id=asset_id,
                    tx=split.transaction_hash,
                )
                issues.append(
                    IntegrityIssue(
                        kind=DerivationMismatch.kind,
                        question_id=condition.question_id,
                        asset_id=asset_id,
                        condition_id=condition.condition_id,
                        detail=f"derived position for index set {index_set} not minted by split transaction",
                        transaction_hash=split.transaction_hash,
                        log_index=split.log_index,
                        block_number=split.block_number,
                    )
                )

    def _first_mint(self, conn: DuckDBPyConnection, asset_ids: list[str]) -> MintReference | None:
        first: ChainEvent | None = None
        for asset_id in asset_ids:
            for ev in find_events(conn, MINT_EVENTS, token_id=asset_id, mints_only=True):
                if not self._accept_ctf(ev):
                    continue
                if first is None or ev.order_key < first.order_key:
                    first = ev
                break
        if first is None:
            return None
        # token_id lookups only match events whose ids parsed at append time
        return MintReference(
            transaction_hash=first.transaction_hash,
            block_number=first.block_number,
            log_index=first.log_index,
            asset_ids=[a for a in first.minted_token_ids() if a in asset_ids],
        )

    def _resolve_market(
        self, conn: DuckDBPyConnection, market_id: str, oracle: str, question_id: str, issues: list[IntegrityIssue]
    ) -> Market | None:
        for ev in find_events(conn, MARKET_PREPARED, market_id=market_id, contract_address=oracle):
            fee = _parse_int(ev, "feeBips", question_id, issues)
            return Market(
                market_id=market_id,
                oracle=oracle,
                fee_bips=fee,
                description=decode_description(ev.param("data")),
            )
        return None

    def resolve(self, question_id: str, conn: DuckDBPyConnection | None = None) -> QuestionResolution:
        """Resolve one question from canonical events. Reads only; never writes."""
        conn = conn or self._conn
        qid = normalize_bytes32(question_id, "question_id")
        issues: list[IntegrityIssue] = []

        condition = self._resolve_condition(conn, qid, issues)
        if condition is None:
            return QuestionResolution(question_id=qid, status=QuestionStatus.UNSEEN, issues=issues)

        split = self._resolve_split(conn, condition, issues)
        collateral = split.collateral_token if split else self.config.collateral_by_oracle.get(condition.oracle)
        parent = split.parent_collection_id if split else ZERO_COLLECTION_ID

        assets: list[Asset] = []
        if collateral:
            try:
                positions = derive_positions(collateral, condition.condition_id, condition.outcome_slot_count, parent)
            except InvalidInput as e:
                issues.append(_issue_from_error(e, None, qid))
                positions = []
            assets = [
                Asset(
                    asset_id=p.asset_id,
                    question_id=qid,
                    condition_id=condition.condition_id,
                    slot_index=p.slot_index,
                    index_set=p.index_set,
                    outcome=self._label(condition.condition_id, p.slot_index),
                    collateral_token=collateral,
                    parent_collection_id=parent,
                )
                for p in positions
            ]
        if split is not None:
            self._check_split_mints(conn, condition, split, issues)
        mint = self._first_mint(conn, [a.asset_id for a in assets]) if assets else None

        # The question must precede any token referencing its condition
        cutoffs = [(r.block_number, r.log_index) for r in (split, mint) if r is not None]
        cutoff = min(cutoffs) if cutoffs else None
        prepared = find_events(conn, QUESTION_PREPARED, question_id=qid, contract_address=condition.oracle)
        eligible = [ev for ev in prepared if cutoff is None or ev.order_key < cutoff]
        if len(eligible) < len(prepared):
            log.warning("question_prepared_after_split", question_id=qid, ignored=len(prepared) - len(eligible))

        question = Question(
            question_id=qid,
            condition_id=condition.condition_id,
            oracle=condition.oracle,
            outcome_slot_count=condition.outcome_slot_count,
            market_type=MarketType.NEGRISK,
        )
        market = None
        if eligible:
            first = eligible[0]
            fields = self._question_fields(first, qid, issues)
            for dup in eligible[1:]:
                if self._question_fields(dup, qid) != fields:
                    log.warning("conflicting_question_data", question_id=qid, tx=dup.transaction_hash)
                    issues.append(
                        _issue(
                            ConflictingQuestionData.kind,
                            f"QuestionPrepared differs from first emission in {first.transaction_hash}",
                            dup,
                            question_id=qid,
                            condition_id=condition.condition_id,
                        )
                    )
            question = question.model_copy(update=fields)
            if question.market_id:
                market = self._resolve_market(conn, question.market_id, condition.oracle, qid, issues)

        if any(i.kind in FAULT_KINDS for i in issues):
            status = QuestionStatus.FAULTED
        elif eligible and assets:
            status = QuestionStatus.RESOLVED
        elif self.state(qid) == QuestionStatus.UNRESOLVABLE:
            status = QuestionStatus.UNRESOLVABLE
        else:
            status = QuestionStatus.PENDING

        resolution = QuestionResolution(
            question_id=qid,
            status=status,
            condition=condition,
            question=question,
            assets=assets,
            market=market,
            split=split,
            mint=mint,
            issues=issues,
        )
        resolution.set_status(status)
        return resolution

    @staticmethod
    def _question_fields(
        ev: ChainEvent, question_id: str, issues: list[IntegrityIssue] | None = None
    ) -> dict[str, Any]:
        return {
            "market_id": normalize_hex_key(ev.param("marketId")),
            "question_index": _parse_int(ev, "index", question_id, issues),
            "description": decode_description(ev.param("data")),
        }

    def resolve_guarded(self, question_id: str, conn: DuckDBPyConnection | None = None) -> QuestionResolution:
        """
        resolve() that never raises on bad event data. A failure comes back as a
        resolution with failed=True, the current status and an InvalidInput issue.
        """
        try:
            return self.resolve(question_id, conn=conn)
        except (IndexerError, TypeError, ValueError) as e:
            log.exception("question_resolve_failed", question_id=question_id)
            return QuestionResolution(
                question_id=question_id,
                status=self.state(question_id),
                issues=[_issue(InvalidInput.kind, f"resolution failed: {e}", None, question_id=question_id)],
                failed=True,
            )

    def resolve_many(self, question_ids: Iterable[str], workers: int = 1) -> list[QuestionResolution]:
        """Resolve questions, optionally on worker threads (one DuckDB cursor per task)."""
        qids = sorted({qid for qid in (_as_question_id(q) for q in question_ids) if qid})
        if workers <= 1 or len(qids) <= 1:
            out = []
            for qid in qids:
                with self.question_lock(qid):
                    out.append(self.resolve_guarded(qid))
            return out

        def _task(qid: str) -> QuestionResolution:
            cursor = self._conn.cursor()
            try:
                with self.question_lock(qid):
                    return self.resolve_guarded(qid, conn=cursor)
            finally:
                cursor.close()

        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(_task, qids))

    def promote_stale(self, head_block: int | None) -> list[QuestionResolution]:
        """Pending questions older than the timeout become unresolvable (reported, not fatal)."""
        timeout = self.config.pending_timeout_blocks
        if timeout <= 0 or head_block is None:
            return []
        out = []
        for qid, status in sorted(self._states.items()):
            if status != QuestionStatus.PENDING:
                continue
            anchor = self._anchor_blocks.get(qid)
            if anchor is None or head_block - anchor < timeout:
                continue
            with self.question_lock(qid):
                resolution = self.resolve_guarded(qid)
            if resolution.failed or resolution.status != QuestionStatus.PENDING:
                continue
            waited = head_block - anchor
            err = Unresolvable(f"pending for {waited} blocks (timeout {timeout})", question_id=qid)
            resolution.set_status(QuestionStatus.UNRESOLVABLE)
            resolution.issues.append(
                _issue(err.kind, str(err), None, question_id=qid, condition_id=resolution.condition.condition_id)
            )
            log.warning("question_unresolvable", question_id=qid, waited_blocks=waited)
            out.append(resolution)
        return out
