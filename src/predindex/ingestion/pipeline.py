"""Indexing orchestrator - event store append, question resolution, catalog update."""

from __future__ import annotations

import asyncio
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Iterable

import duckdb
import structlog

from predindex.catalog.builder import CatalogBuilder
from predindex.errors import InvalidInput
from predindex.models import ChainEvent, IntegrityIssue
from predindex.resolver.graph import MarketGraphResolver, QuestionResolution, ResolverConfig
from predindex.resolver.labeler import OutcomeLabeler, labeler_from_name
from predindex.storage.event_log import append_events, head_block, invalidate_from_block, invalidate_transaction

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

    from predindex.config import Settings

log = structlog.get_logger(__name__)


@dataclass
class BatchResult:
    """Outcome of one ingest / invalidate / reindex call."""

    events_received: int = 0
    events_changed: int = 0
    questions_applied: int = 0
    questions_remaining: int = 0
    cancelled: bool = False
    statuses: Counter = field(default_factory=Counter)


class Indexer:
    """Single-writer pipeline: append events, re-resolve affected questions, apply to the catalog."""

    def __init__(
        self,
        conn: DuckDBPyConnection,
        resolver_config: ResolverConfig | None = None,
        labeler: OutcomeLabeler | None = None,
        resolve_workers: int = 1,
    ):
        self._conn = conn
        self.resolver = MarketGraphResolver(conn, resolver_config, labeler)
        self.builder = CatalogBuilder(conn)
        self.resolve_workers = resolve_workers
        self._write_lock = threading.Lock()
        self._dirty: set[str] = set()
        self._reorg_dirty: set[str] = set()
        self._event_count = 0
        self._start_ts: float | None = None
        self.resolver.load_state()

    @classmethod
    def from_settings(cls, conn: DuckDBPyConnection, settings: Settings) -> Indexer:
        return cls(
            conn,
            resolver_config=ResolverConfig.from_settings(settings),
            labeler=labeler_from_name(settings.outcome_labeler),
            resolve_workers=settings.resolve_workers,
        )

    @property
    def pending_questions(self) -> set[str]:
        """Questions marked dirty but not yet applied (e.g. after a cancelled batch)."""
        return set(self._dirty)

    def ingest(self, events: Iterable[ChainEvent], cancel: threading.Event | None = None) -> BatchResult:
        """Append a batch and bring the catalog up to date. Cancellable between questions."""
        batch = list(events)
        if self._start_ts is None:
            self._start_ts = time.time()
        with self._write_lock:
            changed = append_events(self._conn, batch)
            self._event_count += len(batch)
            self._dirty |= self.resolver.questions_for_events(changed)
            result = self._process_dirty(cancel)
            result.events_received = len(batch)
            result.events_changed = len(changed)
            if not result.cancelled:
                self._promote_stale(result)
        log.info(
            "batch_ingested",
            received=result.events_received,
            changed=result.events_changed,
            applied=result.questions_applied,
            remaining=result.questions_remaining,
        )
        return result

    def invalidate_transaction(self, transaction_hash: str, cancel: threading.Event | None = None) -> BatchResult:
        """Retract a transaction that is no longer canonical."""
        with self._write_lock:
            removed = invalidate_transaction(self._conn, transaction_hash)
            return self._after_invalidation(removed, cancel, tx=transaction_hash)

    def invalidate_from_block(self, block_number: int, cancel: threading.Event | None = None) -> BatchResult:
        """Roll back every event at or above block_number."""
        with self._write_lock:
            removed = invalidate_from_block(self._conn, block_number)
            return self._after_invalidation(removed, cancel, from_block=block_number)

    def reindex(self, allow_retraction: bool = False, cancel: threading.Event | None = None) -> BatchResult:
        """Recompute every known question from the event store."""
        with self._write_lock:
            qids = set(self.resolver.all_question_ids())
            self._dirty |= qids
            if allow_retraction:
                self._reorg_dirty |= qids
            return self._process_dirty(cancel)

    async def run(
        self,
        batches: AsyncIterator[list[ChainEvent]],
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Ingest batches from an async source until it is exhausted or stop_event is set."""
        stop = stop_event or asyncio.Event()
        self._start_ts = time.time()
        async for batch in batches:
            if stop.is_set():
                break
            self.ingest(batch)
            await asyncio.sleep(0)
        log.info("ingestion_stopped", total_events=self._event_count, pending=len(self._dirty))

    def get_status(self) -> dict:
        """Return current status: event_count, elapsed_sec, events_per_sec, questions by status."""
        elapsed = (time.time() - self._start_ts) if self._start_ts else 0
        return {
            "event_count": self._event_count,
            "elapsed_sec": round(elapsed, 1),
            "events_per_sec": round(self._event_count / elapsed, 2) if elapsed > 0 else 0,
            "pending_dirty": len(self._dirty),
            "questions": dict(Counter(s.value for s in self.resolver.states().values())),
        }

    # -- internals -------------------------------------------------------------

    def _after_invalidation(self, removed: list[ChainEvent], cancel: threading.Event | None, **ctx) -> BatchResult:
        qids = self.resolver.questions_for_events(removed)
        self._dirty |= qids
        self._reorg_dirty |= qids
        log.info("events_invalidated", removed=len(removed), questions=len(qids), **ctx)
        result = self._process_dirty(cancel)
        result.events_changed = len(removed)
        return result

    def _process_dirty(self, cancel: threading.Event | None) -> BatchResult:
        result = BatchResult()
        resolutions = self.resolver.resolve_many(self._dirty, workers=self.resolve_workers)
        resolved_ids = {r.question_id for r in resolutions}
        # ids that are not valid bytes32 cannot resolve; drop them
        self._dirty &= resolved_ids
        self._reorg_dirty &= resolved_ids
        for resolution in resolutions:
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                log.info("batch_cancelled", remaining=len(self._dirty))
                break
            self._apply(resolution, result)
        result.questions_remaining = len(self._dirty)
        return result

    def _apply(self, resolution: QuestionResolution, result: BatchResult) -> None:
        qid = resolution.question_id
        reorg = qid in self._reorg_dirty
        with self.resolver.question_lock(qid):
            if resolution.failed:
                # Catalog keeps its last good state for this question
                self.builder.record_issues(resolution.issues)
                result.statuses["failed"] += 1
            elif self.resolver.accepts(resolution, reorg=reorg):
                try:
                    self.builder.apply(resolution, reorg=reorg)
                except duckdb.Error as e:
                    log.exception("question_apply_failed", question_id=qid)
                    self.builder.record_issues(
                        [IntegrityIssue(kind=InvalidInput.kind, question_id=qid, detail=f"catalog write failed: {e}")]
                    )
                    result.statuses["failed"] += 1
                else:
                    self.resolver.commit(resolution)
                    result.questions_applied += 1
                    result.statuses[resolution.status.value] += 1
        self._dirty.discard(qid)
        self._reorg_dirty.discard(qid)

    def _promote_stale(self, result: BatchResult) -> None:
        for resolution in self.resolver.promote_stale(head_block(self._conn)):
            self._apply(resolution, result)
