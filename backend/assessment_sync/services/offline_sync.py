"""
Offline Mode & Sync Service.
Lets users complete assessments while disconnected: records are scored on the
client, queued durably, and drained to the remote store when connectivity returns.
"""
import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import FrozenSet, List, Optional, Sequence, Set

from ..core.config import settings
from ..core.exceptions import (
    AssessmentSyncError,
    PermanentRejectionError,
    SyncError,
    TransientNetworkError,
)
from ..schemas.assessment import (
    AssessmentRecord,
    AssessmentResponse,
    SubmissionResult,
    SubmissionStatus,
    SyncState,
    SyncSummary,
    utcnow,
)
from .connection_monitor import ConnectionMonitor, ConnectionState
from .metrics_reconciler import MetricsReconciler
from .queue_store import LocalQueueStore
from .remote_client import RemoteAssessmentClient
from .retry import RetryEngine
from .score_calculator import INVERTED_QUESTION_IDS, score_assessment

logger = logging.getLogger(__name__)


class DrainTrigger(str, Enum):
    APP_START = "app_start"
    RECONNECTED = "reconnected"
    MANUAL = "manual"


class TransmitOutcome(str, Enum):
    SYNCED = "synced"
    FAILED = "failed"
    FLAGGED = "flagged"
    SKIPPED = "skipped"


class SyncScheduler:
    """
    Decides between direct submission and local queueing, and drains the queue.

    Drains run serially, oldest first, and never overlap: a trigger that arrives
    while a drain is active is coalesced into a no-op.
    """

    def __init__(
        self,
        store: LocalQueueStore,
        client: RemoteAssessmentClient,
        monitor: ConnectionMonitor,
        reconciler: MetricsReconciler,
        retry_engine: Optional[RetryEngine] = None,
        attempt_ceiling: Optional[int] = None,
        inverted_ids: FrozenSet[int] = INVERTED_QUESTION_IDS,
    ):
        self.store = store
        self.client = client
        self.monitor = monitor
        self.reconciler = reconciler
        self.retry_engine = retry_engine or RetryEngine()
        self.attempt_ceiling = attempt_ceiling if attempt_ceiling is not None else settings.SYNC_ATTEMPT_CEILING
        self.inverted_ids = inverted_ids
        self._draining = False
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribe = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> SyncSummary:
        """Recover interrupted records, watch reachability, and drain if online."""
        self.store.reset_in_flight()
        reachable = await self.monitor.check_now()
        if self._unsubscribe is None:
            self._unsubscribe = self.monitor.on_change(self._on_connection_change)
        if reachable:
            return await self.drain(DrainTrigger.APP_START)
        return SyncSummary(remaining=self.store.count())

    async def shutdown(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit_assessment(
        self,
        user_id: str,
        responses: Sequence[AssessmentResponse],
        symptoms: Sequence[str] = (),
        triggers: Sequence[str] = (),
        notes: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> SubmissionResult:
        """
        Score a completed assessment and either submit it now or queue it.

        Raises EmptyAssessmentError for an empty response set,
        PermanentRejectionError when the remote store refuses the record, and
        LocalStorageError when the record cannot be queued.
        """
        score = score_assessment(responses, self.inverted_ids)
        record = AssessmentRecord(
            user_id=user_id,
            responses=list(responses),
            combined_score=score.combined_score,
            stress_band=score.band,
            symptoms=list(symptoms),
            triggers=list(triggers),
            notes=notes,
            created_at=created_at or utcnow(),
        )

        if not self.monitor.is_reachable():
            logger.info("Offline: queueing assessment %s without a network attempt", record.local_id)
            return self._save_locally(record)

        record = record.model_copy(update={"sync_state": SyncState.SYNCING})
        try:
            receipt = await self.retry_engine.run(
                lambda: self.client.submit_assessment(record), label="Assessment submission"
            )
        except PermanentRejectionError as exc:
            logger.error("Assessment %s rejected by remote store: %s", record.local_id, exc.detail)
            exc.record = record.model_copy(
                update={"sync_state": SyncState.FAILED, "last_error": exc.detail}
            )
            raise
        except TransientNetworkError as exc:
            record = record.model_copy(update={"attempt_count": 1, "last_error": str(exc)})
            return self._save_locally(record)

        synced = record.model_copy(update={"sync_state": SyncState.SYNCED, "remote_id": receipt.id})
        logger.info("Assessment %s synced as %s", record.local_id, receipt.id)
        metrics = await self.reconciler.reconcile(synced)
        return SubmissionResult(record=synced, status=SubmissionStatus.SYNCED, metrics=metrics)

    async def drain(self, trigger: DrainTrigger = DrainTrigger.MANUAL) -> SyncSummary:
        """Transmit queued records oldest first. One record failing never aborts the rest."""
        if self._draining:
            logger.debug("Drain (%s) coalesced into the active drain", trigger.value)
            return SyncSummary(remaining=self.store.count(), coalesced=True)

        self._draining = True
        summary = SyncSummary()
        try:
            queued = self.store.list()
            if queued:
                logger.info("Draining %d queued assessment(s) (%s)", len(queued), trigger.value)
            for record in queued:
                outcome = await self._transmit(record)
                if outcome == TransmitOutcome.SYNCED:
                    summary.synced += 1
                elif outcome == TransmitOutcome.FAILED:
                    summary.failed += 1
                elif outcome == TransmitOutcome.FLAGGED:
                    summary.flagged += 1
        finally:
            self._draining = False

        summary.remaining = self.store.count()
        if queued:
            logger.info(
                "Drain finished: %d synced, %d failed, %d flagged, %d remaining",
                summary.synced, summary.failed, summary.flagged, summary.remaining,
            )
        return summary

    async def force_sync_now(self) -> SyncSummary:
        """User-initiated "sync now": probe first, then drain if reachable."""
        if not await self.monitor.check_now():
            return SyncSummary(remaining=self.store.count())
        return await self.drain(DrainTrigger.MANUAL)

    def get_queued_count(self) -> int:
        return self.store.count()

    def get_queued_assessments(self) -> List[AssessmentRecord]:
        return self.store.list()

    def get_flagged_assessments(self) -> List[AssessmentRecord]:
        return [r for r in self.store.list() if r.needs_attention]

    def retry_flagged(self, local_id: str) -> Optional[AssessmentRecord]:
        """Clear the attention flag so the next drain tries the record again."""
        record = self.store.get(local_id)
        if record is None:
            return None
        record = record.model_copy(update={"needs_attention": False, "attempt_count": 0})
        self.store.update(record)
        return record

    def discard(self, local_id: str) -> bool:
        removed = self.store.remove(local_id)
        if removed:
            logger.info("Queued assessment %s discarded by user", local_id)
        return removed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _save_locally(self, record: AssessmentRecord) -> SubmissionResult:
        stored = self.store.enqueue(record)
        return SubmissionResult(record=stored, status=SubmissionStatus.SAVED_LOCALLY)

    async def _transmit(self, record: AssessmentRecord) -> TransmitOutcome:
        if record.needs_attention:
            return TransmitOutcome.FLAGGED

        # A concurrent path may have synced or discarded it since the listing
        current = self.store.get(record.local_id)
        if current is None:
            return TransmitOutcome.SKIPPED

        in_flight = current.model_copy(update={"sync_state": SyncState.SYNCING})
        self.store.update(in_flight)
        try:
            receipt = await self.retry_engine.run(
                lambda: self.client.submit_assessment(in_flight), label="Queued assessment submission"
            )
        except asyncio.CancelledError:
            self.store.update(current)
            raise
        except PermanentRejectionError as exc:
            logger.error("Queued assessment %s rejected by remote store: %s", record.local_id, exc.detail)
            self.store.update(current.model_copy(update={
                "attempt_count": current.attempt_count + 1,
                "needs_attention": True,
                "last_error": exc.detail or str(exc),
            }))
            return TransmitOutcome.FLAGGED
        except SyncError as exc:
            attempts = current.attempt_count + 1
            flagged = attempts >= self.attempt_ceiling
            self.store.update(current.model_copy(update={
                "attempt_count": attempts,
                "needs_attention": flagged,
                "last_error": str(exc),
            }))
            if flagged:
                logger.warning(
                    "Queued assessment %s failed %d times; flagged for attention", record.local_id, attempts
                )
                return TransmitOutcome.FLAGGED
            return TransmitOutcome.FAILED

        self.store.remove(record.local_id)
        synced = in_flight.model_copy(update={"sync_state": SyncState.SYNCED, "remote_id": receipt.id})
        logger.info("Queued assessment %s synced as %s", record.local_id, receipt.id)
        await self.reconciler.reconcile(synced)
        return TransmitOutcome.SYNCED

    async def _drain_in_background(self, trigger: DrainTrigger) -> None:
        try:
            await self.drain(trigger)
        except AssessmentSyncError:
            logger.exception("Background drain (%s) failed", trigger.value)

    def _on_connection_change(self, previous: ConnectionState, current: ConnectionState) -> None:
        if previous.reachable or not current.reachable:
            return
        task = asyncio.create_task(self._drain_in_background(DrainTrigger.RECONNECTED))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
