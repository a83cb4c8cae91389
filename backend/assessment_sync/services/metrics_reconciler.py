"""
User metrics reconciliation after an assessment reaches the remote store.
Prefers the remote aggregate as the source of truth; falls back to a local
incremental estimate, marked as such, when the metrics endpoint is unavailable.
"""
import logging
from typing import Dict, Optional

from ..core.exceptions import SyncError
from ..schemas.assessment import AssessmentRecord, MetricsSource, Trend, UserMetrics
from .remote_client import RemoteAssessmentClient
from .retry import RetryEngine

logger = logging.getLogger(__name__)


def _trend(previous_level: Optional[float], new_level: float) -> Trend:
    # Lower stress is an improvement
    if previous_level is None or new_level == previous_level:
        return Trend.STABLE
    return Trend.IMPROVING if new_level < previous_level else Trend.DECLINING


def apply_assessment(metrics: UserMetrics, record: AssessmentRecord) -> UserMetrics:
    """
    Fold one synced assessment into an aggregate.

    Applying the same record twice leaves the aggregate unchanged. Records older
    than the latest one only move first_check_in_date.
    """
    when = record.created_at
    last = metrics.last_assessment_date
    first = min(metrics.first_check_in_date or when, when)

    if last is not None and when <= last:
        if first == metrics.first_check_in_date:
            return metrics
        return metrics.model_copy(update={"first_check_in_date": first})

    if last is None:
        streak = 1
    else:
        gap_days = (when.date() - last.date()).days
        if gap_days == 0:
            streak = max(metrics.streak_days, 1)
        elif gap_days == 1:
            streak = metrics.streak_days + 1
        else:
            streak = 1

    return metrics.model_copy(update={
        "last_assessment_date": when,
        "stress_level": record.combined_score,
        "streak_days": streak,
        "first_check_in_date": first,
        "trend": _trend(metrics.stress_level, record.combined_score),
    })


class MetricsReconciler:
    """Owns UserMetrics. Called only after a record is SYNCED."""

    def __init__(self, client: RemoteAssessmentClient, retry_engine: Optional[RetryEngine] = None):
        self.client = client
        self.retry_engine = retry_engine or RetryEngine()
        self._latest: Dict[str, UserMetrics] = {}

    def get_metrics(self, user_id: str) -> Optional[UserMetrics]:
        """Most recent aggregate seen for the user, remote-confirmed or estimated."""
        return self._latest.get(user_id)

    async def reconcile(self, record: AssessmentRecord) -> UserMetrics:
        user_id = record.user_id
        try:
            existing = await self.retry_engine.run(
                lambda: self.client.get_metrics(user_id), label="Metrics fetch"
            )
        except SyncError as exc:
            logger.warning("Metrics fetch failed for user %s, estimating locally: %s", user_id, exc)
            return self._estimate_locally(record)

        base = existing or UserMetrics(user_id=user_id)
        updated = apply_assessment(base, record)
        if existing is not None and updated == existing:
            self._latest[user_id] = existing
            return existing

        try:
            await self.retry_engine.run(
                lambda: self.client.put_metrics(user_id, updated.to_patch()),
                label="Metrics update",
            )
        except SyncError as exc:
            logger.warning("Metrics update failed for user %s, estimating locally: %s", user_id, exc)
            return self._estimate_locally(record, base=updated)

        confirmed = updated.model_copy(update={"source": MetricsSource.REMOTE})
        self._latest[user_id] = confirmed
        logger.info("Metrics updated for user %s (streak=%d)", user_id, confirmed.streak_days)
        return confirmed

    def _estimate_locally(self, record: AssessmentRecord, base: Optional[UserMetrics] = None) -> UserMetrics:
        if base is None:
            base = self._latest.get(record.user_id) or UserMetrics(user_id=record.user_id)
            base = apply_assessment(base, record)
        estimate = base.model_copy(update={"source": MetricsSource.LOCAL_ESTIMATE})
        self._latest[record.user_id] = estimate
        return estimate
