"""
Reachability tracking for the remote service.

A probe only counts as reachable when the transport succeeds AND the health
payload has the expected shape, so a captive portal answering 200 with an HTML
page is reported as unreachable. Repeated failures switch the monitor into a
visible degraded mode; reachability itself is never faked.
"""
import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, List, Optional

from ..core.config import settings
from ..core.exceptions import SyncError
from .remote_client import RemoteAssessmentClient
from .retry import RetryEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionState:
    reachable: bool = False
    last_checked_at: Optional[datetime] = None
    consecutive_failures: int = 0
    degraded: bool = False  # Proceeding in offline mode after repeated failed probes


ConnectionListener = Callable[[ConnectionState, ConnectionState], None]


class ConnectionMonitor:
    """Single writer of ConnectionState; any number of readers and listeners."""

    def __init__(
        self,
        client: RemoteAssessmentClient,
        retry_engine: Optional[RetryEngine] = None,
        check_interval: Optional[float] = None,
        degraded_after: Optional[int] = None,
        probe_attempts: Optional[int] = None,
    ):
        self.client = client
        self.retry_engine = retry_engine or RetryEngine()
        self.check_interval = check_interval if check_interval is not None else settings.CONNECTION_CHECK_INTERVAL
        self.degraded_after = degraded_after if degraded_after is not None else settings.DEGRADED_AFTER_FAILURES
        self.probe_attempts = probe_attempts if probe_attempts is not None else settings.PROBE_MAX_ATTEMPTS
        self._state = ConnectionState()
        self._listeners: List[ConnectionListener] = []
        self._inflight: Optional[asyncio.Task] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_reachable(self) -> bool:
        """Last known reachability. Never blocks."""
        return self._state.reachable

    def on_change(self, callback: ConnectionListener) -> Callable[[], None]:
        """Subscribe to reachability transitions. Returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def check_now(self) -> bool:
        """
        Actively probe the remote health endpoint and record the result.

        Callers arriving while a probe is in flight await that probe instead of
        starting another one.
        """
        if self._inflight is None:
            self._inflight = asyncio.create_task(self._check())
        return await asyncio.shield(self._inflight)

    def start(self) -> None:
        """Begin periodic probing in the background."""
        if self.check_interval <= 0 or self._task is not None:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        if self._inflight is not None:
            self._inflight.cancel()
            try:
                await self._inflight
            except asyncio.CancelledError:
                pass
            self._inflight = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            await self.check_now()
            await asyncio.sleep(self.check_interval)

    async def _check(self) -> bool:
        try:
            reachable = await self._probe()
            self._record(reachable)
            return reachable
        finally:
            self._inflight = None

    async def _probe(self) -> bool:
        if not self.client.configured:
            return False
        try:
            payload = await self.retry_engine.run(
                self.client.health,
                max_attempts=self.probe_attempts,
                label="Health probe",
            )
        except SyncError as exc:
            logger.info("Remote service unreachable: %s", exc)
            return False
        if not payload.ok:
            logger.info("Remote service reported itself unhealthy")
        return payload.ok

    def _record(self, reachable: bool) -> None:
        previous = self._state
        failures = 0 if reachable else previous.consecutive_failures + 1
        degraded = not reachable and failures >= self.degraded_after
        self._state = replace(
            previous,
            reachable=reachable,
            last_checked_at=datetime.now(timezone.utc),
            consecutive_failures=failures,
            degraded=degraded,
        )

        if degraded and not previous.degraded:
            logger.warning(
                "Remote service unreachable after %d probes; proceeding in offline mode", failures
            )
        if previous.reachable != reachable:
            logger.info(
                "Remote service %s", "reachable" if reachable else "unreachable"
            )
            self._notify(previous, self._state)

    def _notify(self, previous: ConnectionState, current: ConnectionState) -> None:
        for listener in list(self._listeners):
            try:
                listener(previous, current)
            except Exception:
                logger.exception("Connection listener failed")
