"""Shared fixtures: an in-process fake of the remote service and wired-up sync components."""
import asyncio
import json
from datetime import datetime, timezone
from itertools import count

import httpx
import pytest

from assessment_sync.schemas.assessment import AssessmentResponse, QuestionType
from assessment_sync.services.connection_monitor import ConnectionMonitor
from assessment_sync.services.metrics_reconciler import MetricsReconciler
from assessment_sync.services.offline_sync import SyncScheduler
from assessment_sync.services.queue_store import LocalQueueStore
from assessment_sync.services.remote_client import RemoteAssessmentClient
from assessment_sync.services.retry import RetryEngine

REMOTE_URL = "http://remote.test"


class FakeRemote:
    """
    Simulated remote assessment store, served through httpx.MockTransport.

    Modes: "ok", "timeout", "down" (connection refused), "500", "422",
    "html" (200 with a captive-portal page), "unhealthy" ({"ok": false}),
    "badgzip" (502 claiming gzip encoding over a plain body).
    """

    def __init__(self):
        self.health_mode = "ok"
        self.submit_mode = "ok"
        self.metrics_mode = "ok"
        self.metrics_put_mode = "ok"
        self.reject_ids = set()
        self.flaky_ids = {}  # local_id -> transient failures still to serve
        self.submissions = []
        self.submit_headers = []
        self.metrics = {}
        self.metric_puts = []
        self.hold = None  # asyncio.Event; submissions wait on it when set
        self.submission_started = asyncio.Event()
        self._ids = count(1)

    @property
    def submitted_ids(self):
        return [p["local_id"] for p in self.submissions]

    async def handle(self, request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0)
        path = request.url.path
        if path == "/health":
            return self._health(request)
        if path == "/assessments" and request.method == "POST":
            return await self._submit(request)
        if path.startswith("/metrics/"):
            return self._metrics(request, path.rsplit("/", 1)[-1])
        return httpx.Response(404, json={"detail": "Not found"})

    def _failure(self, mode: str, request: httpx.Request):
        if mode == "timeout":
            raise httpx.ConnectTimeout("timed out", request=request)
        if mode == "down":
            raise httpx.ConnectError("connection refused", request=request)
        if mode == "500":
            return httpx.Response(503, json={"detail": "Service unavailable"})
        if mode == "422":
            return httpx.Response(422, json={"detail": "Invalid assessment"})
        if mode == "html":
            return httpx.Response(200, text="<html><body>Sign in to Wi-Fi</body></html>")
        if mode == "badgzip":
            return httpx.Response(502, headers={"content-encoding": "gzip"}, content=b"<html>Bad gateway</html>")
        return None

    def _health(self, request):
        if self.health_mode == "unhealthy":
            return httpx.Response(200, json={"ok": False})
        return self._failure(self.health_mode, request) or httpx.Response(200, json={"ok": True})

    async def _submit(self, request):
        payload = json.loads(request.content)
        local_id = payload["local_id"]
        self.submission_started.set()
        if self.hold is not None:
            await self.hold.wait()
        if local_id in self.reject_ids:
            return httpx.Response(422, json={"detail": "Score out of range"})
        if self.flaky_ids.get(local_id, 0) > 0:
            self.flaky_ids[local_id] -= 1
            return httpx.Response(503, json={"detail": "Warming up"})
        failure = self._failure(self.submit_mode, request)
        if failure is not None:
            return failure
        self.submissions.append(payload)
        self.submit_headers.append(dict(request.headers))
        return httpx.Response(
            201,
            json={
                "id": f"remote-{next(self._ids)}",
                "received_at": datetime.now(timezone.utc).isoformat(),
            },
        )

    def _metrics(self, request, user_id):
        failure = self._failure(self.metrics_mode, request)
        if failure is not None:
            return failure
        if request.method == "GET":
            if user_id not in self.metrics:
                return httpx.Response(404, json={"detail": "No metrics"})
            return httpx.Response(200, json=self.metrics[user_id])
        if request.method == "PUT":
            failure = self._failure(self.metrics_put_mode, request)
            if failure is not None:
                return failure
            patch = json.loads(request.content)
            self.metric_puts.append((user_id, patch))
            self.metrics[user_id] = {**self.metrics.get(user_id, {}), **patch, "user_id": user_id}
            return httpx.Response(200, json=self.metrics[user_id])
        return httpx.Response(405)


async def _no_sleep(delay: float) -> None:
    return None


def make_responses(*scores):
    """Responses for questions 1..n with the given raw scores."""
    return [
        AssessmentResponse(question_id=i, question_type=QuestionType.STRESS, score=s)
        for i, s in enumerate(scores, start=1)
    ]


@pytest.fixture()
def remote():
    return FakeRemote()


@pytest.fixture()
def client(remote):
    return RemoteAssessmentClient(base_url=REMOTE_URL, transport=httpx.MockTransport(remote.handle))


@pytest.fixture()
def retry_engine():
    return RetryEngine(max_attempts=3, base_delay=0.5, sleep=_no_sleep)


@pytest.fixture()
def store():
    return LocalQueueStore(database_url="sqlite://")


@pytest.fixture()
def monitor(client, retry_engine):
    return ConnectionMonitor(client, retry_engine=retry_engine, check_interval=0, degraded_after=3)


@pytest.fixture()
def reconciler(client, retry_engine):
    return MetricsReconciler(client, retry_engine=retry_engine)


@pytest.fixture()
def scheduler(store, client, monitor, reconciler, retry_engine):
    return SyncScheduler(
        store=store,
        client=client,
        monitor=monitor,
        reconciler=reconciler,
        retry_engine=retry_engine,
        attempt_ceiling=3,
    )
