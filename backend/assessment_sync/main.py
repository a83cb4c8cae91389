"""
Assessment Sync - offline-first stress assessment service.
Local API the wellness UI talks to: scoring, durable offline queue, and
reconciliation with the remote assessment store.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .api import sync
from .core.config import settings
from .services.connection_monitor import ConnectionMonitor
from .services.metrics_reconciler import MetricsReconciler
from .services.offline_sync import SyncScheduler
from .services.queue_store import LocalQueueStore
from .services.remote_client import RemoteAssessmentClient
from .services.retry import RetryEngine

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def build_scheduler() -> SyncScheduler:
    """Wire the sync engine from settings."""
    client = RemoteAssessmentClient()
    retry_engine = RetryEngine()
    return SyncScheduler(
        store=LocalQueueStore(),
        client=client,
        monitor=ConnectionMonitor(client, retry_engine=retry_engine),
        reconciler=MetricsReconciler(client, retry_engine=retry_engine),
        retry_engine=retry_engine,
    )


def create_app(scheduler: Optional[SyncScheduler] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = scheduler or build_scheduler()
        app.state.scheduler = engine
        summary = await engine.start()
        logger.info("Sync engine started with %d queued assessment(s)", summary.remaining)
        engine.monitor.start()
        try:
            yield
        finally:
            await engine.monitor.stop()
            await engine.shutdown()
            await engine.client.aclose()

    app = FastAPI(
        title="Assessment Sync API",
        description=(
            "Offline-first stress assessment scoring and synchronization. "
            "Assessments are queued durably while offline and reconciled "
            "exactly once with the remote store."
        ),
        version=settings.VERSION,
        lifespan=lifespan,
    )

    app.include_router(sync.router, prefix="/api/v1")

    @app.get("/health")
    def health_check():
        return {"status": "healthy", "service": settings.APP_NAME, "version": settings.VERSION}

    return app


app = create_app()
