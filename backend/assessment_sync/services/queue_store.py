"""
Durable local queue for assessments awaiting transmission.

Backed by SQLAlchemy so the queue survives reloads and restarts. Each store
instance owns its engine; sessions and tests get isolated queues by building
their own instance instead of sharing module state.
"""
import logging
from datetime import timezone
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.config import settings
from ..core.exceptions import LocalStorageError
from ..models.base import Base, create_queue_engine
from ..models.queued_assessment import QueuedAssessment
from ..schemas.assessment import AssessmentRecord, SyncState

logger = logging.getLogger(__name__)


class LocalQueueStore:
    """Append/list/remove of AssessmentRecords keyed by local_id."""

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        self.engine = engine or create_queue_engine(database_url or settings.QUEUE_DATABASE_URL)
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as exc:
            raise LocalStorageError(f"Local queue could not be initialised: {exc}") from exc
        self._count = self._query_count()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enqueue(self, record: AssessmentRecord) -> AssessmentRecord:
        """Insert or overwrite by local_id. Never creates a duplicate row."""
        stored = record.model_copy(update={"sync_state": SyncState.PENDING})
        try:
            payload = stored.model_dump(mode="json")
        except (TypeError, ValueError) as exc:
            raise LocalStorageError(f"Assessment {record.local_id} is not serializable: {exc}") from exc

        with self._session() as db:
            row = db.get(QueuedAssessment, stored.local_id)
            is_new = row is None
            if is_new:
                row = QueuedAssessment(local_id=stored.local_id)
                db.add(row)
            self._apply(row, stored, payload)
            db.commit()

        if is_new:
            self._count += 1
        logger.debug("Queued assessment %s (new=%s)", stored.local_id, is_new)
        return stored

    def update(self, record: AssessmentRecord) -> None:
        """Persist bookkeeping changes for a record still in the queue; no-op if it is gone."""
        payload = record.model_dump(mode="json")
        with self._session() as db:
            row = db.get(QueuedAssessment, record.local_id)
            if row is None:
                return
            self._apply(row, record, payload)
            db.commit()

    def list(self) -> List[AssessmentRecord]:
        """All queued records, oldest created_at first."""
        with self._session() as db:
            rows = (
                db.query(QueuedAssessment)
                .order_by(QueuedAssessment.assessment_created_at, QueuedAssessment.local_id)
                .all()
            )
            records = [self._to_record(row) for row in rows]
        self._count = len(records)
        return records

    def get(self, local_id: str) -> Optional[AssessmentRecord]:
        with self._session() as db:
            row = db.get(QueuedAssessment, local_id)
            return self._to_record(row) if row is not None else None

    def remove(self, local_id: str) -> bool:
        """Delete one record. Returns False (and does nothing) if it is absent."""
        with self._session() as db:
            row = db.get(QueuedAssessment, local_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
        self._count = max(0, self._count - 1)
        return True

    def count(self) -> int:
        """Cached queue size for UI badges."""
        return self._count

    def reset_in_flight(self) -> int:
        """Return records left SYNCING by an interrupted process to PENDING."""
        with self._session() as db:
            rows = db.query(QueuedAssessment).filter(
                QueuedAssessment.sync_state == SyncState.SYNCING.value
            ).all()
            for row in rows:
                row.sync_state = SyncState.PENDING.value
                row.payload = {**row.payload, "sync_state": SyncState.PENDING.value}
            db.commit()
        if rows:
            logger.info("Reset %d interrupted assessment(s) to pending", len(rows))
        return len(rows)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _session(self) -> "_GuardedSession":
        return _GuardedSession(self._session_factory)

    def _query_count(self) -> int:
        with self._session() as db:
            return db.query(QueuedAssessment).count()

    @staticmethod
    def _apply(row: QueuedAssessment, record: AssessmentRecord, payload: dict) -> None:
        row.user_id = record.user_id
        row.assessment_created_at = record.created_at.astimezone(timezone.utc).replace(tzinfo=None)
        row.payload = payload
        row.sync_state = record.sync_state.value
        row.attempt_count = record.attempt_count
        row.needs_attention = record.needs_attention
        row.last_error = record.last_error

    @staticmethod
    def _to_record(row: QueuedAssessment) -> AssessmentRecord:
        try:
            return AssessmentRecord.model_validate(row.payload)
        except ValidationError as exc:
            raise LocalStorageError(f"Queued assessment {row.local_id} is corrupt: {exc}") from exc


class _GuardedSession:
    """Session context that turns SQLAlchemy failures into LocalStorageError."""

    def __init__(self, factory: sessionmaker):
        self._factory = factory
        self._db: Optional[Session] = None

    def __enter__(self) -> Session:
        self._db = self._factory()
        return self._db

    def __exit__(self, exc_type, exc, tb):
        try:
            if exc_type is not None:
                self._db.rollback()
        finally:
            self._db.close()
        if exc_type is not None and issubclass(exc_type, SQLAlchemyError):
            logger.error("Local queue storage failure: %s", exc)
            raise LocalStorageError(f"Local queue storage failure: {exc}") from exc
        return False
