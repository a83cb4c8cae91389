"""
Typed records for the assessment lifecycle.

Everything that crosses a boundary (local queue, remote service, UI surface)
is validated once here instead of being re-checked throughout the engine.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def generate_local_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class QuestionType(str, Enum):
    STRESS = "stress"
    ANXIETY = "anxiety"
    PHYSICAL = "physical"
    COGNITIVE = "cognitive"
    SOCIAL = "social"
    MOOD = "mood"


class StressBand(str, Enum):
    LOW = "Low"
    MODERATE = "Moderate"
    HIGH = "High"


class SyncState(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"  # transient outcome of an attempt; never stored


class Trend(str, Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


class MetricsSource(str, Enum):
    REMOTE = "remote"
    LOCAL_ESTIMATE = "local_estimate"


class AssessmentResponse(BaseModel):
    """One answered question. Immutable once recorded."""
    model_config = ConfigDict(frozen=True)

    question_id: int
    question_type: QuestionType
    score: float = Field(ge=0, le=10)


class AssessmentRecord(BaseModel):
    """The unit of work queued locally and transmitted to the remote store."""

    local_id: str = Field(default_factory=generate_local_id)
    user_id: str
    responses: List[AssessmentResponse] = Field(min_length=1)
    combined_score: float = Field(ge=0, le=10)
    stress_band: StressBand
    symptoms: List[str] = Field(default_factory=list)
    triggers: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    sync_state: SyncState = SyncState.PENDING
    attempt_count: int = Field(default=0, ge=0)
    needs_attention: bool = False
    last_error: Optional[str] = None
    remote_id: Optional[str] = None

    @field_validator("symptoms", "triggers")
    @classmethod
    def _dedupe_tags(cls, tags: List[str]) -> List[str]:
        seen = []
        for tag in tags:
            tag = tag.strip()
            if tag and tag not in seen:
                seen.append(tag)
        return seen

    @field_validator("created_at")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    def to_remote_payload(self) -> dict:
        """Fields the remote assessment store accepts; local bookkeeping stays local."""
        return self.model_dump(
            mode="json",
            include={
                "local_id", "user_id", "responses", "combined_score", "stress_band",
                "symptoms", "triggers", "notes", "created_at",
            },
        )


class RemoteReceipt(BaseModel):
    id: str
    received_at: datetime


class HealthPayload(BaseModel):
    ok: bool = Field(strict=True)


class UserMetrics(BaseModel):
    """Per-user aggregate. Only the MetricsReconciler mutates it."""

    user_id: str
    last_assessment_date: Optional[datetime] = None
    stress_level: Optional[float] = Field(default=None, ge=0, le=10)
    streak_days: int = Field(default=0, ge=0)
    first_check_in_date: Optional[datetime] = None
    trend: Trend = Trend.STABLE
    source: MetricsSource = MetricsSource.REMOTE

    @field_validator("last_assessment_date", "first_check_in_date")
    @classmethod
    def _ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    def to_patch(self) -> dict:
        return self.model_dump(mode="json", exclude={"user_id", "source"})


class SubmissionStatus(str, Enum):
    SYNCED = "synced"
    SAVED_LOCALLY = "saved_locally"


class SubmissionResult(BaseModel):
    record: AssessmentRecord
    status: SubmissionStatus
    metrics: Optional[UserMetrics] = None

    @property
    def message(self) -> str:
        if self.status == SubmissionStatus.SYNCED:
            return "Assessment saved."
        return "Saved locally, will sync later."


class SyncSummary(BaseModel):
    synced: int = 0
    remaining: int = 0
    failed: int = 0
    flagged: int = 0
    coalesced: bool = False
