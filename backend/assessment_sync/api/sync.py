"""Assessment submission and offline-queue surface consumed by the UI."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from ..core.exceptions import EmptyAssessmentError, LocalStorageError, PermanentRejectionError
from ..schemas.assessment import (
    AssessmentRecord,
    AssessmentResponse,
    StressBand,
    SubmissionStatus,
    UserMetrics,
)
from ..services.offline_sync import SyncScheduler

router = APIRouter(tags=["sync"])


def get_scheduler(request: Request) -> SyncScheduler:
    return request.app.state.scheduler


class AssessmentCreate(BaseModel):
    user_id: str
    responses: List[AssessmentResponse]
    symptoms: List[str] = Field(default_factory=list)
    triggers: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class AssessmentSubmitted(BaseModel):
    local_id: str
    status: SubmissionStatus
    message: str
    combined_score: float
    stress_band: StressBand
    metrics: Optional[UserMetrics] = None


class QueueCount(BaseModel):
    count: int


class SyncNowResult(BaseModel):
    synced: int
    remaining: int


class ConnectionStatus(BaseModel):
    reachable: bool
    degraded: bool
    last_checked_at: Optional[datetime]


@router.post("/assessments", response_model=AssessmentSubmitted, status_code=status.HTTP_201_CREATED)
async def submit_assessment(
    assessment_in: AssessmentCreate,
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    """Score and submit a completed assessment, queueing it locally when offline."""
    try:
        result = await scheduler.submit_assessment(
            user_id=assessment_in.user_id,
            responses=assessment_in.responses,
            symptoms=assessment_in.symptoms,
            triggers=assessment_in.triggers,
            notes=assessment_in.notes,
            created_at=assessment_in.created_at,
        )
    except EmptyAssessmentError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except PermanentRejectionError as exc:
        raise HTTPException(
            status_code=422,
            detail=f"This assessment could not be saved: {exc.detail or exc}",
        )
    except LocalStorageError as exc:
        raise HTTPException(status_code=507, detail=f"Assessment could not be stored locally: {exc}")

    return AssessmentSubmitted(
        local_id=result.record.local_id,
        status=result.status,
        message=result.message,
        combined_score=result.record.combined_score,
        stress_band=result.record.stress_band,
        metrics=result.metrics,
    )


@router.get("/sync/queue", response_model=List[AssessmentRecord])
def list_queue(scheduler: SyncScheduler = Depends(get_scheduler)):
    """Assessments saved locally and awaiting sync, oldest first."""
    return scheduler.get_queued_assessments()


@router.get("/sync/queue/count", response_model=QueueCount)
def queue_count(scheduler: SyncScheduler = Depends(get_scheduler)):
    return QueueCount(count=scheduler.get_queued_count())


@router.get("/sync/flagged", response_model=List[AssessmentRecord])
def list_flagged(scheduler: SyncScheduler = Depends(get_scheduler)):
    """Queued assessments that need user attention before another attempt."""
    return scheduler.get_flagged_assessments()


@router.post("/sync/now", response_model=SyncNowResult)
async def sync_now(scheduler: SyncScheduler = Depends(get_scheduler)):
    summary = await scheduler.force_sync_now()
    return SyncNowResult(synced=summary.synced, remaining=summary.remaining)


@router.post("/sync/queue/{local_id}/retry", response_model=AssessmentRecord)
def retry_flagged(local_id: str, scheduler: SyncScheduler = Depends(get_scheduler)):
    record = scheduler.retry_flagged(local_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Queued assessment not found")
    return record


@router.delete("/sync/queue/{local_id}", status_code=status.HTTP_204_NO_CONTENT)
def discard_queued(local_id: str, scheduler: SyncScheduler = Depends(get_scheduler)):
    if not scheduler.discard(local_id):
        raise HTTPException(status_code=404, detail="Queued assessment not found")


@router.get("/sync/connection", response_model=ConnectionStatus)
def connection_status(scheduler: SyncScheduler = Depends(get_scheduler)):
    state = scheduler.monitor.state
    return ConnectionStatus(
        reachable=state.reachable,
        degraded=state.degraded,
        last_checked_at=state.last_checked_at,
    )
