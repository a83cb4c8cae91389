from sqlalchemy import Column, String, Text, Boolean, Integer, DateTime, JSON
from .base import Base, TimestampMixin


class QueuedAssessment(Base, TimestampMixin):
    """An assessment waiting for remote acceptance. Deleted once the remote store confirms it."""
    __tablename__ = "queued_assessments"

    local_id = Column(String(36), primary_key=True)
    user_id = Column(String(100), nullable=False, index=True)

    # Client completion time (naive UTC); authoritative for drain order
    assessment_created_at = Column(DateTime, nullable=False, index=True)

    # Full AssessmentRecord as JSON; the columns below mirror its sync bookkeeping
    payload = Column(JSON, nullable=False)

    sync_state = Column(String(20), nullable=False, default="pending")
    attempt_count = Column(Integer, nullable=False, default=0)
    needs_attention = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text, nullable=True)
