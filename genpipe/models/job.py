"""
Job Model
Database model for generation jobs.
"""

from datetime import datetime, timezone
from sqlalchemy import Column, String, Text, DateTime, JSON

from genpipe.core.database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class JobRecord(Base):
    """Generation job row; the JSON columns hold the pydantic sub-models."""

    __tablename__ = "jobs"

    id = Column(String, primary_key=True)  # job_xxxx format
    type = Column(String, nullable=False, index=True)

    # Request
    prompt = Column(Text, nullable=False)
    options = Column(JSON, default={})

    # Status: queued, running, upscaling, encoding, completed, failed
    status = Column(String, default="queued", index=True)
    progress = Column(JSON, default={})
    error_message = Column(Text, nullable=True)

    # Result
    outputs = Column(JSON, default=[])
    manifest = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    purged_at = Column(DateTime(timezone=True), nullable=True)
