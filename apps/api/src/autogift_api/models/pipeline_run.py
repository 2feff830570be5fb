from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, Date, DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from autogift_api.db.base import Base


class PipelineRun(Base):
    """Persisted summary of a single pipeline job invocation."""

    __tablename__ = "pipeline_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    job = Column(String(64), nullable=False, index=True)
    triggered_by = Column(String(64), nullable=False)
    reference_date = Column(Date, nullable=False)
    simulated = Column(Boolean, nullable=False, server_default="0", default=False)
    status = Column(String(32), nullable=False, server_default="running")
    processed_count = Column(Integer, nullable=False, server_default="0", default=0)
    error_count = Column(Integer, nullable=False, server_default="0", default=0)
    summary = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
