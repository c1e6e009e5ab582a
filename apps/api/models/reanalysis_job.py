"""Reanalysis job model."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, UniqueConstraint, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class ReanalysisJob(Base):
    """Background scoring run bound to one candidate script version."""

    __tablename__ = "reanalysis_jobs"
    __table_args__ = (
        UniqueConstraint("project_id", "idempotency_key", name="uq_reanalysis_jobs_idempotency"),
        Index(
            "uq_reanalysis_jobs_active",
            "project_id",
            unique=True,
            sqlite_where=text("status IN ('queued', 'running')"),
            postgresql_where=text("status IN ('queued', 'running')"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    idempotency_key = Column(String, nullable=True)
    status = Column(String, nullable=False, default="queued", index=True)  # queued, running, done, error
    step = Column(String, nullable=True)  # hook, structure, emotional, cta, synthesis, saving
    progress = Column(Integer, nullable=False, default=0)
    error_message = Column(String, nullable=True)
    can_retry = Column(Boolean, nullable=False, default=True)
    candidate_version_id = Column(String, ForeignKey("script_versions.id", ondelete="SET NULL"), nullable=True)
    base_version_id = Column(String, ForeignKey("script_versions.id", ondelete="SET NULL"), nullable=True)
    request_json = Column(JSON, nullable=True)
    queue_job_id = Column(String, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    project = relationship("Project", back_populates="reanalysis_jobs")
