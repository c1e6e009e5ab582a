"""ScriptVersion model: immutable script snapshots with current/candidate slots."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class ScriptVersion(Base):
    """Full scene snapshot of a project's script at one point in its history."""

    __tablename__ = "script_versions"
    __table_args__ = (
        UniqueConstraint("project_id", "version_number", name="uq_script_versions_project_number"),
        Index(
            "uq_script_versions_current",
            "project_id",
            unique=True,
            sqlite_where=text("is_current = 1"),
            postgresql_where=text("is_current = true"),
        ),
        Index(
            "uq_script_versions_candidate",
            "project_id",
            unique=True,
            sqlite_where=text("is_candidate = 1"),
            postgresql_where=text("is_candidate = true"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    version_number = Column(Integer, nullable=False)
    created_by = Column(String, nullable=False)  # human, ai
    scenes = Column(JSON, nullable=False)
    full_script = Column(Text, nullable=False, default="")
    change_summary = Column(JSON, nullable=True)
    provenance = Column(JSON, nullable=True)
    diff = Column(JSON, nullable=True)
    analysis_result = Column(JSON, nullable=True)
    analysis_score = Column(Integer, nullable=True)
    metrics = Column(JSON, nullable=True)
    review = Column(JSON, nullable=True)
    is_current = Column(Boolean, nullable=False, default=False)
    is_candidate = Column(Boolean, nullable=False, default=False)
    parent_version_id = Column(String, ForeignKey("script_versions.id"), nullable=True)
    base_version_id = Column(String, ForeignKey("script_versions.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    project = relationship("Project", back_populates="script_versions")
    recommendations = relationship(
        "SceneRecommendation",
        back_populates="script_version",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
