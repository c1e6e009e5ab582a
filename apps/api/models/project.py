"""Project model: owner of a script's version history."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Project(Base):
    """A short-form video project whose script is versioned."""

    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String, nullable=True)
    content_type = Column(String, nullable=False, default="custom")  # news, reel, custom
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    script_versions = relationship("ScriptVersion", back_populates="project", cascade="all, delete-orphan")
    reanalysis_jobs = relationship("ReanalysisJob", back_populates="project", cascade="all, delete-orphan")
