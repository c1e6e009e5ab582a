"""SceneRecommendation model for per-version suggested scene edits."""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class SceneRecommendation(Base):
    """Suggested edit for one scene of one script version."""

    __tablename__ = "scene_recommendations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    script_version_id = Column(
        String,
        ForeignKey("script_versions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    scene_number = Column(Integer, nullable=False, index=True)
    priority = Column(String, nullable=False)  # critical, high, medium, low
    area = Column(String, nullable=False, default="general")
    current_text = Column(Text, nullable=False, default="")
    suggested_text = Column(Text, nullable=False)
    reasoning = Column(Text, nullable=False, default="")
    expected_impact = Column(String, nullable=False, default="")
    score_delta = Column(Integer, nullable=True)
    confidence = Column(Float, nullable=True)
    source_agent = Column(String, nullable=True)
    applied_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    script_version = relationship("ScriptVersion", back_populates="recommendations")
