"""
Scoring result schemas.

Stored analyses and API payloads use camelCase keys; the models use snake_case
attributes with camelCase aliases.
"""

import re
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

_RANGE = re.compile(r"\d+(?:\.\d+)?\s*-\s*\d+(?:\.\d+)?")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AgentScore(CamelModel):
    """Output of one analyzer: a 0-100 score plus its structured breakdown."""
    area: str
    score: int = Field(ge=0, le=100)
    breakdown: Dict[str, Any] = Field(default_factory=dict)


class Recommendation(CamelModel):
    priority: Literal["critical", "high", "medium", "low"] = "medium"
    area: str = "general"
    current: str = ""
    suggested: str
    expected_impact: str = ""
    reasoning: str = ""
    scene_number: Optional[int] = None  # None when the advice is not scene-scoped


class MatchedPattern(CamelModel):
    pattern: str
    confidence: int = Field(default=50, ge=0, le=100)


class MissingPattern(CamelModel):
    pattern: str
    potential_boost: str = ""


class ViralPatterns(CamelModel):
    matched: List[MatchedPattern] = Field(default_factory=list)
    missing: List[MissingPattern] = Field(default_factory=list)


class PredictedMetrics(CamelModel):
    # Ranges such as "55-65%", never point estimates.
    estimated_retention: str
    estimated_saves: str
    estimated_shares: str
    viral_probability: Literal["low", "medium", "medium-high", "high"]

    @field_validator("estimated_retention", "estimated_saves", "estimated_shares")
    @classmethod
    def require_range(cls, value: str) -> str:
        if not _RANGE.search(value):
            raise ValueError(f"expected a low-high range, got {value!r}")
        return value


class SceneScore(CamelModel):
    scene_number: int
    score: int = Field(ge=0, le=100)


class _AnalysisBase(CamelModel):
    overall_score: int = Field(ge=0, le=100)
    verdict: Literal["viral", "strong", "moderate", "weak"]
    confidence: float = Field(ge=0.0, le=1.0)
    hook_score: int = Field(ge=0, le=100)
    structure_score: int = Field(ge=0, le=100)
    emotional_score: int = Field(ge=0, le=100)
    cta_score: int = Field(ge=0, le=100)
    breakdown: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    recommendations: List[Recommendation] = Field(default_factory=list)
    viral_patterns: ViralPatterns = Field(default_factory=ViralPatterns)
    predicted_metrics: PredictedMetrics
    per_scene: List[SceneScore] = Field(default_factory=list)
    backend: str = "heuristic"


class NewsAnalysis(_AnalysisBase):
    content_type: Literal["news"] = "news"


class ReelAnalysis(_AnalysisBase):
    content_type: Literal["reel"] = "reel"


class CustomAnalysis(_AnalysisBase):
    content_type: Literal["custom"] = "custom"


AnalysisResult = Annotated[
    Union[NewsAnalysis, ReelAnalysis, CustomAnalysis],
    Field(discriminator="content_type"),
]

analysis_adapter = TypeAdapter(AnalysisResult)


def parse_analysis(payload: Dict[str, Any]) -> Union[NewsAnalysis, ReelAnalysis, CustomAnalysis]:
    """Validate a stored or freshly synthesized analysis against its content type."""
    return analysis_adapter.validate_python(payload)


def verdict_for(score: int) -> str:
    if score >= 90:
        return "viral"
    if score >= 70:
        return "strong"
    if score >= 50:
        return "moderate"
    return "weak"
