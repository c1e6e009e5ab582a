from scoring.models import AgentScore, AnalysisResult, parse_analysis, verdict_for
from scoring.pipeline import build_review, build_version_metrics, score_script

__all__ = [
    "AgentScore",
    "AnalysisResult",
    "build_review",
    "build_version_metrics",
    "parse_analysis",
    "score_script",
    "verdict_for",
]
