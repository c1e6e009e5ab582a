"""Scatter-gather scoring: four analyzers in parallel, then one synthesizer."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from config import settings
from scoring import agents
from scoring.models import AgentScore, AnalysisResult, parse_analysis, verdict_for
from services.errors import ScoringPipelineError

logger = logging.getLogger(__name__)

ANALYZER_ORDER = ("hook", "structure", "emotional", "cta")
CONTENT_TYPES = {"news", "reel", "custom"}

ProgressCallback = Callable[[str, int], Awaitable[None]]

# Progress checkpoints; "saving" and completion belong to the job runner.
ANALYZER_PROGRESS_START = 10
ANALYZER_PROGRESS_STEP = 15
SYNTHESIS_PROGRESS = 75


def _normalize_content_type(value: Optional[str]) -> str:
    text = str(value or "custom").strip().lower()
    aliases = {"instagram_reel": "reel", "custom_script": "custom", "article": "news"}
    text = aliases.get(text, text)
    return text if text in CONTENT_TYPES else "custom"


async def _notify(on_progress: Optional[ProgressCallback], step: str, progress: int) -> None:
    if on_progress is None:
        return
    await on_progress(step, progress)


async def _run_analyzer(area: str, text: str, context: Dict[str, Any]) -> AgentScore:
    analyzer = agents.ANALYZERS[area]
    timeout = float(settings.SCORING_ANALYZER_TIMEOUT_SECONDS)
    try:
        result = await asyncio.wait_for(analyzer(text, context), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ScoringPipelineError(area, f"analyzer timed out after {timeout:g}s") from exc
    except ScoringPipelineError:
        raise
    except Exception as exc:
        raise ScoringPipelineError(area, str(exc) or exc.__class__.__name__) from exc
    if not isinstance(result, AgentScore):
        raise ScoringPipelineError(area, "analyzer returned an unexpected payload")
    return result


async def run_analyzers(
    text: str,
    context: Dict[str, Any],
    on_progress: Optional[ProgressCallback] = None,
) -> Dict[str, AgentScore]:
    """Run all analyzers concurrently; the first failure cancels the rest."""
    await _notify(on_progress, ANALYZER_ORDER[0], ANALYZER_PROGRESS_START)
    completed: List[str] = []

    async def tracked(area: str) -> AgentScore:
        result = await _run_analyzer(area, text, context)
        completed.append(area)
        pending = [name for name in ANALYZER_ORDER if name not in completed]
        step = pending[0] if pending else "synthesis"
        await _notify(on_progress, step, ANALYZER_PROGRESS_START + ANALYZER_PROGRESS_STEP * len(completed))
        return result

    tasks = [asyncio.ensure_future(tracked(area)) for area in ANALYZER_ORDER]
    try:
        results = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return dict(zip(ANALYZER_ORDER, results))


async def score_script(
    scenes: List[Dict[str, Any]],
    *,
    content_type: Optional[str] = None,
    full_script: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> AnalysisResult:
    """
    Score a script snapshot end to end.

    Either every analyzer and the synthesizer succeed, or the call raises
    ``ScoringPipelineError``; there is no partial result.
    """
    kind = _normalize_content_type(content_type)
    text = (full_script or "").strip() or "\n\n".join(str(s.get("text") or "") for s in scenes).strip()
    if not text:
        raise ValueError("Cannot score an empty script")
    context = {"content_type": kind, "scenes": scenes, "full_script": text}

    started = time.monotonic()
    results = await run_analyzers(text, context, on_progress)

    await _notify(on_progress, "synthesis", SYNTHESIS_PROGRESS)
    try:
        synthesis = await asyncio.wait_for(
            agents.synthesize(results, context),
            timeout=float(settings.SCORING_ANALYZER_TIMEOUT_SECONDS),
        )
    except asyncio.TimeoutError as exc:
        raise ScoringPipelineError("synthesis", "synthesizer timed out") from exc
    except ScoringPipelineError:
        raise
    except Exception as exc:
        raise ScoringPipelineError("synthesis", str(exc) or exc.__class__.__name__) from exc

    payload = {
        **synthesis,
        "contentType": kind,
        "hookScore": results["hook"].score,
        "structureScore": results["structure"].score,
        "emotionalScore": results["emotional"].score,
        "ctaScore": results["cta"].score,
        "breakdown": {area: result.breakdown for area, result in results.items()},
        "perScene": [row.model_dump(by_alias=True) for row in agents.per_scene_scores(context)],
    }
    overall = payload.get("overallScore")
    if isinstance(overall, (int, float)) and not isinstance(overall, bool):
        # The verdict always follows the score tiers.
        payload["verdict"] = verdict_for(int(round(overall)))
    try:
        analysis = parse_analysis(payload)
    except ValidationError as exc:
        raise ScoringPipelineError("synthesis", f"synthesizer output failed validation: {exc.error_count()} errors") from exc

    logger.info(
        "Scored %s script (%s scenes): overall=%s verdict=%s in %.2fs",
        kind,
        len(scenes),
        analysis.overall_score,
        analysis.verdict,
        time.monotonic() - started,
    )
    return analysis


def build_version_metrics(analysis: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a stored analysis into the metrics block shown in comparisons."""
    predicted = analysis.get("predictedMetrics") or {}
    breakdown = analysis.get("breakdown") or {}

    def area_score(area: str) -> Optional[int]:
        value = analysis.get(f"{area}Score")
        if value is None:
            value = (breakdown.get(area) or {}).get("score")
        return int(value) if isinstance(value, (int, float)) else None

    overall = analysis.get("overallScore")
    return {
        "overallScore": int(overall) if isinstance(overall, (int, float)) else None,
        "hookScore": area_score("hook"),
        "structureScore": area_score("structure"),
        "emotionalScore": area_score("emotional"),
        "ctaScore": area_score("cta"),
        "predicted": {
            "retention": predicted.get("estimatedRetention"),
            "saves": predicted.get("estimatedSaves"),
            "shares": predicted.get("estimatedShares"),
            "viralProbability": predicted.get("viralProbability"),
        },
        "perScene": list(analysis.get("perScene") or []),
    }


def build_review(analysis: Dict[str, Any]) -> Dict[str, Any]:
    """Short human-readable review stored next to the metrics."""
    return {
        "verdict": analysis.get("verdict"),
        "confidence": analysis.get("confidence"),
        "strengths": list(analysis.get("strengths") or []),
        "weaknesses": list(analysis.get("weaknesses") or []),
        "recommendationCount": len(analysis.get("recommendations") or []),
    }
