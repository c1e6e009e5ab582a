"""Side-by-side comparison of two script versions of one project."""

from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.reanalysis_job import ReanalysisJob
from models.script_version import ScriptVersion
from scoring import build_version_metrics
from services.errors import NoCandidateVersionError, NoCurrentVersionError, ScriptVersionNotFoundError
from services.script_versions import (
    calculate_scene_diff,
    get_candidate_version,
    get_current_version,
    get_project,
    get_version_in_project,
)

AREAS = ("hook", "structure", "emotional", "cta")


def _metrics_for(version: ScriptVersion) -> Optional[Dict[str, Any]]:
    if isinstance(version.metrics, dict) and version.metrics:
        return version.metrics
    if isinstance(version.analysis_result, dict) and version.analysis_result:
        return build_version_metrics(version.analysis_result)
    return None


def _summarize(version: ScriptVersion, metrics: Optional[Dict[str, Any]], pending_review: str) -> Dict[str, Any]:
    metrics = metrics or {}
    overall = metrics.get("overallScore")
    if overall is None:
        overall = version.analysis_score
    return {
        "id": version.id,
        "versionNumber": version.version_number,
        "overall": overall,
        "breakdown": {area: metrics.get(f"{area}Score") for area in AREAS},
        "predicted": metrics.get("predicted"),
        "perScene": metrics.get("perScene") or [],
        "review": version.review or pending_review,
        "scenes": [
            {"sceneNumber": scene.get("sceneNumber"), "text": scene.get("text")}
            for scene in (version.scenes or [])
        ],
    }


def _difference(after: Any, before: Any) -> Optional[int]:
    if isinstance(after, (int, float)) and isinstance(before, (int, float)):
        return int(after) - int(before)
    return None


def _per_scene_delta(base: Dict[str, Any], target: Dict[str, Any]):
    before = {row.get("sceneNumber"): row.get("score") for row in base["perScene"]}
    rows = []
    for row in target["perScene"]:
        number = row.get("sceneNumber")
        rows.append(
            {
                "sceneNumber": number,
                "before": before.get(number),
                "after": row.get("score"),
                "delta": _difference(row.get("score"), before.get(number)),
            }
        )
    return rows


async def _analysis_status(db: AsyncSession, target: ScriptVersion, metrics: Optional[Dict[str, Any]]) -> str:
    if metrics is not None:
        return "done"
    result = await db.execute(
        select(ReanalysisJob.status)
        .where(ReanalysisJob.candidate_version_id == target.id)
        .order_by(ReanalysisJob.started_at.desc())
        .limit(1)
    )
    job_status = result.scalar_one_or_none()
    return "error" if job_status == "error" else "running"


async def _compare(db: AsyncSession, base: ScriptVersion, target: ScriptVersion) -> Dict[str, Any]:
    target_metrics = _metrics_for(target)
    status = await _analysis_status(db, target, target_metrics)
    base_summary = _summarize(base, _metrics_for(base), "Review not available")
    target_summary = _summarize(
        target,
        target_metrics,
        "Analysis in progress" if status == "running" else "Review not available",
    )

    if status == "done":
        delta = {"overall": _difference(target_summary["overall"], base_summary["overall"])}
        for area in AREAS:
            delta[area] = _difference(target_summary["breakdown"][area], base_summary["breakdown"][area])
        delta["perScene"] = _per_scene_delta(base_summary, target_summary)
    else:
        delta = {"overall": None, **{area: None for area in AREAS}, "perScene": []}

    return {
        "status": status,
        "base": base_summary,
        "candidate": target_summary,
        "delta": delta,
        "sceneChanges": calculate_scene_diff(base.scenes or [], target.scenes or []),
    }


async def compare_versions_service(
    project_id: str,
    base_version_id: str,
    target_version_id: str,
    db: AsyncSession,
) -> Dict[str, Any]:
    """Scores, per-area and per-scene deltas and scene text changes. Deltas are null until the target is analyzed."""
    await get_project(db, project_id)
    base = await get_version_in_project(db, project_id, base_version_id)
    target = await get_version_in_project(db, project_id, target_version_id)
    if base is None or target is None:
        raise ScriptVersionNotFoundError()
    return await _compare(db, base, target)


async def compare_latest_service(project_id: str, db: AsyncSession) -> Dict[str, Any]:
    await get_project(db, project_id)
    current = await get_current_version(db, project_id)
    if current is None:
        raise NoCurrentVersionError()
    candidate = await get_candidate_version(db, project_id)
    if candidate is None:
        raise NoCandidateVersionError()
    return await _compare(db, current, candidate)
