"""Recommendation reconciler: turns accepted suggestions into the next script version."""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services.errors import (
    NoCurrentVersionError,
    RecommendationAlreadyAppliedError,
    RecommendationNotFoundError,
    SceneNotFoundError,
)
from services.recommendations import (
    PRIORITY_RANK,
    extract_score_delta,
    get_recommendation,
    list_for_version,
    mark_applied,
    normalize_priority,
    serialize_recommendation,
)
from services.script_versions import (
    commit_or_conflict,
    create_version,
    get_current_version,
    get_project,
    serialize_version,
)

logger = logging.getLogger(__name__)

ELIGIBLE_PRIORITIES = {"high", "medium"}


def _threshold(value: Optional[int]) -> int:
    return int(settings.RECOMMENDATION_APPLY_THRESHOLD if value is None else value)


def is_fresh(recommendation: Dict[str, Any]) -> bool:
    """Fresh suggestions come straight from an analysis and carry negative integer ids."""
    rec_id = recommendation.get("id")
    return isinstance(rec_id, int) and not isinstance(rec_id, bool) and rec_id < 0


def score_delta_of(recommendation: Dict[str, Any]) -> int:
    delta = recommendation.get("scoreDelta")
    if isinstance(delta, (int, float)) and not isinstance(delta, bool):
        return int(delta)
    parsed = extract_score_delta(recommendation.get("expectedImpact"))
    return parsed if parsed is not None else 0


def scene_number_of(recommendation: Dict[str, Any]) -> Optional[int]:
    raw = recommendation.get("sceneNumber", recommendation.get("sceneId"))
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def is_eligible(recommendation: Dict[str, Any], threshold: Optional[int] = None) -> bool:
    priority = normalize_priority(recommendation.get("priority"))
    return priority in ELIGIBLE_PRIORITIES and score_delta_of(recommendation) >= _threshold(threshold)


def rank_key(recommendation: Dict[str, Any]) -> Tuple[int, int, float, int]:
    """Priority, then score delta, then confidence (all descending), then scene number."""
    priority = normalize_priority(recommendation.get("priority"))
    confidence = recommendation.get("confidence")
    return (
        -PRIORITY_RANK[priority],
        -score_delta_of(recommendation),
        -float(confidence) if isinstance(confidence, (int, float)) else 0.0,
        scene_number_of(recommendation) or 0,
    )


def partition_recommendations(
    recommendations: Sequence[Dict[str, Any]],
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    fresh = [rec for rec in recommendations if is_fresh(rec)]
    persisted = [rec for rec in recommendations if not is_fresh(rec)]
    return fresh, persisted


def select_one_per_scene(recommendations: Sequence[Dict[str, Any]]) -> Dict[int, Dict[str, Any]]:
    """Top-ranked recommendation for each scene; the rest are left outstanding."""
    chosen: Dict[int, Dict[str, Any]] = {}
    for rec in sorted(recommendations, key=rank_key):
        number = scene_number_of(rec)
        if number is None or number in chosen:
            continue
        chosen[number] = rec
    return chosen


def _suggested_text(recommendation: Dict[str, Any]) -> str:
    return str(recommendation.get("suggestedText") or recommendation.get("suggested") or "").strip()


def fold_fresh_into_scenes(
    scenes: Sequence[Dict[str, Any]],
    fresh: Sequence[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Apply fresh suggestions to an in-memory copy of the scenes."""
    by_scene = select_one_per_scene(fresh)
    folded: List[Dict[str, Any]] = []
    for idx, scene in enumerate(scenes):
        updated = copy.deepcopy(scene)
        number = int(updated.get("sceneNumber") or idx + 1)
        updated["sceneNumber"] = number
        rec = by_scene.get(number)
        text = _suggested_text(rec) if rec else ""
        if text:
            updated["text"] = text
        folded.append(updated)
    return folded


def overlay_fresh_edits(
    store_scenes: Sequence[Dict[str, Any]],
    baseline_scenes: Sequence[Dict[str, Any]],
    folded_scenes: Sequence[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Lay fresh edits over the store's snapshot where they changed the baseline text."""
    original = {
        int(scene.get("sceneNumber") or idx + 1): scene.get("text")
        for idx, scene in enumerate(baseline_scenes)
    }
    fresh_text = {}
    for scene in folded_scenes:
        number = int(scene.get("sceneNumber") or 0)
        if number and scene.get("text") != original.get(number):
            fresh_text[number] = scene.get("text")

    merged: List[Dict[str, Any]] = []
    for scene in store_scenes:
        updated = copy.deepcopy(scene)
        text = fresh_text.get(int(updated.get("sceneNumber") or 0))
        if text:
            updated["text"] = text
        merged.append(updated)
    return merged


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def apply_one_service(project_id: str, recommendation_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Apply a single persisted recommendation, producing a new current version."""
    await get_project(db, project_id)
    current = await get_current_version(db, project_id)
    if current is None:
        raise NoCurrentVersionError()

    rec = await get_recommendation(db, recommendation_id)
    if rec is None or rec.script_version_id != current.id:
        raise RecommendationNotFoundError()
    if rec.applied_at is not None:
        raise RecommendationAlreadyAppliedError()

    scenes = copy.deepcopy(current.scenes or [])
    target = next((s for s in scenes if int(s.get("sceneNumber") or 0) == rec.scene_number), None)
    if target is None:
        raise SceneNotFoundError(rec.scene_number)
    target["text"] = rec.suggested_text
    target["recommendationApplied"] = True
    target["lastModified"] = _now_iso()

    await mark_applied(db, rec.id)
    version = await create_version(
        db,
        project_id=project_id,
        scenes=scenes,
        created_by="ai",
        change_summary={
            "type": "ai_recommendation",
            "recommendationId": rec.id,
            "affectedScenes": [rec.scene_number],
            "priority": rec.priority,
            "area": rec.area,
            "scoreDelta": rec.score_delta,
        },
        provenance={"source": "ai_recommendation", "agent": rec.source_agent, "recommendationId": rec.id},
        parent_version_id=current.id,
        make_current=True,
        analysis_result=current.analysis_result,
        analysis_score=current.analysis_score,
        carry_forward_exclude=[rec.id],
    )
    await commit_or_conflict(db)
    await db.refresh(version)

    logger.info("Applied recommendation %s to scene %s of project %s", rec.id, rec.scene_number, project_id)
    return {
        "newVersion": serialize_version(version),
        "affectedScene": {"sceneNumber": rec.scene_number, "text": rec.suggested_text},
        "needsReanalysis": True,
    }


async def apply_all_service(
    project_id: str,
    db: AsyncSession,
    recommendation_ids: Optional[Sequence[str]] = None,
    threshold: Optional[int] = None,
) -> Dict[str, Any]:
    """Apply every eligible persisted recommendation in one new version.

    Only ``high``/``medium`` suggestions whose score delta reaches the threshold
    are applied, one per scene. Nothing eligible means no new version.
    """
    await get_project(db, project_id)
    current = await get_current_version(db, project_id)
    if current is None:
        raise NoCurrentVersionError()

    rows = await list_for_version(db, current.id)
    if recommendation_ids:
        wanted = {str(rec_id) for rec_id in recommendation_ids}
        if wanted - {row.id for row in rows}:
            raise RecommendationNotFoundError()
        rows = [row for row in rows if row.id in wanted]

    outstanding = [serialize_recommendation(row) for row in rows if row.applied_at is None]
    eligible = [rec for rec in outstanding if is_eligible(rec, threshold)]

    scenes = copy.deepcopy(current.scenes or [])
    scene_numbers = {int(s.get("sceneNumber") or 0) for s in scenes}
    chosen = {
        number: rec
        for number, rec in select_one_per_scene(eligible).items()
        if number in scene_numbers
    }
    if not chosen:
        return {
            "newVersion": None,
            "scenes": scenes,
            "appliedCount": 0,
            "appliedRecommendationIds": [],
            "affectedScenes": [],
            "needsReanalysis": False,
        }

    ts = _now_iso()
    for scene in scenes:
        rec = chosen.get(int(scene.get("sceneNumber") or 0))
        if rec:
            scene["text"] = rec["suggestedText"]
            scene["recommendationApplied"] = True
            scene["lastModified"] = ts

    applied_ids = [rec["id"] for _, rec in sorted(chosen.items())]
    for rec_id in applied_ids:
        await mark_applied(db, rec_id)

    version = await create_version(
        db,
        project_id=project_id,
        scenes=scenes,
        created_by="ai",
        change_summary={
            "type": "bulk_apply",
            "recommendationIds": applied_ids,
            "affectedScenes": sorted(chosen),
        },
        provenance={"source": "bulk_apply", "agent": "reconciler", "count": len(applied_ids)},
        parent_version_id=current.id,
        make_current=True,
        analysis_result=current.analysis_result,
        analysis_score=current.analysis_score,
        carry_forward_exclude=applied_ids,
    )
    await commit_or_conflict(db)
    await db.refresh(version)

    logger.info("Bulk-applied %s recommendations to project %s as v%s", len(applied_ids), project_id, version.version_number)
    return {
        "newVersion": serialize_version(version),
        "scenes": version.scenes,
        "appliedCount": len(applied_ids),
        "appliedRecommendationIds": applied_ids,
        "affectedScenes": [
            {"sceneNumber": number, "text": rec["suggestedText"]} for number, rec in sorted(chosen.items())
        ],
        "needsReanalysis": True,
    }


async def apply_all_with_fresh_service(
    *,
    project_id: str,
    baseline_scenes: Sequence[Dict[str, Any]],
    recommendations: Sequence[Dict[str, Any]],
    db: AsyncSession,
    threshold: Optional[int] = None,
) -> Dict[str, Any]:
    """Merge fresh (client-side) and persisted suggestions into one scene list.

    Persisted suggestions go through the store and produce a version; fresh
    edits are folded into the caller's scenes and laid over the store's
    snapshot. With only fresh suggestions nothing is persisted.
    """
    fresh, persisted = partition_recommendations(recommendations)
    fresh = [rec for rec in fresh if is_eligible(rec, threshold)]
    persisted = [rec for rec in persisted if is_eligible(rec, threshold)]

    folded = fold_fresh_into_scenes(baseline_scenes, fresh)
    changed_fresh = sorted(
        {
            int(scene["sceneNumber"])
            for scene, original in zip(folded, baseline_scenes)
            if scene.get("text") != original.get("text")
        }
    )

    if not persisted:
        return {
            "scenes": folded,
            "persisted": False,
            "newVersion": None,
            "freshApplied": len(changed_fresh),
            "persistedApplied": 0,
            "affectedScenes": changed_fresh,
            "needsReanalysis": bool(changed_fresh),
        }

    store_result = await apply_all_service(
        project_id,
        db,
        recommendation_ids=[str(rec.get("id")) for rec in persisted],
        threshold=threshold,
    )
    merged = overlay_fresh_edits(store_result["scenes"], baseline_scenes, folded)
    persisted_scenes = [row["sceneNumber"] for row in store_result["affectedScenes"]]
    return {
        "scenes": merged,
        "persisted": store_result["newVersion"] is not None,
        "newVersion": store_result["newVersion"],
        "freshApplied": len(changed_fresh),
        "persistedApplied": store_result["appliedCount"],
        "affectedScenes": sorted(set(changed_fresh) | set(persisted_scenes)),
        "needsReanalysis": bool(changed_fresh) or store_result["needsReanalysis"],
    }
