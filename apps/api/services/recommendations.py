"""Recommendation store: per-version suggested scene edits."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.scene_recommendation import SceneRecommendation
from models.script_version import ScriptVersion

logger = logging.getLogger(__name__)

PRIORITY_RANK = {"critical": 4, "high": 3, "medium": 2, "low": 1}
PRIORITY_CONFIDENCE = {"critical": 0.9, "high": 0.8, "medium": 0.6, "low": 0.4}
ALLOWED_AREAS = {"hook", "structure", "emotional", "cta", "pacing", "length", "general"}

_SIGNED_INT = re.compile(r"[+-]?\d+")


def extract_score_delta(expected_impact: Any) -> Optional[int]:
    """Pull the first signed integer out of text like ``"+15-20 points"``."""
    if isinstance(expected_impact, (int, float)):
        return int(expected_impact)
    match = _SIGNED_INT.search(str(expected_impact or ""))
    if not match:
        return None
    return int(match.group(0))


def priority_to_confidence(priority: Any) -> float:
    return PRIORITY_CONFIDENCE.get(normalize_priority(priority), 0.5)


def normalize_priority(value: Any) -> str:
    text = str(value or "").strip().lower()
    return text if text in PRIORITY_RANK else "medium"


def _normalize_area(value: Any) -> str:
    text = str(value or "").strip().lower()
    return text if text in ALLOWED_AREAS else "general"


def serialize_recommendation(row: SceneRecommendation) -> Dict[str, Any]:
    return {
        "id": row.id,
        "scriptVersionId": row.script_version_id,
        "sceneNumber": row.scene_number,
        "priority": row.priority,
        "area": row.area,
        "currentText": row.current_text,
        "suggestedText": row.suggested_text,
        "reasoning": row.reasoning,
        "expectedImpact": row.expected_impact,
        "scoreDelta": row.score_delta,
        "confidence": row.confidence,
        "sourceAgent": row.source_agent,
        "appliedAt": row.applied_at.isoformat() if row.applied_at else None,
    }


def extract_recommendations_from_analysis(
    analysis: Optional[Dict[str, Any]],
    total_scenes: int,
) -> List[Dict[str, Any]]:
    """Map synthesizer recommendations 1:1 onto scene-scoped rows.

    Recommendations without a scene number inside ``1..total_scenes`` are
    dropped; they cannot be applied to a snapshot.
    """
    if not isinstance(analysis, dict):
        return []
    raw = analysis.get("recommendations")
    if not isinstance(raw, list):
        return []

    rows: List[Dict[str, Any]] = []
    for rec in raw:
        if not isinstance(rec, dict):
            continue
        try:
            scene_number = int(rec.get("sceneNumber") or 0)
        except (TypeError, ValueError):
            scene_number = 0
        if scene_number < 1 or scene_number > total_scenes:
            logger.debug("Skipped recommendation with scene number %s (total %s)", rec.get("sceneNumber"), total_scenes)
            continue
        suggested = str(rec.get("suggested") or rec.get("suggestedText") or "").strip()
        if not suggested:
            continue
        priority = normalize_priority(rec.get("priority"))
        expected_impact = str(rec.get("expectedImpact") or "")
        score_delta = rec.get("scoreDelta")
        if not isinstance(score_delta, int):
            score_delta = extract_score_delta(expected_impact)
        area = _normalize_area(rec.get("area"))
        rows.append(
            {
                "scene_number": scene_number,
                "priority": priority,
                "area": area,
                "current_text": str(rec.get("current") or rec.get("currentText") or ""),
                "suggested_text": suggested,
                "reasoning": str(rec.get("reasoning") or ""),
                "expected_impact": expected_impact,
                "score_delta": score_delta,
                "confidence": priority_to_confidence(priority),
                "source_agent": str(rec.get("sourceAgent") or area),
            }
        )
    return rows


def add_recommendations(
    db: AsyncSession,
    script_version_id: str,
    rows: Iterable[Dict[str, Any]],
) -> List[SceneRecommendation]:
    created = [SceneRecommendation(script_version_id=script_version_id, **row) for row in rows]
    db.add_all(created)
    return created


async def list_for_version(db: AsyncSession, version_id: str) -> List[SceneRecommendation]:
    """Both applied and unapplied rows; callers filter."""
    result = await db.execute(
        select(SceneRecommendation)
        .where(SceneRecommendation.script_version_id == version_id)
        .order_by(SceneRecommendation.scene_number, SceneRecommendation.created_at, SceneRecommendation.id)
    )
    return list(result.scalars().all())


async def get_recommendation(db: AsyncSession, recommendation_id: str) -> Optional[SceneRecommendation]:
    result = await db.execute(select(SceneRecommendation).where(SceneRecommendation.id == recommendation_id))
    return result.scalar_one_or_none()


async def mark_applied(db: AsyncSession, recommendation_id: str) -> Optional[SceneRecommendation]:
    """One-way ``applied_at`` transition. Marking twice keeps the first timestamp."""
    row = await get_recommendation(db, recommendation_id)
    if row is None:
        return None
    if row.applied_at is None:
        row.applied_at = datetime.now(timezone.utc)
    return row


async def copy_unapplied_to(
    db: AsyncSession,
    new_version_id: str,
    from_version_id: str,
    exclude_ids: Sequence[str] = (),
) -> List[SceneRecommendation]:
    """Carry outstanding suggestions from a superseded version onto its successor."""
    excluded = set(exclude_ids)
    source_rows = await list_for_version(db, from_version_id)
    copies = [
        SceneRecommendation(
            script_version_id=new_version_id,
            scene_number=row.scene_number,
            priority=row.priority,
            area=row.area,
            current_text=row.current_text,
            suggested_text=row.suggested_text,
            reasoning=row.reasoning,
            expected_impact=row.expected_impact,
            score_delta=row.score_delta,
            confidence=row.confidence,
            source_agent=row.source_agent,
        )
        for row in source_rows
        if row.applied_at is None and row.id not in excluded
    ]
    db.add_all(copies)
    return copies


async def list_for_project(project_id: str, db: AsyncSession) -> List[Dict[str, Any]]:
    """Recommendations attached to the project's current version."""
    result = await db.execute(
        select(ScriptVersion).where(
            ScriptVersion.project_id == project_id,
            ScriptVersion.is_current.is_(True),
        )
    )
    current = result.scalar_one_or_none()
    if current is None:
        return []
    return [serialize_recommendation(row) for row in await list_for_version(db, current.id)]
