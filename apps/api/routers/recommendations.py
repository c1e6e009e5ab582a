"""Recommendation router: list and apply scene suggestions."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.recommendations import list_for_project
from services.reconciler import apply_all_service, apply_all_with_fresh_service, apply_one_service
from services.script_versions import get_project

router = APIRouter()


class ApplyAllRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    recommendation_ids: Optional[List[str]] = None
    # Client-side snapshot plus fresh (negative id) and persisted suggestions.
    scenes: Optional[List[Dict[str, Any]]] = None
    recommendations: Optional[List[Dict[str, Any]]] = None
    threshold: Optional[int] = Field(default=None, ge=0)


@router.get("/{project_id}/recommendations")
async def list_recommendations(project_id: str, db: AsyncSession = Depends(get_db)):
    await get_project(db, project_id)
    recommendations = await list_for_project(project_id, db)
    return {
        "recommendations": recommendations,
        "hasUnapplied": any(rec["appliedAt"] is None for rec in recommendations),
    }


@router.post("/{project_id}/recommendations/{recommendation_id}/apply")
async def apply_recommendation(project_id: str, recommendation_id: str, db: AsyncSession = Depends(get_db)):
    return await apply_one_service(project_id, recommendation_id, db)


@router.post("/{project_id}/recommendations/apply_all")
async def apply_all_recommendations(
    project_id: str,
    request: ApplyAllRequest,
    db: AsyncSession = Depends(get_db),
):
    if request.scenes is not None and request.recommendations is not None:
        return await apply_all_with_fresh_service(
            project_id=project_id,
            baseline_scenes=request.scenes,
            recommendations=request.recommendations,
            threshold=request.threshold,
            db=db,
        )
    return await apply_all_service(
        project_id,
        db,
        recommendation_ids=request.recommendation_ids,
        threshold=request.threshold,
    )
