"""Script version router: history, accept/reject, revert, manual edits and comparisons."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.script_versions import (
    accept_candidate_service,
    create_initial_version_service,
    delete_version_service,
    edit_scene_service,
    get_script_history_service,
    get_version_service,
    list_versions_service,
    reject_candidate_service,
    revert_to_version_service,
)
from services.version_comparison import compare_latest_service, compare_versions_service

router = APIRouter()


class InitialVersionRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    scenes: List[Dict[str, Any]] = Field(min_length=1)
    analysis_result: Optional[Dict[str, Any]] = None
    analysis_score: Optional[int] = Field(default=None, ge=0, le=100)
    content_type: Optional[str] = None


class SceneEditRequest(BaseModel):
    text: str = Field(min_length=1)


@router.post("/{project_id}/versions/initial")
async def create_initial_version(
    project_id: str,
    request: InitialVersionRequest,
    db: AsyncSession = Depends(get_db),
):
    return await create_initial_version_service(
        project_id=project_id,
        scenes=request.scenes,
        analysis_result=request.analysis_result,
        analysis_score=request.analysis_score,
        content_type=request.content_type,
        db=db,
    )


@router.get("/{project_id}/versions")
async def list_versions(project_id: str, db: AsyncSession = Depends(get_db)):
    return await list_versions_service(project_id, db)


@router.get("/{project_id}/versions/{version_id}")
async def get_version(project_id: str, version_id: str, db: AsyncSession = Depends(get_db)):
    return await get_version_service(project_id, version_id, db)


@router.get("/{project_id}/history")
async def get_script_history(project_id: str, db: AsyncSession = Depends(get_db)):
    """Current and candidate versions, full history and the current recommendations."""
    return await get_script_history_service(project_id, db)


@router.post("/{project_id}/versions/{version_id}/accept")
async def accept_candidate(project_id: str, version_id: str, db: AsyncSession = Depends(get_db)):
    return await accept_candidate_service(project_id, version_id, db)


@router.delete("/{project_id}/versions/{version_id}")
async def delete_version(project_id: str, version_id: str, db: AsyncSession = Depends(get_db)):
    return await delete_version_service(project_id, version_id, db)


@router.delete("/{project_id}/candidate")
async def reject_candidate(project_id: str, db: AsyncSession = Depends(get_db)):
    return await reject_candidate_service(project_id, db)


@router.post("/{project_id}/versions/{version_id}/revert")
async def revert_to_version(project_id: str, version_id: str, db: AsyncSession = Depends(get_db)):
    return await revert_to_version_service(project_id, version_id, db)


@router.patch("/{project_id}/scenes/{scene_number}")
async def edit_scene(
    project_id: str,
    scene_number: int,
    request: SceneEditRequest,
    db: AsyncSession = Depends(get_db),
):
    return await edit_scene_service(
        project_id=project_id,
        scene_number=scene_number,
        text=request.text,
        db=db,
    )


@router.get("/{project_id}/compare")
async def compare_versions(
    project_id: str,
    base: str = Query(...),
    target: str = Query(...),
    db: AsyncSession = Depends(get_db),
):
    return await compare_versions_service(project_id, base, target, db)


@router.get("/{project_id}/compare/latest")
async def compare_latest(project_id: str, db: AsyncSession = Depends(get_db)):
    return await compare_latest_service(project_id, db)
