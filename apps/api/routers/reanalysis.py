"""Reanalysis router: start, poll, resume and retry scoring jobs."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.rate_limit import rate_limit
from services.errors import ReanalysisAlreadyRunningError
from services.reanalysis import (
    get_latest_job_service,
    get_status_service,
    retry_job_service,
    start_reanalysis_service,
)

router = APIRouter()


class ReanalysisStartRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    scenes: List[Dict[str, Any]] = Field(min_length=1)
    full_script: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=200)


@router.post("/{project_id}/reanalysis", status_code=202)
async def start_reanalysis(
    project_id: str,
    request: ReanalysisStartRequest,
    background_tasks: BackgroundTasks,
    _rate_limit: None = Depends(rate_limit("reanalysis_start", limit=60, window_seconds=3600)),
    db: AsyncSession = Depends(get_db),
):
    """Submit edited scenes; returns the job to poll and the candidate it scores."""
    try:
        return await start_reanalysis_service(
            project_id=project_id,
            scenes=request.scenes,
            full_script=request.full_script,
            idempotency_key=request.idempotency_key,
            db=db,
            background_tasks=background_tasks,
        )
    except ReanalysisAlreadyRunningError as exc:
        return JSONResponse(status_code=409, content=exc.payload())


@router.get("/{project_id}/reanalysis/latest")
async def get_latest_reanalysis(project_id: str, db: AsyncSession = Depends(get_db)):
    return await get_latest_job_service(project_id, db)


@router.get("/{project_id}/reanalysis/{job_id}")
async def get_reanalysis_status(project_id: str, job_id: str, db: AsyncSession = Depends(get_db)):
    return await get_status_service(project_id, job_id, db)


@router.post("/{project_id}/reanalysis/{job_id}/retry", status_code=202)
async def retry_reanalysis(
    project_id: str,
    job_id: str,
    background_tasks: BackgroundTasks,
    _rate_limit: None = Depends(rate_limit("reanalysis_retry", limit=60, window_seconds=3600)),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await retry_job_service(
            project_id=project_id,
            job_id=job_id,
            db=db,
            background_tasks=background_tasks,
        )
    except ReanalysisAlreadyRunningError as exc:
        return JSONResponse(status_code=409, content=exc.payload())
