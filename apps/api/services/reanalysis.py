"""Reanalysis job manager.

A job is bound to one candidate version and moves
``queued -> running(step) -> done | error``. Starting is idempotent per
``idempotency_key``, and the partial unique index on ``reanalysis_jobs`` keeps
at most one queued/running job per project.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.project import Project
from models.reanalysis_job import ReanalysisJob
from models.script_version import ScriptVersion
from scoring import build_review, build_version_metrics, score_script
from services.errors import (
    ConcurrentVersionWriteError,
    JobNotFoundError,
    JobNotRetryableError,
    NoCurrentVersionError,
    ReanalysisAlreadyRunningError,
    ScoringPipelineError,
)
from services.reanalysis_queue import ACTIVE_STATUSES, dispatch_reanalysis_job
from services.recommendations import add_recommendations, extract_recommendations_from_analysis
from services.script_versions import create_version, get_current_version, get_project, normalize_scenes

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("done", "error")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = _as_utc(value)
    return value.isoformat() if value else None


def serialize_job(job: ReanalysisJob, include_payload: bool = False) -> Dict[str, Any]:
    data = {
        "jobId": job.id,
        "projectId": job.project_id,
        "status": job.status,
        "step": job.step,
        "progress": int(job.progress or 0),
        "error": job.error_message,
        "canRetry": bool(job.can_retry) if job.status == "error" else False,
        "candidateVersionId": job.candidate_version_id,
        "baseVersionId": job.base_version_id,
        "idempotencyKey": job.idempotency_key,
        "startedAt": _iso(job.started_at),
        "completedAt": _iso(job.completed_at),
        "pollIntervalSeconds": settings.REANALYSIS_POLL_INTERVAL_SECONDS,
    }
    if include_payload:
        data["lastPayload"] = job.request_json
    return data


async def _find_job_by_key(db: AsyncSession, project_id: str, key: str) -> Optional[ReanalysisJob]:
    result = await db.execute(
        select(ReanalysisJob).where(
            ReanalysisJob.project_id == project_id,
            ReanalysisJob.idempotency_key == key,
        )
    )
    return result.scalar_one_or_none()


async def _find_active_job(db: AsyncSession, project_id: str) -> Optional[ReanalysisJob]:
    result = await db.execute(
        select(ReanalysisJob).where(
            ReanalysisJob.project_id == project_id,
            ReanalysisJob.status.in_(ACTIVE_STATUSES),
        )
    )
    return result.scalars().first()


async def _enforce_time_budget(db: AsyncSession, job: ReanalysisJob) -> None:
    """Force an over-budget active job to error, whatever the runner is doing."""
    if job.status not in ACTIVE_STATUSES:
        return
    started_at = _as_utc(job.started_at)
    if started_at is None:
        return
    elapsed = (datetime.now(timezone.utc) - started_at).total_seconds()
    if elapsed <= float(settings.REANALYSIS_TIMEOUT_SECONDS):
        return
    job.status = "error"
    job.error_message = f"Reanalysis timed out after {settings.REANALYSIS_TIMEOUT_SECONDS:g}s"
    job.can_retry = True
    job.completed_at = datetime.now(timezone.utc)
    await db.commit()
    await db.refresh(job)
    logger.warning("reanalysis.timeout job=%s project=%s elapsed=%.1fs", job.id, job.project_id, elapsed)


async def start_reanalysis_service(
    *,
    project_id: str,
    scenes: List[Dict[str, Any]],
    db: AsyncSession,
    background_tasks: Optional[BackgroundTasks] = None,
    full_script: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a candidate from the submitted scenes and queue it for scoring."""
    await get_project(db, project_id)
    snapshot = normalize_scenes(scenes)
    key = str(idempotency_key or "").strip() or None

    if key:
        existing = await _find_job_by_key(db, project_id, key)
        if existing:
            await _enforce_time_budget(db, existing)
            logger.info("Reusing reanalysis job %s for idempotency key %s", existing.id, key)
            return {**serialize_job(existing), "reused": True}

    active = await _find_active_job(db, project_id)
    if active:
        await _enforce_time_budget(db, active)
        if active.status in ACTIVE_STATUSES:
            raise ReanalysisAlreadyRunningError(active.id, active.status)

    current = await get_current_version(db, project_id)
    if current is None:
        raise NoCurrentVersionError()

    try:
        candidate = await create_version(
            db,
            project_id=project_id,
            scenes=snapshot,
            created_by="ai",
            change_summary={"type": "reanalysis", "description": "Edited scenes submitted for reanalysis"},
            provenance={"source": "reanalysis", "agent": "scoring_pipeline"},
            parent_version_id=current.id,
            make_candidate=True,
            supersede_candidate=True,
            base_version_id=current.id,
        )
        job = ReanalysisJob(
            project_id=project_id,
            idempotency_key=key,
            status="queued",
            progress=0,
            can_retry=True,
            candidate_version_id=candidate.id,
            base_version_id=current.id,
            request_json={"scenes": snapshot, "fullScript": full_script, "idempotencyKey": key},
            started_at=datetime.now(timezone.utc),
        )
        db.add(job)
        await db.commit()
    except IntegrityError as exc:
        # Lost a race against another start for this project.
        await db.rollback()
        if key:
            existing = await _find_job_by_key(db, project_id, key)
            if existing:
                return {**serialize_job(existing), "reused": True}
        active = await _find_active_job(db, project_id)
        if active:
            raise ReanalysisAlreadyRunningError(active.id, active.status) from exc
        raise ConcurrentVersionWriteError() from exc

    await db.refresh(job)
    logger.info(
        "reanalysis.start job=%s project=%s candidate=%s scenes=%s",
        job.id,
        project_id,
        job.candidate_version_id,
        len(snapshot),
    )

    try:
        queue_job_id = dispatch_reanalysis_job(job.id, background_tasks)
    except Exception as exc:
        job.status = "error"
        job.error_message = f"Reanalysis executor unavailable: {exc}"
        job.can_retry = True
        job.completed_at = datetime.now(timezone.utc)
        await db.commit()
        raise HTTPException(
            status_code=503,
            detail="Reanalysis queue unavailable. Check Redis/worker availability and retry.",
        ) from exc

    if queue_job_id:
        job.queue_job_id = queue_job_id
        await db.commit()
        await db.refresh(job)

    return {**serialize_job(job), "reused": False}


async def _record_progress(job_id: str, step: str, progress: int) -> None:
    async with async_session_maker() as db:
        result = await db.execute(select(ReanalysisJob).where(ReanalysisJob.id == job_id))
        job = result.scalar_one_or_none()
        if not job or job.status != "running":
            return
        job.step = step
        job.progress = max(int(job.progress or 0), min(int(progress), 99))
        await db.commit()


async def _fail_job(job_id: str, message: str, *, can_retry: bool) -> None:
    async with async_session_maker() as db:
        result = await db.execute(select(ReanalysisJob).where(ReanalysisJob.id == job_id))
        job = result.scalar_one_or_none()
        if not job or job.status in TERMINAL_STATUSES:
            return
        job.status = "error"
        job.error_message = message[:1000]
        job.can_retry = can_retry
        job.completed_at = datetime.now(timezone.utc)
        await db.commit()


async def _attach_analysis(job_id: str, candidate_id: str, analysis: Dict[str, Any], overall: int) -> str:
    """Persist the analysis, metrics and recommendations and finish the job atomically."""
    async with async_session_maker() as db:
        result = await db.execute(select(ReanalysisJob).where(ReanalysisJob.id == job_id))
        job = result.scalar_one_or_none()
        if not job or job.status != "running":
            return "terminal"
        version_result = await db.execute(select(ScriptVersion).where(ScriptVersion.id == candidate_id))
        candidate = version_result.scalar_one_or_none()
        if candidate is None:
            return "missing_candidate"

        candidate.analysis_result = analysis
        candidate.analysis_score = overall
        candidate.metrics = build_version_metrics(analysis)
        candidate.review = build_review(analysis)
        rows = extract_recommendations_from_analysis(analysis, len(candidate.scenes or []))
        add_recommendations(db, candidate.id, rows)

        job.status = "done"
        job.step = "saving"
        job.progress = 100
        job.error_message = None
        job.can_retry = False
        job.completed_at = datetime.now(timezone.utc)
        await db.commit()
        return "saved"


async def process_reanalysis_job_async(job_id: str) -> None:
    """Run the scoring pipeline for a queued job. Safe to call more than once."""
    started = time.monotonic()
    async with async_session_maker() as db:
        result = await db.execute(select(ReanalysisJob).where(ReanalysisJob.id == job_id))
        job = result.scalar_one_or_none()
        if not job:
            logger.warning("Reanalysis job %s not found", job_id)
            return
        if job.status != "queued":
            logger.info("Reanalysis job %s is %s; nothing to run", job_id, job.status)
            return
        job.status = "running"
        job.step = "hook"
        job.progress = 5
        await db.commit()

        payload = dict(job.request_json or {})
        candidate_id = job.candidate_version_id
        project_result = await db.execute(select(Project.content_type).where(Project.id == job.project_id))
        content_type = project_result.scalar_one_or_none()
        project_id = job.project_id

    try:
        if not candidate_id:
            raise ValueError("Job is not bound to a candidate version")
        scenes = payload.get("scenes")
        if not isinstance(scenes, list) or not scenes:
            raise ValueError("Job payload has no scenes")

        analysis = await asyncio.wait_for(
            score_script(
                scenes,
                content_type=content_type,
                full_script=payload.get("fullScript"),
                on_progress=partial(_record_progress, job_id),
            ),
            timeout=float(settings.REANALYSIS_TIMEOUT_SECONDS),
        )

        await _record_progress(job_id, "saving", 90)
        outcome = await _attach_analysis(
            job_id,
            candidate_id,
            analysis.model_dump(by_alias=True),
            analysis.overall_score,
        )
        if outcome == "missing_candidate":
            await _fail_job(job_id, "Candidate version was rejected before analysis finished", can_retry=False)
            logger.info("reanalysis.failed job=%s project=%s reason=candidate_removed", job_id, project_id)
            return
        if outcome == "terminal":
            logger.info("Reanalysis job %s reached a terminal state elsewhere; result discarded", job_id)
            return
        logger.info(
            "reanalysis.done job=%s project=%s score=%s duration=%.2fs",
            job_id,
            project_id,
            analysis.overall_score,
            time.monotonic() - started,
        )
    except asyncio.TimeoutError:
        await _fail_job(
            job_id,
            f"Reanalysis timed out after {settings.REANALYSIS_TIMEOUT_SECONDS:g}s",
            can_retry=True,
        )
        logger.warning("reanalysis.failed job=%s project=%s reason=timeout duration=%.2fs", job_id, project_id, time.monotonic() - started)
    except ScoringPipelineError as exc:
        await _fail_job(job_id, str(exc.detail), can_retry=True)
        logger.warning("reanalysis.failed job=%s project=%s stage=%s: %s", job_id, project_id, exc.stage, exc.detail)
    except ValueError as exc:
        await _fail_job(job_id, str(exc), can_retry=False)
        logger.warning("reanalysis.failed job=%s project=%s reason=invalid_input: %s", job_id, project_id, exc)
    except Exception as exc:
        logger.exception("reanalysis.failed job=%s project=%s: %s", job_id, project_id, exc)
        await _fail_job(job_id, str(exc) or exc.__class__.__name__, can_retry=True)


def process_reanalysis_job(job_id: str) -> None:
    """RQ worker entrypoint for reanalysis jobs."""
    asyncio.run(process_reanalysis_job_async(job_id))


async def get_status_service(project_id: str, job_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(select(ReanalysisJob).where(ReanalysisJob.id == job_id))
    job = result.scalar_one_or_none()
    if job is None or job.project_id != project_id:
        raise JobNotFoundError()
    await _enforce_time_budget(db, job)
    return serialize_job(job)


async def get_latest_job_service(project_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Most recent job with its submitted payload, for resuming after a reload."""
    await get_project(db, project_id)
    result = await db.execute(
        select(ReanalysisJob)
        .where(ReanalysisJob.project_id == project_id)
        .order_by(ReanalysisJob.started_at.desc())
        .limit(1)
    )
    job = result.scalar_one_or_none()
    if job is None:
        return {"job": None}
    await _enforce_time_budget(db, job)
    return {"job": serialize_job(job, include_payload=True)}


async def retry_job_service(
    *,
    project_id: str,
    job_id: str,
    db: AsyncSession,
    background_tasks: Optional[BackgroundTasks] = None,
) -> Dict[str, Any]:
    """Resubmit a retryable failed job's stored payload as a new job."""
    result = await db.execute(select(ReanalysisJob).where(ReanalysisJob.id == job_id))
    job = result.scalar_one_or_none()
    if job is None or job.project_id != project_id:
        raise JobNotFoundError()
    await _enforce_time_budget(db, job)
    if job.status != "error":
        raise JobNotRetryableError(f"Only failed jobs can be retried (status: {job.status})")
    if not job.can_retry:
        raise JobNotRetryableError("This failure is permanent; submit the scenes again")
    payload = job.request_json or {}
    if not payload.get("scenes"):
        raise JobNotRetryableError("The original request payload is missing")

    started = await start_reanalysis_service(
        project_id=project_id,
        scenes=payload["scenes"],
        full_script=payload.get("fullScript"),
        idempotency_key=f"retry:{job.id}",
        db=db,
        background_tasks=background_tasks,
    )
    return {**started, "retriedFrom": job_id}
