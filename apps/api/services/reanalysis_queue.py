"""Reanalysis job dispatch: in-process background task or durable Redis/RQ queue."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import BackgroundTasks
from redis import Redis
from rq import Queue
from rq.job import Job
from sqlalchemy import select

from config import settings
from database import async_session_maker
from models.reanalysis_job import ReanalysisJob

logger = logging.getLogger(__name__)

REANALYSIS_QUEUE_NAME = "reanalysis_jobs"
ACTIVE_STATUSES = ("queued", "running")


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_reanalysis_queue() -> Queue:
    """Return the configured reanalysis queue."""
    return Queue(
        name=REANALYSIS_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=int(settings.REANALYSIS_TIMEOUT_SECONDS) + 60,
    )


def enqueue_reanalysis_job(job_id: str) -> Job:
    """Enqueue one reanalysis run. No RQ retries: retry is an explicit, user-driven action."""
    queue = get_reanalysis_queue()
    return queue.enqueue(
        "services.reanalysis.process_reanalysis_job",
        job_id,
        job_id=f"reanalysis:{job_id}",
        job_timeout=int(settings.REANALYSIS_TIMEOUT_SECONDS) + 60,
        result_ttl=86400,
        failure_ttl=86400,
    )


def execution_mode() -> str:
    return (settings.REANALYSIS_EXECUTION_MODE or "inline").strip().lower()


def dispatch_reanalysis_job(job_id: str, background_tasks: Optional[BackgroundTasks]) -> Optional[str]:
    """
    Hand a queued job to whichever executor is configured.

    Returns the RQ job id in queue mode, ``None`` in inline mode. Raises when
    the queue is unreachable so the caller can fail the job.
    """
    if execution_mode() == "queue":
        queue_job = enqueue_reanalysis_job(job_id)
        logger.info("Enqueued reanalysis job %s as %s", job_id, queue_job.id)
        return queue_job.id

    # Imported here; services.reanalysis imports this module.
    from services.reanalysis import process_reanalysis_job_async

    if background_tasks is None:
        raise RuntimeError("Inline reanalysis needs a BackgroundTasks instance")
    background_tasks.add_task(process_reanalysis_job_async, job_id)
    return None


async def recover_stalled_reanalysis_jobs(grace_seconds: Optional[float] = None) -> int:
    """Fail active jobs that outlived their budget, e.g. after a restart killed the runner."""
    budget = float(settings.REANALYSIS_TIMEOUT_SECONDS) if grace_seconds is None else float(grace_seconds)
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=max(budget, 1.0))
    async with async_session_maker() as db:
        result = await db.execute(
            select(ReanalysisJob).where(
                ReanalysisJob.status.in_(ACTIVE_STATUSES),
                ReanalysisJob.started_at < cutoff,
            )
        )
        jobs = result.scalars().all()
        for job in jobs:
            job.status = "error"
            job.error_message = "Reanalysis was interrupted. Retry to run it again."
            job.can_retry = True
            job.completed_at = datetime.now(timezone.utc)
        if jobs:
            await db.commit()
            logger.warning("Recovered %s stalled reanalysis jobs", len(jobs))
        return len(jobs)
