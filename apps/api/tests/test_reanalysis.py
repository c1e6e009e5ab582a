import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.future import select

from config import settings
from models.reanalysis_job import ReanalysisJob
from models.script_version import ScriptVersion
from scoring import agents
from services.reanalysis import process_reanalysis_job_async
from services.reanalysis_queue import recover_stalled_reanalysis_jobs
from services.recommendations import list_for_version


PROJECT_ID = "project-reanalysis"

SCENES = [
    {"sceneNumber": 1, "text": "Here is a quick look at our new kitchen."},
    {"sceneNumber": 2, "text": "We moved the sink next to the window and added two long shelves for plates."},
    {"sceneNumber": 3, "text": "That is all for today."},
]

EDITED_SCENES = [
    {"sceneNumber": 1, "text": "Stop scrolling: we rebuilt this kitchen for 900 dollars."},
    {"sceneNumber": 2, "text": "We moved the sink next to the window and added two long shelves for plates."},
    {"sceneNumber": 3, "text": "That is all for today."},
]


async def _seed(client):
    resp = await client.post(f"/projects/{PROJECT_ID}/versions/initial", json={"scenes": SCENES})
    assert resp.status_code == 200
    return resp.json()["version"]


async def _start(client, key=None, scenes=EDITED_SCENES):
    body = {"scenes": scenes}
    if key:
        body["idempotencyKey"] = key
    return await client.post(f"/projects/{PROJECT_ID}/reanalysis", json=body)


async def _status(client, job_id):
    resp = await client.get(f"/projects/{PROJECT_ID}/reanalysis/{job_id}")
    assert resp.status_code == 200
    return resp.json()


async def _load_job(session_maker, job_id):
    async with session_maker() as session:
        result = await session.execute(select(ReanalysisJob).where(ReanalysisJob.id == job_id))
        return result.scalar_one()


async def _age_job(session_maker, job_id, seconds):
    async with session_maker() as session:
        result = await session.execute(select(ReanalysisJob).where(ReanalysisJob.id == job_id))
        job = result.scalar_one()
        job.started_at = datetime.now(timezone.utc) - timedelta(seconds=seconds)
        await session.commit()


@pytest.mark.asyncio
async def test_reanalysis_scores_candidate_and_finishes(studio_client, session_maker):
    base = await _seed(studio_client)

    resp = await _start(studio_client, key="edit-1")
    assert resp.status_code == 202
    started = resp.json()
    assert started["reused"] is False
    assert started["baseVersionId"] == base["id"]
    assert started["candidateVersionId"]

    status = await _status(studio_client, started["jobId"])
    assert status["status"] == "done"
    assert status["progress"] == 100
    assert status["canRetry"] is False
    assert status["error"] is None

    history = (await studio_client.get(f"/projects/{PROJECT_ID}/history")).json()
    candidate = history["candidateVersion"]
    assert candidate["id"] == started["candidateVersionId"]
    assert candidate["createdBy"] == "ai"
    assert candidate["analysisScore"] == candidate["analysisResult"]["overallScore"]
    assert candidate["metrics"]["overallScore"] == candidate["analysisScore"]
    assert candidate["review"]["verdict"] == candidate["analysisResult"]["verdict"]
    assert candidate["diff"] == [
        {"sceneNumber": 1, "before": SCENES[0]["text"], "after": EDITED_SCENES[0]["text"]}
    ]
    assert history["currentVersion"]["id"] == base["id"]

    async with session_maker() as session:
        recs = await list_for_version(session, candidate["id"])
    assert recs
    assert all(1 <= rec.scene_number <= 3 for rec in recs)


@pytest.mark.asyncio
async def test_same_idempotency_key_returns_same_job(studio_client):
    await _seed(studio_client)

    with patch("services.reanalysis.dispatch_reanalysis_job", return_value=None):
        first = await _start(studio_client, key="edit-1")
        again = await _start(studio_client, key="edit-1")
        other = await _start(studio_client, key="edit-2")

    assert first.status_code == 202
    assert again.status_code == 202
    assert again.json()["jobId"] == first.json()["jobId"]
    assert again.json()["reused"] is True

    assert other.status_code == 409
    body = other.json()
    assert body["jobId"] == first.json()["jobId"]
    assert body["status"] == "queued"


@pytest.mark.asyncio
async def test_reanalysis_requires_known_project_and_scenes(studio_client):
    missing = await _start(studio_client)
    assert missing.status_code == 404

    await _seed(studio_client)
    empty = await _start(studio_client, scenes=[])
    assert empty.status_code == 422


@pytest.mark.asyncio
async def test_status_poll_forces_over_budget_job_to_error(studio_client, session_maker):
    await _seed(studio_client)
    with patch("services.reanalysis.dispatch_reanalysis_job", return_value=None):
        started = (await _start(studio_client, key="stuck")).json()

    await _age_job(session_maker, started["jobId"], settings.REANALYSIS_TIMEOUT_SECONDS + 30)

    status = await _status(studio_client, started["jobId"])
    assert status["status"] == "error"
    assert status["canRetry"] is True
    assert "timed out" in status["error"]

    # The project is free for a new submission again.
    with patch("services.reanalysis.dispatch_reanalysis_job", return_value=None):
        next_start = await _start(studio_client, key="after-timeout")
    assert next_start.status_code == 202
    assert next_start.json()["jobId"] != started["jobId"]


@pytest.mark.asyncio
async def test_runner_gives_up_after_time_budget(studio_client):
    await _seed(studio_client)

    async def slow_score(*args, **kwargs):
        await asyncio.sleep(1)

    with (
        patch.object(settings, "REANALYSIS_TIMEOUT_SECONDS", 0.05),
        patch("services.reanalysis.score_script", side_effect=slow_score),
    ):
        started = (await _start(studio_client)).json()
        status = await _status(studio_client, started["jobId"])

    assert status["status"] == "error"
    assert status["canRetry"] is True
    assert "timed out" in status["error"]


@pytest.mark.asyncio
async def test_analyzer_failure_can_be_retried(studio_client):
    await _seed(studio_client)

    async def broken(text, context):
        raise RuntimeError("model overloaded")

    with patch.dict(agents.ANALYZERS, {"hook": broken}):
        failed = (await _start(studio_client, key="first-try")).json()
        status = await _status(studio_client, failed["jobId"])

    assert status["status"] == "error"
    assert status["canRetry"] is True
    assert "hook" in status["error"]

    retry = await studio_client.post(f"/projects/{PROJECT_ID}/reanalysis/{failed['jobId']}/retry")
    assert retry.status_code == 202
    retried = retry.json()
    assert retried["retriedFrom"] == failed["jobId"]
    assert retried["jobId"] != failed["jobId"]
    assert retried["idempotencyKey"] == f"retry:{failed['jobId']}"

    status = await _status(studio_client, retried["jobId"])
    assert status["status"] == "done"

    done_retry = await studio_client.post(f"/projects/{PROJECT_ID}/reanalysis/{retried['jobId']}/retry")
    assert done_retry.status_code == 400


@pytest.mark.asyncio
async def test_invalid_input_failure_is_permanent(studio_client):
    await _seed(studio_client)

    with patch("services.reanalysis.score_script", new=AsyncMock(side_effect=ValueError("Script has no text to score"))):
        failed = (await _start(studio_client)).json()

    status = await _status(studio_client, failed["jobId"])
    assert status["status"] == "error"
    assert status["canRetry"] is False

    retry = await studio_client.post(f"/projects/{PROJECT_ID}/reanalysis/{failed['jobId']}/retry")
    assert retry.status_code == 400


@pytest.mark.asyncio
async def test_rejecting_candidate_mid_run_fails_job_permanently(studio_client, session_maker):
    await _seed(studio_client)
    with patch("services.reanalysis.dispatch_reanalysis_job", return_value=None):
        started = (await _start(studio_client)).json()

    rejected = await studio_client.delete(f"/projects/{PROJECT_ID}/candidate")
    assert rejected.status_code == 200
    assert rejected.json()["candidateVersion"] is None

    await process_reanalysis_job_async(started["jobId"])

    status = await _status(studio_client, started["jobId"])
    assert status["status"] == "error"
    assert status["canRetry"] is False

    async with session_maker() as session:
        result = await session.execute(select(ScriptVersion).where(ScriptVersion.project_id == PROJECT_ID))
        assert [version.version_number for version in result.scalars().all()] == [1]


@pytest.mark.asyncio
async def test_running_a_finished_job_again_is_a_no_op(studio_client, session_maker):
    await _seed(studio_client)
    started = (await _start(studio_client)).json()
    before = await _load_job(session_maker, started["jobId"])
    assert before.status == "done"

    await process_reanalysis_job_async(started["jobId"])

    after = await _load_job(session_maker, started["jobId"])
    assert after.status == "done"
    assert after.completed_at == before.completed_at


@pytest.mark.asyncio
async def test_latest_job_carries_submitted_payload(studio_client):
    await _seed(studio_client)

    empty = await studio_client.get(f"/projects/{PROJECT_ID}/reanalysis/latest")
    assert empty.status_code == 200
    assert empty.json() == {"job": None}

    with patch("services.reanalysis.dispatch_reanalysis_job", return_value=None):
        started = (await _start(studio_client, key="resume-me")).json()

    latest = (await studio_client.get(f"/projects/{PROJECT_ID}/reanalysis/latest")).json()["job"]
    assert latest["jobId"] == started["jobId"]
    assert latest["status"] == "queued"
    assert latest["lastPayload"]["idempotencyKey"] == "resume-me"
    assert [scene["text"] for scene in latest["lastPayload"]["scenes"]] == [s["text"] for s in EDITED_SCENES]


@pytest.mark.asyncio
async def test_queue_mode_enqueues_on_redis(studio_client, session_maker):
    await _seed(studio_client)
    queued = MagicMock()
    queued.id = "reanalysis:queued-job"

    with (
        patch.object(settings, "REANALYSIS_EXECUTION_MODE", "queue"),
        patch("services.reanalysis_queue.enqueue_reanalysis_job", return_value=queued) as enqueue,
    ):
        started = (await _start(studio_client)).json()

    enqueue.assert_called_once_with(started["jobId"])
    job = await _load_job(session_maker, started["jobId"])
    assert job.status == "queued"
    assert job.queue_job_id == "reanalysis:queued-job"


@pytest.mark.asyncio
async def test_unreachable_queue_fails_job_with_503(studio_client, session_maker):
    await _seed(studio_client)

    with (
        patch.object(settings, "REANALYSIS_EXECUTION_MODE", "queue"),
        patch("services.reanalysis_queue.enqueue_reanalysis_job", side_effect=ConnectionError("redis down")),
    ):
        resp = await _start(studio_client, key="no-redis")

    assert resp.status_code == 503
    latest = (await studio_client.get(f"/projects/{PROJECT_ID}/reanalysis/latest")).json()["job"]
    assert latest["status"] == "error"
    assert latest["canRetry"] is True


@pytest.mark.asyncio
async def test_startup_recovery_fails_stalled_jobs(studio_client, session_maker):
    await _seed(studio_client)
    with patch("services.reanalysis.dispatch_reanalysis_job", return_value=None):
        started = (await _start(studio_client)).json()
    await _age_job(session_maker, started["jobId"], 600)

    recovered = await recover_stalled_reanalysis_jobs()

    assert recovered == 1
    job = await _load_job(session_maker, started["jobId"])
    assert job.status == "error"
    assert job.can_retry is True
