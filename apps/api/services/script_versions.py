"""Version store: append-only script snapshots with current/candidate slots."""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from fastapi import HTTPException
from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.project import Project
from models.scene_recommendation import SceneRecommendation
from models.script_version import ScriptVersion
from services.errors import (
    CandidateAlreadyExistsError,
    CannotDeleteCurrentVersionError,
    CannotDeleteHistoryVersionError,
    CanOnlyAcceptCandidateVersionsError,
    ConcurrentVersionWriteError,
    NoCandidateVersionError,
    NoCurrentVersionError,
    ProjectNotFoundError,
    RevertTargetNotFoundError,
    SceneNotFoundError,
    ScriptVersionNotFoundError,
)
from services.recommendations import (
    add_recommendations,
    copy_unapplied_to,
    extract_recommendations_from_analysis,
    list_for_version,
    serialize_recommendation,
)

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {"news", "reel", "custom"}
ALLOWED_CREATORS = {"human", "ai"}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_scenes(scenes: Any) -> List[Dict[str, Any]]:
    """Validate a scene list and give every scene an integer ``sceneNumber``.

    Scenes keep any extra keys (timings, labels) untouched. Missing scene
    numbers are filled with the 1-based position.
    """
    if not isinstance(scenes, list) or not scenes:
        raise HTTPException(status_code=422, detail="scenes must be a non-empty list")

    normalized: List[Dict[str, Any]] = []
    seen: set = set()
    for idx, raw in enumerate(scenes):
        if not isinstance(raw, dict):
            raise HTTPException(status_code=422, detail=f"scene at position {idx + 1} must be an object")
        scene = copy.deepcopy(raw)
        raw_number = scene.get("sceneNumber")
        try:
            scene_number = idx + 1 if raw_number is None else int(raw_number)
        except (TypeError, ValueError):
            raise HTTPException(status_code=422, detail=f"scene at position {idx + 1} has an invalid sceneNumber")
        if scene_number < 1:
            raise HTTPException(
                status_code=422,
                detail=f"scene at position {idx + 1} has sceneNumber {scene_number}; numbers start at 1",
            )
        if scene_number in seen:
            raise HTTPException(status_code=422, detail=f"duplicate sceneNumber {scene_number}")
        seen.add(scene_number)
        scene["sceneNumber"] = scene_number
        scene["text"] = str(scene.get("text") or "")
        normalized.append(scene)
    return normalized


def build_full_script(scenes: Sequence[Dict[str, Any]]) -> str:
    ordered = sorted(scenes, key=lambda s: int(s.get("sceneNumber") or 0))
    return "\n\n".join(str(s.get("text") or "").strip() for s in ordered).strip()


def scenes_content_key(scenes: Sequence[Dict[str, Any]]) -> List[tuple]:
    """Comparable (sceneNumber, text) pairs; extra scene keys do not count."""
    return sorted((int(s.get("sceneNumber") or 0), str(s.get("text") or "").strip()) for s in scenes)


def calculate_scene_diff(
    old_scenes: Sequence[Dict[str, Any]],
    new_scenes: Sequence[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Per-scene before/after pairs matched by ``sceneNumber`` equality."""
    old_by_number = {int(s.get("sceneNumber") or 0): str(s.get("text") or "") for s in old_scenes}
    new_by_number = {int(s.get("sceneNumber") or 0): str(s.get("text") or "") for s in new_scenes}
    diffs: List[Dict[str, Any]] = []
    for number in sorted(set(old_by_number) | set(new_by_number)):
        before = old_by_number.get(number, "")
        after = new_by_number.get(number, "")
        if before != after:
            diffs.append({"sceneNumber": number, "before": before, "after": after})
    return diffs


def serialize_version(row: ScriptVersion) -> Dict[str, Any]:
    return {
        "id": row.id,
        "projectId": row.project_id,
        "versionNumber": row.version_number,
        "scenes": row.scenes or [],
        "fullScript": row.full_script,
        "isCurrent": bool(row.is_current),
        "isCandidate": bool(row.is_candidate),
        "parentVersionId": row.parent_version_id,
        "baseVersionId": row.base_version_id,
        "createdBy": row.created_by,
        "changeSummary": row.change_summary,
        "provenance": row.provenance,
        "diff": row.diff or [],
        "analysisResult": row.analysis_result,
        "analysisScore": row.analysis_score,
        "metrics": row.metrics,
        "review": row.review,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
    }


async def get_project(db: AsyncSession, project_id: str) -> Project:
    result = await db.execute(select(Project).where(Project.id == project_id))
    project = result.scalar_one_or_none()
    if project is None:
        raise ProjectNotFoundError()
    return project


async def ensure_project(db: AsyncSession, project_id: str, content_type: Optional[str] = None) -> Project:
    """Create the project row on first write, mirroring user bootstrap on upload."""
    result = await db.execute(select(Project).where(Project.id == project_id))
    project = result.scalar_one_or_none()
    if project:
        return project
    kind = str(content_type or "custom").strip().lower()
    project = Project(id=project_id, content_type=kind if kind in ALLOWED_CONTENT_TYPES else "custom")
    db.add(project)
    await db.flush()
    return project


async def get_current_version(db: AsyncSession, project_id: str) -> Optional[ScriptVersion]:
    result = await db.execute(
        select(ScriptVersion).where(
            ScriptVersion.project_id == project_id,
            ScriptVersion.is_current.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def get_candidate_version(db: AsyncSession, project_id: str) -> Optional[ScriptVersion]:
    result = await db.execute(
        select(ScriptVersion).where(
            ScriptVersion.project_id == project_id,
            ScriptVersion.is_candidate.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def get_version_in_project(db: AsyncSession, project_id: str, version_id: str) -> Optional[ScriptVersion]:
    result = await db.execute(
        select(ScriptVersion).where(
            ScriptVersion.id == version_id,
            ScriptVersion.project_id == project_id,
        )
    )
    return result.scalar_one_or_none()


async def list_project_versions(db: AsyncSession, project_id: str) -> List[ScriptVersion]:
    result = await db.execute(
        select(ScriptVersion)
        .where(ScriptVersion.project_id == project_id)
        .order_by(ScriptVersion.version_number.desc())
    )
    return list(result.scalars().all())


async def _next_version_number(db: AsyncSession, project_id: str) -> int:
    result = await db.execute(
        select(func.coalesce(func.max(ScriptVersion.version_number), 0)).where(
            ScriptVersion.project_id == project_id
        )
    )
    return int(result.scalar_one() or 0) + 1


async def _delete_version_rows(db: AsyncSession, version_id: str) -> None:
    await db.execute(delete(SceneRecommendation).where(SceneRecommendation.script_version_id == version_id))
    await db.execute(delete(ScriptVersion).where(ScriptVersion.id == version_id))


async def create_version(
    db: AsyncSession,
    *,
    project_id: str,
    scenes: List[Dict[str, Any]],
    created_by: str,
    change_summary: Optional[Dict[str, Any]] = None,
    provenance: Optional[Dict[str, Any]] = None,
    parent_version_id: Optional[str] = None,
    make_current: bool = False,
    make_candidate: bool = False,
    supersede_candidate: bool = False,
    base_version_id: Optional[str] = None,
    analysis_result: Optional[Dict[str, Any]] = None,
    analysis_score: Optional[int] = None,
    carry_forward_exclude: Sequence[str] = (),
) -> ScriptVersion:
    """Insert the next version inside the caller's transaction.

    The caller commits. With ``make_current`` the prior current version is
    demoted and its unapplied recommendations are copied onto the new row.
    With ``make_candidate`` an existing candidate is a conflict unless
    ``supersede_candidate`` is set, in which case it is deleted first.
    """
    if make_current == make_candidate:
        raise ValueError("create_version needs exactly one of make_current or make_candidate")
    if created_by not in ALLOWED_CREATORS:
        raise ValueError(f"created_by must be one of {sorted(ALLOWED_CREATORS)}")

    snapshot = normalize_scenes(scenes)

    if make_candidate:
        existing = await get_candidate_version(db, project_id)
        if existing is not None:
            if not supersede_candidate:
                raise CandidateAlreadyExistsError()
            logger.info("Superseding candidate %s for project %s", existing.id, project_id)
            await _delete_version_rows(db, existing.id)
            await db.flush()

    version_number = await _next_version_number(db, project_id)

    prior_current: Optional[ScriptVersion] = None
    if make_current:
        prior_current = await get_current_version(db, project_id)

    parent: Optional[ScriptVersion] = None
    if parent_version_id:
        parent = await get_version_in_project(db, project_id, parent_version_id)
        if parent is None:
            raise ScriptVersionNotFoundError()
    elif prior_current is not None:
        parent = prior_current

    final_provenance = dict(provenance or {})
    final_provenance.setdefault("source", (change_summary or {}).get("type", "unknown"))
    final_provenance.setdefault("ts", _utc_now_iso())

    if prior_current is not None:
        prior_current.is_current = False
        # The demotion must reach the database before the insert or the
        # one-current index rejects the new row.
        await db.flush()

    version = ScriptVersion(
        project_id=project_id,
        version_number=version_number,
        created_by=created_by,
        scenes=snapshot,
        full_script=build_full_script(snapshot),
        change_summary=change_summary,
        provenance=final_provenance,
        diff=calculate_scene_diff(parent.scenes or [], snapshot) if parent is not None else [],
        analysis_result=analysis_result,
        analysis_score=analysis_score,
        is_current=make_current,
        is_candidate=make_candidate,
        parent_version_id=parent.id if parent is not None else None,
        base_version_id=base_version_id,
    )
    db.add(version)
    await db.flush()

    if prior_current is not None:
        carried = await copy_unapplied_to(db, version.id, prior_current.id, exclude_ids=carry_forward_exclude)
        if carried:
            logger.debug("Carried %s recommendations from %s to %s", len(carried), prior_current.id, version.id)

    return version


async def commit_or_conflict(db: AsyncSession) -> None:
    """Commit, turning store-level invariant violations into a typed conflict."""
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        logger.warning("Version write rejected by store constraints: %s", exc.orig)
        raise ConcurrentVersionWriteError() from exc


async def _history_payload(db: AsyncSession, project_id: str) -> Dict[str, Any]:
    versions = await list_project_versions(db, project_id)
    current = next((v for v in versions if v.is_current), None)
    candidate = next((v for v in versions if v.is_candidate), None)
    recommendations = await list_for_version(db, current.id) if current else []
    return {
        "currentVersion": serialize_version(current) if current else None,
        "candidateVersion": serialize_version(candidate) if candidate else None,
        "versions": [serialize_version(v) for v in versions],
        "recommendations": [serialize_recommendation(r) for r in recommendations],
        "hasUnappliedRecommendations": any(r.applied_at is None for r in recommendations),
    }


async def get_script_history_service(project_id: str, db: AsyncSession) -> Dict[str, Any]:
    await get_project(db, project_id)
    return await _history_payload(db, project_id)


async def list_versions_service(project_id: str, db: AsyncSession) -> Dict[str, Any]:
    await get_project(db, project_id)
    versions = await list_project_versions(db, project_id)
    return {"versions": [serialize_version(v) for v in versions]}


async def get_version_service(project_id: str, version_id: str, db: AsyncSession) -> Dict[str, Any]:
    await get_project(db, project_id)
    version = await get_version_in_project(db, project_id, version_id)
    if version is None:
        raise ScriptVersionNotFoundError()
    return {"version": serialize_version(version)}


async def create_initial_version_service(
    *,
    project_id: str,
    scenes: List[Dict[str, Any]],
    db: AsyncSession,
    analysis_result: Optional[Dict[str, Any]] = None,
    analysis_score: Optional[int] = None,
    content_type: Optional[str] = None,
) -> Dict[str, Any]:
    """Record a script as the project's current version.

    No-op when the current version or accepted history already holds the same
    scene content. A pending candidate never counts as a match.
    """
    snapshot = normalize_scenes(scenes)
    await ensure_project(db, project_id, content_type)

    wanted = scenes_content_key(snapshot)
    for existing in await list_project_versions(db, project_id):
        if existing.is_candidate:
            continue
        if scenes_content_key(existing.scenes or []) == wanted:
            return {
                "version": serialize_version(existing),
                "recommendationsCount": 0,
                "alreadyExists": True,
            }

    if analysis_score is None and isinstance(analysis_result, dict):
        raw_score = analysis_result.get("overallScore")
        analysis_score = int(raw_score) if isinstance(raw_score, (int, float)) else None

    current = await get_current_version(db, project_id)
    version = await create_version(
        db,
        project_id=project_id,
        scenes=snapshot,
        created_by="ai" if analysis_result else "human",
        change_summary={
            "type": "initial" if current is None else "import",
            "description": "Initial version from analysis" if analysis_result else "Initial version",
        },
        provenance={"source": "initial"},
        make_current=True,
        analysis_result=analysis_result,
        analysis_score=analysis_score,
    )
    rows = extract_recommendations_from_analysis(analysis_result, len(snapshot))
    add_recommendations(db, version.id, rows)
    await commit_or_conflict(db)
    await db.refresh(version)

    logger.info("Created version %s (v%s) for project %s", version.id, version.version_number, project_id)
    return {
        "version": serialize_version(version),
        "recommendationsCount": len(rows),
        "alreadyExists": False,
    }


async def accept_candidate_service(project_id: str, version_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Promote the candidate to current; the old current stays as history."""
    await get_project(db, project_id)
    target = await get_version_in_project(db, project_id, version_id)
    if target is None:
        raise ScriptVersionNotFoundError()
    if not target.is_candidate:
        raise CanOnlyAcceptCandidateVersionsError()

    prior_current = await get_current_version(db, project_id)
    if prior_current is not None:
        prior_current.is_current = False
        await db.flush()
    target.is_candidate = False
    target.is_current = True
    await commit_or_conflict(db)

    logger.info("Accepted candidate %s as current version of project %s", version_id, project_id)
    payload = await _history_payload(db, project_id)
    payload["message"] = "Version accepted successfully"
    return payload


async def reject_candidate_service(project_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Delete the project's candidate together with its recommendations."""
    await get_project(db, project_id)
    candidate = await get_candidate_version(db, project_id)
    if candidate is None:
        raise NoCandidateVersionError()
    candidate_id = candidate.id
    await _delete_version_rows(db, candidate_id)
    await commit_or_conflict(db)

    logger.info("Rejected candidate %s of project %s", candidate_id, project_id)
    payload = await _history_payload(db, project_id)
    payload["message"] = "Candidate version rejected"
    return payload


async def delete_version_service(project_id: str, version_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Reject a specific candidate. Current and accepted history are never deleted."""
    await get_project(db, project_id)
    target = await get_version_in_project(db, project_id, version_id)
    if target is None:
        raise ScriptVersionNotFoundError()
    if target.is_current:
        raise CannotDeleteCurrentVersionError()
    if not target.is_candidate:
        raise CannotDeleteHistoryVersionError()
    return await reject_candidate_service(project_id, db)


async def revert_to_version_service(project_id: str, version_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Extend history with a copy of an older snapshot; nothing is rewritten."""
    await get_project(db, project_id)
    target = await get_version_in_project(db, project_id, version_id)
    if target is None:
        raise RevertTargetNotFoundError()
    current = await get_current_version(db, project_id)
    if current is None:
        raise NoCurrentVersionError()

    version = await create_version(
        db,
        project_id=project_id,
        scenes=copy.deepcopy(target.scenes or []),
        created_by="human",
        change_summary={
            "type": "revert",
            "revertedFrom": current.id,
            "revertedToVersion": target.version_number,
        },
        provenance={"source": "revert", "revertedToVersion": target.version_number},
        parent_version_id=current.id,
        make_current=True,
        analysis_result=target.analysis_result,
        analysis_score=target.analysis_score,
    )
    await commit_or_conflict(db)
    await db.refresh(version)

    logger.info("Reverted project %s to v%s as v%s", project_id, target.version_number, version.version_number)
    return {
        "newVersion": serialize_version(version),
        "message": f"Reverted to version {target.version_number}",
    }


async def edit_scene_service(
    *,
    project_id: str,
    scene_number: int,
    text: str,
    db: AsyncSession,
) -> Dict[str, Any]:
    """Manual single-scene edit producing a new current version."""
    await get_project(db, project_id)
    current = await get_current_version(db, project_id)
    if current is None:
        raise NoCurrentVersionError()

    new_text = str(text or "").strip()
    if not new_text:
        raise HTTPException(status_code=422, detail="text must not be empty")

    scenes = copy.deepcopy(current.scenes or [])
    target = next((s for s in scenes if int(s.get("sceneNumber") or 0) == scene_number), None)
    if target is None:
        raise SceneNotFoundError(scene_number)
    before = target.get("text", "")
    target["text"] = new_text
    target["manuallyEdited"] = True
    target["lastModified"] = _utc_now_iso()

    version = await create_version(
        db,
        project_id=project_id,
        scenes=scenes,
        created_by="human",
        change_summary={
            "type": "manual_edit",
            "affectedScenes": [scene_number],
            "before": before,
            "after": new_text,
        },
        provenance={"source": "manual_edit"},
        parent_version_id=current.id,
        make_current=True,
        analysis_result=current.analysis_result,
        analysis_score=current.analysis_score,
    )
    await commit_or_conflict(db)
    await db.refresh(version)
    return {
        "newVersion": serialize_version(version),
        "affectedScene": {"sceneNumber": scene_number, "text": new_text},
        "needsReanalysis": True,
    }
