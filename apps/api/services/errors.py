"""Typed service errors.

Every error is an ``HTTPException`` so services can raise them directly and
FastAPI renders the status code, the same way the rest of the services layer
raises ``HTTPException``. Callers that are not HTTP handlers (the reanalysis
runner, tests) can still catch the concrete classes.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException


class NotFoundError(HTTPException):
    """Project, version, recommendation, scene or job is missing."""

    def __init__(self, detail: str = "Not found"):
        super().__init__(status_code=404, detail=detail)


class ConflictError(HTTPException):
    """Request collides with an in-flight job or a store invariant."""

    def __init__(self, detail: str = "Conflict"):
        super().__init__(status_code=409, detail=detail)


class InvalidStateError(HTTPException):
    """Operation is not allowed for the target's current state."""

    def __init__(self, detail: str = "Invalid state"):
        super().__init__(status_code=400, detail=detail)


class UpstreamFailureError(HTTPException):
    """A scoring analyzer failed or timed out. Always retryable."""

    retryable = True

    def __init__(self, detail: str = "Scoring service failed"):
        super().__init__(status_code=502, detail=detail)


class ProjectNotFoundError(NotFoundError):
    def __init__(self):
        super().__init__("Project not found")


class ScriptVersionNotFoundError(NotFoundError):
    def __init__(self):
        super().__init__("Script version not found")


class NoCurrentVersionError(NotFoundError):
    def __init__(self):
        super().__init__("Project has no current script version")


class NoCandidateVersionError(NotFoundError):
    def __init__(self):
        super().__init__("Project has no candidate version")


class RecommendationNotFoundError(NotFoundError):
    def __init__(self):
        super().__init__("Recommendation not found on the current version")


class SceneNotFoundError(NotFoundError):
    def __init__(self, scene_number: int):
        super().__init__(f"Scene {scene_number} not found in the current version")
        self.scene_number = scene_number


class JobNotFoundError(NotFoundError):
    def __init__(self):
        super().__init__("Reanalysis job not found")


class CandidateAlreadyExistsError(ConflictError):
    def __init__(self):
        super().__init__("Project already has a candidate version")


class CanOnlyAcceptCandidateVersionsError(ConflictError):
    def __init__(self):
        super().__init__("Only candidate versions can be accepted")


class RecommendationAlreadyAppliedError(ConflictError):
    def __init__(self):
        super().__init__("Recommendation was already applied")


class ConcurrentVersionWriteError(ConflictError):
    def __init__(self):
        super().__init__("Another write changed this project's versions. Reload and retry.")


class ReanalysisAlreadyRunningError(ConflictError):
    """Carries the in-flight job so callers can resume polling it."""

    def __init__(self, job_id: str, status: str):
        super().__init__("Reanalysis already in progress")
        self.job_id = job_id
        self.job_status = status

    def payload(self) -> Dict[str, Any]:
        return {
            "error": self.detail,
            "jobId": self.job_id,
            "status": self.job_status,
        }


class CannotDeleteCurrentVersionError(InvalidStateError):
    def __init__(self):
        super().__init__("The current version cannot be deleted")


class CannotDeleteHistoryVersionError(InvalidStateError):
    def __init__(self):
        super().__init__("Accepted history is kept; only candidate versions can be deleted")


class RevertTargetNotFoundError(InvalidStateError):
    def __init__(self):
        super().__init__("Cannot revert to a version that does not exist in this project")


class JobNotRetryableError(InvalidStateError):
    def __init__(self, reason: Optional[str] = None):
        super().__init__(reason or "Reanalysis job cannot be retried")


class ScoringPipelineError(UpstreamFailureError):
    """Raised when any analyzer or the synthesizer fails; no partial result."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"Scoring failed at {stage}: {message}")
        self.stage = stage
