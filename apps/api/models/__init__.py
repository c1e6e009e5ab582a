"""Models package."""

from .project import Project
from .script_version import ScriptVersion
from .scene_recommendation import SceneRecommendation
from .reanalysis_job import ReanalysisJob
