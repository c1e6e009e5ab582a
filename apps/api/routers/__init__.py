"""Routers package."""

from . import (
    health,
    reanalysis,
    recommendations,
    versions,
)
