"""Failure taxonomy shared by the covariate and validation stages.

Recoverable failures (empty neighborhood, join miss, missing response) are
caught at the per-row boundary and counted in the stage reports; the rest
propagate.
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for pipeline failures."""


class InvalidCoordinate(PipelineError, ValueError):
    """Latitude/longitude missing or outside the WGS84 range."""


class ProjectionError(PipelineError, ValueError):
    """Target projection cannot be resolved or a raster has no CRS."""


class EmptyNeighborhood(PipelineError):
    """No valid raster cell intersects a neighborhood."""


class JoinMiss(PipelineError):
    """Observation row without a matching covariate row."""


class DuplicateCoordinateError(PipelineError, ValueError):
    """Autocorrelation test attempted on repeated coordinates."""


class MissingResponseValue(PipelineError):
    """Observation row whose count is missing or unreported."""
