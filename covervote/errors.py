"""Error types raised by the classification pipeline."""

from __future__ import annotations


class CoverVoteError(ValueError):
    """Base class for invalid pipeline inputs."""


class InsufficientSamples(CoverVoteError):
    """A class in the fixed class set has no usable training samples."""


class FeatureMismatch(CoverVoteError):
    """Requested bands are missing, or band counts disagree between stages."""


class ShapeMismatch(CoverVoteError):
    """Rasters combined in one operation do not share a grid shape."""


__all__ = [
    "CoverVoteError",
    "InsufficientSamples",
    "FeatureMismatch",
    "ShapeMismatch",
]
