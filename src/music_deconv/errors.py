# src/music_deconv/errors.py
from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error that aborts a music-deconv run."""


class InputError(PipelineError):
    """Missing/invalid file or directory, or a required library is unavailable."""


class MappingError(PipelineError):
    """Malformed or unusable transcript-to-gene mapping table."""


class ResolutionError(PipelineError):
    """BioMart lookup failed or none of the count-matrix genes resolved."""


class DeconvolutionError(PipelineError):
    """Raised by the MuSiC step (no usable gene overlap, numerical failure)."""


__all__ = [
    "PipelineError",
    "InputError",
    "MappingError",
    "ResolutionError",
    "DeconvolutionError",
]
