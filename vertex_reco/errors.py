r"""
Exception hierarchy for vertex finding and fitting.

Every failure raised by the package derives from :class:`VertexingError`, so
callers that do not care about the specific cause can catch a single type.
A raised exception aborts the whole finder call; no partial vertex list is
returned.
"""

from __future__ import annotations


class VertexingError(RuntimeError):
    """Base class for all vertexing failures."""


class EmptyInputError(VertexingError, ValueError):
    """No tracks were given to the finder (or a vertex without tracks to the fitter)."""


class SeedFinderError(VertexingError):
    """The seed finder could not produce a seed from its input."""


class VertexFitError(VertexingError):
    """The multi-vertex fit failed (singular normal matrix, non-finite state)."""


class ImpactParameterError(VertexingError):
    """Impact parameters of a track w.r.t. a vertex could not be computed."""
