from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass(slots=True, frozen=True)
class GeometryContext:
    r"""
    Opaque per-event geometry context.

    The vertexing code never inspects it; it is forwarded to the collaborators
    (impact-point estimator, linearizer) so that alignment-dependent
    implementations can be swapped in without touching the finder.

    Attributes
    ----------
    tag : str
        Free-form label, e.g. the event name, used only in log messages.
    extra : dict
        Anything an alternative collaborator needs.
    """
    tag: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class MagneticFieldContext:
    r"""
    Constant solenoidal field :math:`\vec B = (0, 0, B_z)`.

    Attributes
    ----------
    bz : float
        Field strength in Tesla. ``0`` gives straight-line tracks.
    """
    bz: float = 2.0
