from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, MutableMapping, Type, TypeVar

import numpy as np
import orjson

from vertex_reco.context import GeometryContext, MagneticFieldContext
from vertex_reco.fitter import AdaptiveMultiVertexFitter, FitterConfig
from vertex_reco.impact_point import ImpactPointEstimator
from vertex_reco.linearizer import HelicalTrackLinearizer
from vertex_reco.seed_finder import SeedFinderConfig, make_seed_finder
from vertex_reco.vertex import Vertex, VertexingOptions
from vertex_reco.vertex_finder import AdaptiveMultiVertexFinder, FinderConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


def load_config(config_path: Path) -> MutableMapping[str, dict]:
    r"""
    Load a JSON configuration with :mod:`orjson`.

    Parameters
    ----------
    config_path : pathlib.Path
        Path to the JSON file.

    Returns
    -------
    dict
        Parsed configuration.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the file cannot be parsed or is not a JSON object.
    """
    config_path = Path(config_path)
    if not config_path.is_file():
        raise FileNotFoundError(f"config file {config_path} not found")
    try:
        cfg = orjson.loads(config_path.read_bytes())
    except orjson.JSONDecodeError as e:
        raise ValueError(f"Failed to parse {config_path}: {e}") from e
    if not isinstance(cfg, dict):
        raise ValueError(f"{config_path}: top level must be a JSON object")
    return cfg


def from_mapping(cls: Type[T], block: Mapping[str, Any] | None, *, name: str) -> T:
    r"""
    Build the dataclass ``cls`` from a configuration block.

    Missing keys keep their defaults. Lists are converted to tuples where the
    default is a tuple.

    Raises
    ------
    ValueError
        On keys that are not fields of ``cls``.
    """
    block = dict(block or {})
    fields = {f.name: f for f in dataclasses.fields(cls)}
    unknown = sorted(set(block) - set(fields))
    if unknown:
        raise ValueError(f"unknown keys in '{name}': {', '.join(unknown)}")
    kwargs = {}
    for key, value in block.items():
        f = fields[key]
        if f.default is not dataclasses.MISSING and isinstance(f.default, tuple):
            value = tuple(value)
        kwargs[key] = value
    return cls(**kwargs)


@dataclass(slots=True)
class OptionsConfig:
    r"""
    Event-level options: field and beam-spot constraint.

    Attributes
    ----------
    bz : float
        Solenoid field in Tesla.
    constraint_position : list of float
        :math:`(x, y, z, t)` of the beam-spot constraint.
    constraint_sigma : list of float
        Per-coordinate widths; the covariance is diagonal.
    use_constraint_in_fit : bool
    """
    bz: float = 2.0
    constraint_position: List[float] = field(default_factory=lambda: [0.0, 0.0, 0.0, 0.0])
    constraint_sigma: List[float] = field(default_factory=lambda: [0.1, 0.1, 100.0, 10.0])
    use_constraint_in_fit: bool = True

    def make_options(self, tag: str = "") -> VertexingOptions:
        if len(self.constraint_position) != 4 or len(self.constraint_sigma) != 4:
            raise ValueError("constraint_position and constraint_sigma need 4 entries (x, y, z, t)")
        sigma = np.asarray(self.constraint_sigma, dtype=np.float64)
        constraint = Vertex(np.asarray(self.constraint_position, dtype=np.float64), np.diag(sigma ** 2))
        return VertexingOptions(
            geo_context=GeometryContext(tag=tag),
            mag_context=MagneticFieldContext(bz=float(self.bz)),
            constraint=constraint,
            use_constraint_in_fit=bool(self.use_constraint_in_fit),
        )


@dataclass(slots=True)
class VertexingConfig:
    """All configuration blocks of one run."""
    finder: FinderConfig = field(default_factory=FinderConfig)
    fitter: FitterConfig = field(default_factory=FitterConfig)
    seed_finder: SeedFinderConfig = field(default_factory=SeedFinderConfig)
    options: OptionsConfig = field(default_factory=OptionsConfig)

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, Any]) -> "VertexingConfig":
        r"""
        Parse the blocks ``finder_config``, ``fitter_config``,
        ``seed_finder_config`` and ``options``.

        Unknown top-level blocks are ignored with a warning; unknown keys
        inside a block are an error.
        """
        known = ("finder_config", "fitter_config", "seed_finder_config", "options")
        for key in cfg:
            if key not in known:
                logger.warning("Ignoring unknown config block '%s'", key)
        out = cls(
            finder=from_mapping(FinderConfig, cfg.get("finder_config"), name="finder_config"),
            fitter=from_mapping(FitterConfig, cfg.get("fitter_config"), name="fitter_config"),
            seed_finder=from_mapping(SeedFinderConfig, cfg.get("seed_finder_config"), name="seed_finder_config"),
            options=from_mapping(OptionsConfig, cfg.get("options"), name="options"),
        )
        if out.finder.use_time != out.fitter.use_time:
            logger.warning(
                "finder use_time=%s differs from fitter use_time=%s",
                out.finder.use_time, out.fitter.use_time,
            )
        return out


def build_finder(config: VertexingConfig) -> AdaptiveMultiVertexFinder:
    r"""
    Wire the default collaborators into an :class:`AdaptiveMultiVertexFinder`.

    One :class:`ImpactPointEstimator` instance is shared by the seed
    finder, the fitter and the finder.
    """
    ip = ImpactPointEstimator()
    return AdaptiveMultiVertexFinder(
        config=config.finder,
        fitter=AdaptiveMultiVertexFitter(config.fitter, ip),
        seed_finder=make_seed_finder(config.seed_finder, ip),
        ip_estimator=ip,
        linearizer=HelicalTrackLinearizer(),
    )
