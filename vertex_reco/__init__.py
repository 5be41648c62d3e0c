__all__ = [
    "BoundTrackParameters", "identity_extractor",
    "GeometryContext", "MagneticFieldContext",
    "Vertex", "TrackAtVertex", "VertexInfo", "VertexingOptions", "FitterState",
    "ImpactPointEstimator", "ImpactParametersAndSigma",
    "HelicalTrackLinearizer", "LinearizedTrack",
    "AdaptiveMultiVertexFitter", "FitterConfig", "AnnealingTool", "fit_single_vertex",
    "ZScanSeedFinder", "TrackDensitySeedFinder", "SeedFinderConfig", "SeedFinderState",
    "make_seed_finder",
    "AdaptiveMultiVertexFinder", "FinderConfig",
    "VertexingConfig", "OptionsConfig", "load_config", "build_finder",
    "load_tracks", "tracks_to_frame", "tracks_from_frame",
    "vertices_to_frame", "tracks_at_vertex_to_frame", "save_frame",
    "generate_event", "make_track",
    "compute_metrics", "match_vertices", "assignment_purity",
    "VertexingError", "EmptyInputError", "SeedFinderError",
    "VertexFitError", "ImpactParameterError",
]

# Track and vertex model
from .track_params import BoundTrackParameters, identity_extractor
from .context import GeometryContext, MagneticFieldContext
from .vertex import Vertex, TrackAtVertex, VertexInfo, VertexingOptions, FitterState

# Collaborators
from .impact_point import ImpactPointEstimator, ImpactParametersAndSigma
from .linearizer import HelicalTrackLinearizer, LinearizedTrack
from .fitter import AdaptiveMultiVertexFitter, FitterConfig, AnnealingTool, fit_single_vertex
from .seed_finder import (
    ZScanSeedFinder,
    TrackDensitySeedFinder,
    SeedFinderConfig,
    SeedFinderState,
    make_seed_finder,
)

# Finder
from .vertex_finder import AdaptiveMultiVertexFinder, FinderConfig

# Config
from .config import VertexingConfig, OptionsConfig, load_config, build_finder

# I/O and toy events
from .data import (
    load_tracks,
    tracks_to_frame,
    tracks_from_frame,
    vertices_to_frame,
    tracks_at_vertex_to_frame,
    save_frame,
)
from .utils import generate_event, make_track

# Metrics
from .metrics import compute_metrics, match_vertices, assignment_purity

# Errors
from .errors import (
    VertexingError,
    EmptyInputError,
    SeedFinderError,
    VertexFitError,
    ImpactParameterError,
)
