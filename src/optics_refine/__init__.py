"""Optics Refine - beam tilt and odd aberration estimation for single-particle EM"""

__version__ = "0.1.0"

from .accumulator import TiltAccumulator
from .checkpoint import CheckpointStore, FileCheckpointStore, MemoryCheckpointStore
from .config import TiltEstimationConfig
from .correction_cache import CorrectionCache
from .estimator import TiltEstimator
from .fitter import AberrationFitter
from .registry import OpticsGroup, OpticsGroupError, OpticsGroupRegistry

__all__ = [
    "AberrationFitter",
    "CheckpointStore",
    "CorrectionCache",
    "FileCheckpointStore",
    "MemoryCheckpointStore",
    "OpticsGroup",
    "OpticsGroupError",
    "OpticsGroupRegistry",
    "TiltAccumulator",
    "TiltEstimationConfig",
    "TiltEstimator",
]
