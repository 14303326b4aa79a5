"""
Configuration models for HydroAssim.

All models are immutable (frozen=True) and accept either field names or
their upper-case aliases.
"""

from .assimilation_config import (
    DataAssimilationConfig,
    LeastSquaresConfig,
    ObservationConfig,
    SolverConfig,
)
from .base import FROZEN_CONFIG

__all__ = [
    "FROZEN_CONFIG",
    "DataAssimilationConfig",
    "LeastSquaresConfig",
    "ObservationConfig",
    "SolverConfig",
]
