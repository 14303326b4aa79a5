# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Data assimilation for river networks.

Provides an iterative weighted least-squares analysis of the discharge
and storage state of a distributed river network model, constrained by
gauge observations over a time window.
"""

from .config import DataAssimilationConfig, LeastSquaresConfig, ObservationConfig, SolverConfig
from .da_manager import DataAssimilationManager

__all__ = [
    "DataAssimilationConfig",
    "DataAssimilationManager",
    "LeastSquaresConfig",
    "ObservationConfig",
    "SolverConfig",
]
