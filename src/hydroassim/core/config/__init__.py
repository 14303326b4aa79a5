# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Configuration models and loaders for HydroAssim.
"""

from .factories import (
    build_assimilation_config,
    config_to_flat,
    load_assimilation_config,
    transform_flat_to_nested,
)
from .models import (
    DataAssimilationConfig,
    LeastSquaresConfig,
    ObservationConfig,
    SolverConfig,
)

__all__ = [
    "DataAssimilationConfig",
    "LeastSquaresConfig",
    "ObservationConfig",
    "SolverConfig",
    "build_assimilation_config",
    "config_to_flat",
    "load_assimilation_config",
    "transform_flat_to_nested",
]
