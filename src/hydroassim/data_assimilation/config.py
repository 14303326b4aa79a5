# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Data assimilation configuration.

Re-exports from the core config module for convenience.
"""

from hydroassim.core.config.models.assimilation_config import (
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
]
