# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Core infrastructure for HydroAssim: exceptions, configuration, logging.
"""

from .exceptions import (
    AssimilationError,
    CommunicationError,
    ConfigurationError,
    DataAcquisitionError,
    HydroAssimError,
    LinearSolveError,
    NonConvergentSolveError,
    RetryableObservationError,
    RetryExhaustedError,
    SingularSystemError,
    ValidationError,
)
from .logging import configure_logging

__all__ = [
    "AssimilationError",
    "CommunicationError",
    "ConfigurationError",
    "DataAcquisitionError",
    "HydroAssimError",
    "LinearSolveError",
    "NonConvergentSolveError",
    "RetryableObservationError",
    "RetryExhaustedError",
    "SingularSystemError",
    "ValidationError",
    "configure_logging",
]
