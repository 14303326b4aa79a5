# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Distributed execution support: communicators and state aggregation.
"""

from .communicator import (
    Communicator,
    CoordinatorRole,
    MPICommunicator,
    SerialCommunicator,
    default_communicator,
)
from .aggregator import count_local_equations, gather_background_state, scatter_analysis

__all__ = [
    "Communicator",
    "CoordinatorRole",
    "MPICommunicator",
    "SerialCommunicator",
    "count_local_equations",
    "default_communicator",
    "gather_background_state",
    "scatter_analysis",
]
