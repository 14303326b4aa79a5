# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Iterative weighted least-squares analysis.
"""

from .controller import AssimilationResult, ControllerState, IterativeRefinementController
from .forward_model import ForwardModel, LinearForwardModel, gauge_sampling_operator
from .network import RiverNetwork, TopologyProvider
from .outliers import find_bad_discharge_values, reduce_bad_discharge_values
from .solver import (
    ConjugateGradientBackend,
    DirectSolveBackend,
    LinearLeastSquaresSolver,
    LinearSolveBackend,
    create_backend,
)
from .state_layout import StateLayout, StateVariableSpec
from .topology import TopologyShift, build_topology_shift, find_needed_nodes
from .workspace import AssimilationWorkspace

__all__ = [
    "AssimilationResult",
    "AssimilationWorkspace",
    "ConjugateGradientBackend",
    "ControllerState",
    "DirectSolveBackend",
    "ForwardModel",
    "IterativeRefinementController",
    "LinearForwardModel",
    "LinearLeastSquaresSolver",
    "LinearSolveBackend",
    "RiverNetwork",
    "StateLayout",
    "StateVariableSpec",
    "TopologyProvider",
    "TopologyShift",
    "build_topology_shift",
    "create_backend",
    "find_bad_discharge_values",
    "find_needed_nodes",
    "gauge_sampling_operator",
    "reduce_bad_discharge_values",
]
