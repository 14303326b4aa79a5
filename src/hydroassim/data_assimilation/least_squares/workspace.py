# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Assimilation workspace.

Buffers of one assimilation cycle: the reduced-space design matrix,
diagonal weights, normal matrix, right-hand side and solution, plus the
background state and observations. The workspace is allocated once per
cycle, reused across iterations, and released at the end of the cycle.
The linear-system buffers exist on the coordinator only.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from hydroassim.core.exceptions import AssimilationError, ConfigurationError, ValidationError
from .network import RiverNetwork
from .state_layout import StateLayout
from .topology import TopologyShift

logger = logging.getLogger(__name__)

# Upstream areas are in km²; weights use 1 / (area * 1e3)
AREA_SCALE = 1e3
OBSERVATION_AREA_FACTOR = 10.0


@dataclass
class AssimilationWorkspace:
    """Mutable state of one assimilation cycle.

    Attributes:
        shift: Full <-> reduced index maps.
        background: Full background state x_b (read-only).
        observations: Flattened observation vector d (time-major); outlier
            mitigation may overwrite entries.
        num_gauges: Number of gauges.
        num_steps: Number of observation steps.
        B: Prior weights, shape (reduced_dim,) [coordinator only].
        R: Observation weights, shape (n_obs,) [coordinator only].
        HM: Design matrix, shape (n_obs, reduced_dim) [coordinator only].
        normal_matrix: H^T R H + B, shape (reduced_dim, reduced_dim) [coordinator only].
        rhs: Right-hand side, shape (reduced_dim,) [coordinator only].
        solution: Reduced solution buffer [coordinator only].
    """
    shift: TopologyShift
    background: np.ndarray
    observations: np.ndarray
    num_gauges: int
    num_steps: int
    B: Optional[np.ndarray] = None
    R: Optional[np.ndarray] = None
    HM: Optional[np.ndarray] = None
    normal_matrix: Optional[np.ndarray] = None
    rhs: Optional[np.ndarray] = None
    solution: Optional[np.ndarray] = None
    released: bool = False

    @classmethod
    def allocate(
        cls,
        shift: TopologyShift,
        background: np.ndarray,
        observations: np.ndarray,
        num_gauges: int,
        prior_weights: Optional[np.ndarray] = None,
        observation_weights: Optional[np.ndarray] = None,
        coordinator: bool = True,
    ) -> 'AssimilationWorkspace':
        """Allocate the workspace of a cycle.

        Args:
            shift: Topology shift of the cycle.
            background: Full background state.
            observations: Flattened observations (length num_gauges * num_steps).
            num_gauges: Number of gauges.
            prior_weights: B diagonal (default: ones).
            observation_weights: R diagonal (default: ones).
            coordinator: Whether this worker assembles and solves the system.

        Raises:
            AssimilationError: If the reduced problem is empty.
            ValidationError: If array sizes are inconsistent.
        """
        if shift.reduced_dim == 0:
            raise AssimilationError("Reduced state is empty; nothing to assimilate")

        background = np.array(background, dtype=np.float64, copy=True)
        background.setflags(write=False)
        if background.shape != (shift.full_dim,):
            raise ValidationError(
                f"Background has shape {background.shape}, expected ({shift.full_dim},)"
            )

        d = np.array(observations, dtype=np.float64, copy=True).ravel()
        if num_gauges <= 0 or d.shape[0] % num_gauges:
            raise ValidationError(
                f"{d.shape[0]} observations cannot be split over {num_gauges} gauges"
            )
        num_steps = d.shape[0] // num_gauges

        ws = cls(
            shift=shift,
            background=background,
            observations=d,
            num_gauges=num_gauges,
            num_steps=num_steps,
        )
        if coordinator:
            n, m = shift.reduced_dim, d.shape[0]
            ws.B = _checked_weights(prior_weights, n, 'prior')
            ws.R = _checked_weights(observation_weights, m, 'observation')
            ws.HM = np.zeros((m, n))
            ws.normal_matrix = np.zeros((n, n))
            ws.rhs = np.zeros(n)
            ws.solution = np.zeros(n)
        return ws

    @property
    def reduced_dim(self) -> int:
        return self.shift.reduced_dim

    @property
    def full_dim(self) -> int:
        return self.shift.full_dim

    @property
    def n_obs(self) -> int:
        return int(self.observations.shape[0])

    @property
    def has_system(self) -> bool:
        return self.normal_matrix is not None

    def background_reduced(self) -> np.ndarray:
        return self.shift.restrict(self.background)

    def release(self) -> None:
        """Drop the linear-system buffers at the end of the cycle."""
        self.B = self.R = self.HM = None
        self.normal_matrix = self.rhs = self.solution = None
        self.released = True


def _checked_weights(weights: Optional[np.ndarray], size: int, name: str) -> np.ndarray:
    if weights is None:
        return np.ones(size)
    w = np.asarray(weights, dtype=np.float64).ravel()
    if w.shape != (size,):
        raise ValidationError(f"{name} weights have shape {w.shape}, expected ({size},)")
    if np.any(~np.isfinite(w)) or np.any(w <= 0.0):
        raise ValidationError(f"{name} weights must be finite and positive")
    return w.copy()


def _require_areas(network: RiverNetwork) -> np.ndarray:
    if network.upstream_areas is None:
        raise ConfigurationError("Area-normalised weighting needs upstream areas on the network")
    areas = network.upstream_areas
    if np.any(areas <= 0.0):
        raise ConfigurationError("Upstream areas must be positive for area-normalised weighting")
    return areas


def build_prior_weights(
    shift: TopologyShift,
    layout: StateLayout,
    network: Optional[RiverNetwork] = None,
    mode: str = 'uniform',
    prior_weight: float = 1.0,
) -> np.ndarray:
    """Diagonal of B over the reduced state.

    ``uniform`` gives every component ``prior_weight``; ``upstream_area``
    divides it by the owning node's upstream area (×1e3).
    """
    if mode == 'uniform':
        return np.full(shift.reduced_dim, float(prior_weight))
    if mode == 'upstream_area':
        areas = _require_areas(network)
        nodes = shift.inverse // layout.state_dim
        return prior_weight / (areas[nodes] * AREA_SCALE)
    raise ConfigurationError(f"Unknown weighting mode {mode!r}")


def build_observation_weights(
    gauge_nodes: Sequence[int],
    num_steps: int,
    network: Optional[RiverNetwork] = None,
    mode: str = 'uniform',
    observation_weight: float = 1.0,
) -> np.ndarray:
    """Diagonal of R over the time-major observation vector.

    ``upstream_area`` weighs gauge ``g`` by ``10 / (area_g * 1e3)``.
    """
    n_gauges = len(gauge_nodes)
    if mode == 'uniform':
        return np.full(n_gauges * num_steps, float(observation_weight))
    if mode == 'upstream_area':
        areas = _require_areas(network)
        per_gauge = OBSERVATION_AREA_FACTOR / (areas[np.asarray(gauge_nodes)] * AREA_SCALE)
        return observation_weight * np.tile(per_gauge, num_steps)
    raise ConfigurationError(f"Unknown weighting mode {mode!r}")
