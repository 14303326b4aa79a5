# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Forward model interface for the least-squares analysis.

The forward model simulates the assimilation window from a full state
vector and samples discharge at the gauges: y_pred = q(x). Its
linearisation H = dq/dx, restricted to the reduced state, forms the
design matrix of the normal equations.
"""

from abc import ABC, abstractmethod
from typing import Sequence

import numpy as np

from hydroassim.core.exceptions import ValidationError


class ForwardModel(ABC):
    """Abstract base class for forward model engines.

    Implementations must be deterministic for a fixed input state.
    """

    @abstractmethod
    def predict_observations(self, state: np.ndarray) -> np.ndarray:
        """Simulate from ``state`` and sample at gauge locations/times.

        Args:
            state: Full state vector of shape (n_state,).

        Returns:
            Predicted observations of shape (n_total_obs,), ordered
            time-major like the observation vector.
        """
        ...

    @abstractmethod
    def current_state(self, node: int) -> np.ndarray:
        """Most recent simulated state of a locally owned node."""
        ...

    @abstractmethod
    def set_state(self, node: int, values: np.ndarray) -> None:
        """Overwrite the state of a locally owned node."""
        ...

    def observation_jacobian(
        self,
        state: np.ndarray,
        indices: Sequence[int],
        predicted: np.ndarray = None,
    ) -> np.ndarray:
        """Sensitivity of the predictions to selected state components.

        The default uses forward finite differences; engines with
        analytic sensitivities should override it.

        Args:
            state: Full state vector at which to linearise.
            indices: Full state indices (columns of the result).
            predicted: ``predict_observations(state)`` if already known.

        Returns:
            Matrix of shape (n_total_obs, len(indices)).
        """
        x = np.asarray(state, dtype=np.float64)
        q0 = self.predict_observations(x) if predicted is None else np.asarray(predicted)
        H = np.zeros((q0.shape[0], len(indices)))
        for col, idx in enumerate(indices):
            step = 1e-6 * max(1.0, abs(x[idx]))
            x_pert = x.copy()
            x_pert[idx] += step
            H[:, col] = (self.predict_observations(x_pert) - q0) / step
        return H


class LinearForwardModel(ForwardModel):
    """Forward model whose predictions are a fixed linear map: q = M x.

    Holds the simulated state of every node in memory. Useful as a
    reference engine and for twin experiments.

    Args:
        operator: Matrix M of shape (n_total_obs, n_state).
        state_dim: Components per node.
        initial_state: Initial full state (default: zeros).
    """

    def __init__(self, operator: np.ndarray, state_dim: int, initial_state: np.ndarray = None):
        self.operator = np.asarray(operator, dtype=np.float64)
        if self.operator.ndim != 2:
            raise ValidationError("Operator must be a 2-D matrix")
        n_state = self.operator.shape[1]
        if n_state % state_dim:
            raise ValidationError(
                f"Operator has {n_state} columns, not a multiple of state_dim={state_dim}"
            )
        self.state_dim = state_dim
        self.state = (
            np.zeros(n_state) if initial_state is None
            else np.array(initial_state, dtype=np.float64, copy=True)
        )
        if self.state.shape != (n_state,):
            raise ValidationError(f"Initial state must have shape ({n_state},)")
        self.n_evaluations = 0

    def predict_observations(self, state: np.ndarray) -> np.ndarray:
        self.n_evaluations += 1
        return self.operator @ np.asarray(state, dtype=np.float64)

    def current_state(self, node: int) -> np.ndarray:
        start = node * self.state_dim
        return self.state[start:start + self.state_dim].copy()

    def set_state(self, node: int, values: np.ndarray) -> None:
        start = node * self.state_dim
        self.state[start:start + self.state_dim] = values

    def observation_jacobian(self, state, indices, predicted=None) -> np.ndarray:
        return self.operator[:, np.asarray(indices, dtype=np.int64)]


def gauge_sampling_operator(
    gauge_nodes: Sequence[int],
    n_nodes: int,
    state_dim: int,
    num_steps: int,
    component: int = 0,
) -> np.ndarray:
    """Operator that reads ``component`` of every gauge at every step.

    The model is static over the window, so each step repeats the same
    sample. Rows are time-major: row ``step * n_gauges + g``.
    """
    n_gauges = len(gauge_nodes)
    M = np.zeros((num_steps * n_gauges, n_nodes * state_dim))
    for step in range(num_steps):
        for g, node in enumerate(gauge_nodes):
            M[step * n_gauges + g, node * state_dim + component] = 1.0
    return M
