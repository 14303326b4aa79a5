# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Weighted linear least-squares analysis on the reduced state.

Minimises

    J(x) = ||R^{1/2} (H x - d')||² + ||B^{1/2} (x - x_b)||²

over the reduced state by solving the normal equations

    (H^T R H + B) x = H^T R d' + B x_b

where B and R are diagonal weights and d' = d - q(x_t) + H x_t is the
observation vector linearised about the current trial state x_t (d' = d
when the forward model is linear). B is strictly positive, so the normal
matrix is symmetric positive definite even when H is rank deficient.

References:
    Lewis, J.M., Lakshmivarahan, S. & Dhall, S. (2006). Dynamic Data
    Assimilation: A Least Squares Approach. Cambridge University Press.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np

from hydroassim.core.config.models.assimilation_config import SolverConfig
from hydroassim.core.exceptions import (
    AssimilationError,
    ConfigurationError,
    LinearSolveError,
    NonConvergentSolveError,
    SingularSystemError,
    ValidationError,
    require,
)
from .workspace import AssimilationWorkspace

logger = logging.getLogger(__name__)


class LinearSolveBackend(ABC):
    """Abstract linear-solve capability: x = A^{-1} b."""

    name = 'abstract'

    @abstractmethod
    def solve(self, A: np.ndarray, b: np.ndarray) -> np.ndarray:
        """Solve A x = b.

        Raises:
            SingularSystemError: If A cannot be factorised.
            NonConvergentSolveError: If an iterative method stalls.
        """
        ...


class DirectSolveBackend(LinearSolveBackend):
    """LU solve through ``numpy.linalg.solve``."""

    name = 'direct'

    def solve(self, A: np.ndarray, b: np.ndarray) -> np.ndarray:
        try:
            x = np.linalg.solve(A, b)
        except np.linalg.LinAlgError as e:
            raise SingularSystemError(f"Normal matrix is singular: {e}") from e
        if not np.all(np.isfinite(x)):
            raise SingularSystemError("Normal matrix is numerically singular (non-finite solution)")
        return x


class ConjugateGradientBackend(LinearSolveBackend):
    """Conjugate gradient solve through ``scipy.sparse.linalg.cg``.

    Args:
        rtol: Relative residual tolerance.
        maxiter: Iteration cap (None = scipy default, 10 * n).
    """

    name = 'cg'

    def __init__(self, rtol: float = 1e-10, maxiter: Optional[int] = None):
        self.rtol = rtol
        self.maxiter = maxiter

    def solve(self, A: np.ndarray, b: np.ndarray) -> np.ndarray:
        from scipy.sparse.linalg import cg

        x, info = cg(A, b, rtol=self.rtol, atol=0.0, maxiter=self.maxiter)
        if info > 0:
            raise NonConvergentSolveError(
                f"Conjugate gradient did not converge in {info} iterations", iterations=info
            )
        if info < 0:
            raise LinearSolveError(f"Conjugate gradient breakdown (info={info})")
        return x


def create_backend(config: Optional[SolverConfig] = None) -> LinearSolveBackend:
    """Build the linear-solve backend named in the solver configuration."""
    config = config or SolverConfig()
    if config.backend == 'direct':
        return DirectSolveBackend()
    if config.backend == 'cg':
        return ConjugateGradientBackend(rtol=config.rtol, maxiter=config.max_krylov_iters)
    raise ConfigurationError(f"Unknown solver backend {config.backend!r}")


class LinearLeastSquaresSolver:
    """Assembles and solves the weighted normal equations.

    Only the coordinator calls this class; the workspace buffers it writes
    are allocated on the coordinator only.

    Args:
        backend: Linear-solve backend (default: DirectSolveBackend).
    """

    def __init__(self, backend: Optional[LinearSolveBackend] = None):
        self.backend = backend or DirectSolveBackend()

    def assemble(
        self,
        ws: AssimilationWorkspace,
        trial_state: np.ndarray,
        predicted: np.ndarray,
        jacobian: np.ndarray,
    ) -> None:
        """Fill the design matrix, normal matrix and right-hand side.

        Args:
            ws: Workspace of the cycle.
            trial_state: Full state at which the model was linearised.
            predicted: q(trial_state), shape (n_obs,).
            jacobian: dq/dx over the reduced columns, shape (n_obs, reduced_dim).
        """
        require(ws.has_system, "Workspace has no linear-system buffers on this worker",
                AssimilationError)
        n, m = ws.reduced_dim, ws.n_obs
        jacobian = np.asarray(jacobian, dtype=np.float64)
        if jacobian.shape != (m, n):
            raise ValidationError(f"Jacobian has shape {jacobian.shape}, expected ({m}, {n})")
        predicted = np.asarray(predicted, dtype=np.float64)
        if predicted.shape != (m,):
            raise ValidationError(f"Predictions have shape {predicted.shape}, expected ({m},)")

        x_t = ws.shift.restrict(trial_state)
        x_b = ws.background_reduced()

        ws.HM[:] = jacobian
        d_lin = ws.observations - predicted + ws.HM @ x_t

        HtR = ws.HM.T * ws.R  # (n, m)
        ws.normal_matrix[:] = HtR @ ws.HM
        ws.normal_matrix[np.diag_indices(n)] += ws.B
        ws.rhs[:] = HtR @ d_lin + ws.B * x_b

    def solve(self, ws: AssimilationWorkspace) -> np.ndarray:
        """Solve the assembled system; returns a copy of the reduced solution."""
        require(ws.has_system, "Workspace has no linear-system buffers on this worker",
                AssimilationError)
        ws.solution[:] = self.backend.solve(ws.normal_matrix, ws.rhs)
        return ws.solution.copy()

    def analyze(
        self,
        ws: AssimilationWorkspace,
        trial_state: np.ndarray,
        predicted: np.ndarray,
        jacobian: np.ndarray,
    ) -> np.ndarray:
        """Assemble and solve; returns the reduced-space analysis."""
        self.assemble(ws, trial_state, predicted, jacobian)
        return self.solve(ws)
