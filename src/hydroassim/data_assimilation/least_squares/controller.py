# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Iterative refinement of the least-squares analysis.

Each pass repeats: evaluate the forward model at the trial state, compare
the squared error with the previous iteration, and either roll back and
stop (error grew) or accept, solve the linearised system and apply the
clipped update. After a pass, observations that disagree strongly with the
model are replaced and exactly one further pass is run.

State machine::

    INIT -> ITERATE -> {ACCEPT, ROLLBACK_AND_STOP}
         -> MITIGATE_AND_RETRY -> ITERATE (second pass) -> DONE
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np

from hydroassim.core.config.models.assimilation_config import LeastSquaresConfig
from hydroassim.core.exceptions import AssimilationError, ValidationError
from ..diagnostics import sum_squared_error
from ..parallel.communicator import CoordinatorRole, SerialCommunicator
from .forward_model import ForwardModel
from .outliers import reduce_bad_discharge_values
from .solver import LinearLeastSquaresSolver
from .state_layout import StateLayout
from .workspace import AssimilationWorkspace

logger = logging.getLogger(__name__)


class ControllerState(Enum):
    INIT = 'init'
    ITERATE = 'iterate'
    ACCEPT = 'accept'
    ROLLBACK_AND_STOP = 'rollback_and_stop'
    MITIGATE_AND_RETRY = 'mitigate_and_retry'
    DONE = 'done'


@dataclass
class PassSummary:
    """Outcome of one refinement pass.

    Attributes:
        iterations: Forward evaluations performed (including a rejected one).
        accepted: Iterations whose error was accepted.
        error: Squared error of the last accepted iteration.
        errors: Squared error of every evaluation, in order.
        rolled_back: Whether the pass ended because the error grew.
        converged: Whether the pass ended below the convergence tolerance.
    """
    iterations: int = 0
    accepted: int = 0
    error: float = float('nan')
    errors: List[float] = field(default_factory=list)
    rolled_back: bool = False
    converged: bool = False


@dataclass
class AssimilationResult:
    """Outcome of an assimilation cycle.

    Attributes:
        analysis: Final analysis state (full length).
        iterations: Forward evaluations over all passes.
        error: Squared error of the last accepted iteration.
        passes: Per-pass summaries (one, or two after mitigation).
        mitigated: Whether outlying observations were replaced.
        predicted: Predictions of the last evaluation.
        background_predicted: Predictions at the background state.
    """
    analysis: np.ndarray
    iterations: int
    error: float
    passes: List[PassSummary]
    mitigated: bool = False
    predicted: Optional[np.ndarray] = None
    background_predicted: Optional[np.ndarray] = None

    @property
    def pass_errors(self) -> List[float]:
        return [p.error for p in self.passes]


class IterativeRefinementController:
    """Drives the solve / evaluate / accept-or-rollback cycle.

    The controller owns the workspace for the duration of ``run``. The
    forward model is evaluated on every worker; the linear solve and the
    outlier check run on the coordinator and are shared with the others.

    Args:
        layout: State layout (constraint enforcer).
        solver: Least-squares solver (default: direct backend).
        max_iterations: Maximum accepted iterations per pass.
        convergence_tolerance: Stop a pass once the error is at or below this.
        outlier_limit: Discrepancy limit for outlier mitigation.
        gauge_scales: Per-gauge scale of ``outlier_limit`` (default: ones).
        role: Coordinator role (default: single serial worker).
    """

    def __init__(
        self,
        layout: StateLayout,
        solver: Optional[LinearLeastSquaresSolver] = None,
        max_iterations: int = 5,
        convergence_tolerance: float = 1e-10,
        outlier_limit: float = 1.0,
        gauge_scales: Optional[Sequence[float]] = None,
        role: Optional[CoordinatorRole] = None,
    ):
        if max_iterations < 1:
            raise ValidationError("max_iterations must be at least 1")
        self.layout = layout
        self.solver = solver or LinearLeastSquaresSolver()
        self.max_iterations = max_iterations
        self.convergence_tolerance = convergence_tolerance
        self.outlier_limit = outlier_limit
        self.gauge_scales = gauge_scales
        self.role = role or CoordinatorRole(SerialCommunicator())
        self.state = ControllerState.INIT
        self._background_predicted: Optional[np.ndarray] = None

    @classmethod
    def from_config(
        cls,
        layout: StateLayout,
        config: LeastSquaresConfig,
        solver: Optional[LinearLeastSquaresSolver] = None,
        role: Optional[CoordinatorRole] = None,
        gauge_scales: Optional[Sequence[float]] = None,
    ) -> 'IterativeRefinementController':
        return cls(
            layout,
            solver=solver,
            max_iterations=config.max_iterations,
            convergence_tolerance=config.convergence_tolerance,
            outlier_limit=config.outlier_limit,
            gauge_scales=gauge_scales,
            role=role,
        )

    def run(self, ws: AssimilationWorkspace, model: ForwardModel) -> AssimilationResult:
        """Compute the analysis for one cycle.

        Args:
            ws: Workspace of the cycle (observations may be modified by
                outlier mitigation).
            model: Forward model engine.

        Returns:
            AssimilationResult with the final analysis.
        """
        self.state = ControllerState.INIT
        trial = ws.background.copy()
        analysis = ws.background.copy()
        passes: List[PassSummary] = []
        mitigated = False
        self._background_predicted = None

        while True:
            self.state = ControllerState.ITERATE
            summary, trial, analysis, predicted = self._iterate(ws, model, trial, analysis)
            passes.append(summary)
            logger.info(
                f"Pass {len(passes)}: {summary.iterations} iterations, error {summary.error:.6g}"
            )

            if mitigated:
                break

            replaced, observations = self.role.run_and_share(
                self._mitigate, ws.observations.copy(), predicted, ws.num_gauges
            )
            if not replaced:
                break

            ws.observations[:] = observations
            mitigated = True
            self.state = ControllerState.MITIGATE_AND_RETRY
            logger.info("Outlying observations replaced; running one more pass")

        self.state = ControllerState.DONE
        total = sum(p.iterations for p in passes)
        logger.info(f"Total iterations = {total}")
        return AssimilationResult(
            analysis=analysis,
            iterations=total,
            error=passes[-1].error,
            passes=passes,
            mitigated=mitigated,
            predicted=predicted,
            background_predicted=self._background_predicted,
        )

    def _iterate(
        self,
        ws: AssimilationWorkspace,
        model: ForwardModel,
        trial: np.ndarray,
        analysis: np.ndarray,
    ) -> Tuple[PassSummary, np.ndarray, np.ndarray, np.ndarray]:
        """One refinement pass; returns (summary, trial, analysis, last predictions)."""
        summary = PassSummary()
        prev_error: Optional[float] = None
        predicted = None

        for _ in range(self.max_iterations):
            summary.iterations += 1
            predicted = np.asarray(model.predict_observations(trial), dtype=np.float64)
            if predicted.shape != ws.observations.shape:
                raise AssimilationError(
                    f"Forward model returned predictions of shape {predicted.shape}, "
                    f"expected ({ws.n_obs},)"
                )
            if self._background_predicted is None:
                self._background_predicted = predicted.copy()
            error = sum_squared_error(ws.observations, predicted)
            if not np.isfinite(error):
                raise AssimilationError("Forward model produced non-finite predictions")
            summary.errors.append(error)

            if prev_error is not None:
                if error > prev_error:
                    self.state = ControllerState.ROLLBACK_AND_STOP
                    logger.warning(
                        f"Least-squares error got worse ({error:.6g} vs {prev_error:.6g}); "
                        "keeping the previous analysis"
                    )
                    trial = analysis.copy()
                    summary.rolled_back = True
                    break
                logger.info(f"Difference is {prev_error - error:.6g} ({error:.6g} vs {prev_error:.6g})")

            self.state = ControllerState.ACCEPT
            prev_error = error
            summary.error = error
            summary.accepted += 1

            jacobian = model.observation_jacobian(trial, ws.shift.inverse, predicted=predicted)
            solution = self.role.run_and_share(
                self.solver.analyze, ws, trial, predicted, jacobian
            )
            trial = self.layout.enforce_bounds(ws.shift.scatter(solution, trial))
            analysis = trial.copy()

            if error <= self.convergence_tolerance:
                summary.converged = True
                break

        return summary, trial, analysis, predicted

    def _mitigate(
        self,
        observations: np.ndarray,
        predicted: np.ndarray,
        num_gauges: int,
    ) -> Tuple[bool, np.ndarray]:
        replaced = reduce_bad_discharge_values(
            observations, predicted, num_gauges,
            limit=self.outlier_limit, gauge_scales=self.gauge_scales,
        )
        return replaced, observations
