"""Tests for the weighted linear least-squares solver."""

import numpy as np
import pytest

from hydroassim.core.config.models.assimilation_config import SolverConfig
from hydroassim.core.exceptions import (
    AssimilationError,
    LinearSolveError,
    NonConvergentSolveError,
    SingularSystemError,
    ValidationError,
)
from hydroassim.data_assimilation.least_squares.solver import (
    ConjugateGradientBackend,
    DirectSolveBackend,
    LinearLeastSquaresSolver,
    create_backend,
)
from hydroassim.data_assimilation.least_squares.state_layout import StateLayout
from hydroassim.data_assimilation.least_squares.topology import build_topology_shift
from hydroassim.data_assimilation.least_squares.workspace import AssimilationWorkspace
from hydroassim.data_assimilation.parallel.communicator import SerialCommunicator


@pytest.fixture
def problem(branching_network):
    """Reduced problem over nodes 0-4 (gauges 2 and 4), two observation steps."""
    rng = np.random.default_rng(11)
    layout = StateLayout.for_variant('254_qsp')
    shift = build_topology_shift(branching_network, layout, [2, 4], SerialCommunicator())
    n_obs = 4

    # Operator acting on the reduced components only
    M = np.zeros((n_obs, shift.full_dim))
    M[:, shift.inverse] = rng.normal(size=(n_obs, shift.reduced_dim))

    background = rng.uniform(1.0, 3.0, shift.full_dim)
    d = rng.uniform(1.0, 3.0, n_obs)
    B = rng.uniform(0.5, 2.0, shift.reduced_dim)
    R = rng.uniform(0.5, 2.0, n_obs)
    ws = AssimilationWorkspace.allocate(shift, background, d, num_gauges=2,
                                        prior_weights=B, observation_weights=R)
    return ws, M


class TestNormalEquations:

    def test_matches_stacked_least_squares(self, problem):
        ws, M = problem
        H = M[:, ws.shift.inverse]
        trial = ws.background.copy()

        x = LinearLeastSquaresSolver().analyze(ws, trial, M @ trial, H)

        # min ||R^1/2 (H x - d)||² + ||B^1/2 (x - x_b)||²
        A = np.vstack([np.sqrt(ws.R)[:, None] * H, np.diag(np.sqrt(ws.B))])
        b = np.concatenate([np.sqrt(ws.R) * ws.observations,
                            np.sqrt(ws.B) * ws.background_reduced()])
        expected, *_ = np.linalg.lstsq(A, b, rcond=None)
        np.testing.assert_allclose(x, expected, rtol=1e-10, atol=1e-12)

    def test_linearised_right_hand_side(self, problem):
        ws, M = problem
        H = M[:, ws.shift.inverse]
        trial = ws.background + 0.3
        predicted = M @ trial + 0.7  # not equal to H x_t

        LinearLeastSquaresSolver().assemble(ws, trial, predicted, H)

        d_lin = ws.observations - predicted + H @ ws.shift.restrict(trial)
        expected_rhs = H.T @ (ws.R * d_lin) + ws.B * ws.background_reduced()
        np.testing.assert_allclose(ws.rhs, expected_rhs)
        np.testing.assert_allclose(ws.normal_matrix, H.T @ np.diag(ws.R) @ H + np.diag(ws.B))
        np.testing.assert_array_equal(ws.HM, H)

    def test_solution_stored_in_workspace(self, problem):
        ws, M = problem
        H = M[:, ws.shift.inverse]
        x = LinearLeastSquaresSolver().analyze(ws, ws.background, M @ ws.background, H)
        np.testing.assert_array_equal(ws.solution, x)
        x[0] = -1e9
        assert ws.solution[0] != -1e9

    def test_rank_deficient_design_is_regularised(self, problem):
        ws, M = problem
        H = np.zeros((ws.n_obs, ws.reduced_dim))
        x = LinearLeastSquaresSolver().analyze(ws, ws.background, np.zeros(ws.n_obs), H)
        np.testing.assert_allclose(x, ws.background_reduced())

    def test_jacobian_shape_checked(self, problem):
        ws, _ = problem
        with pytest.raises(ValidationError, match="Jacobian"):
            LinearLeastSquaresSolver().assemble(ws, ws.background, np.zeros(ws.n_obs),
                                                np.zeros((ws.n_obs, 1)))

    def test_worker_without_system(self, problem):
        ws, M = problem
        ws.release()
        with pytest.raises(AssimilationError):
            LinearLeastSquaresSolver().analyze(ws, ws.background, np.zeros(4),
                                               M[:, ws.shift.inverse])


class TestBackends:

    def test_direct_singular(self):
        with pytest.raises(SingularSystemError) as exc_info:
            DirectSolveBackend().solve(np.zeros((2, 2)), np.ones(2))
        assert exc_info.value.kind == 'singular'
        assert isinstance(exc_info.value, LinearSolveError)

    def test_cg_matches_direct(self):
        rng = np.random.default_rng(5)
        G = rng.normal(size=(6, 6))
        A = G @ G.T + 6 * np.eye(6)
        b = rng.normal(size=6)
        np.testing.assert_allclose(ConjugateGradientBackend(rtol=1e-12).solve(A, b),
                                   DirectSolveBackend().solve(A, b), rtol=1e-8, atol=1e-10)

    def test_cg_non_convergence(self):
        A = np.diag(np.logspace(0, 6, 40))
        b = np.ones(40)
        with pytest.raises(NonConvergentSolveError) as exc_info:
            ConjugateGradientBackend(rtol=1e-14, maxiter=2).solve(A, b)
        assert exc_info.value.kind == 'non_convergent'
        assert exc_info.value.iterations > 0

    def test_create_backend(self):
        assert isinstance(create_backend(), DirectSolveBackend)
        backend = create_backend(SolverConfig(backend='cg', rtol=1e-6, max_krylov_iters=20))
        assert isinstance(backend, ConjugateGradientBackend)
        assert backend.rtol == 1e-6
        assert backend.maxiter == 20

    def test_solver_uses_backend(self, problem):
        ws, M = problem
        H = M[:, ws.shift.inverse]
        direct = LinearLeastSquaresSolver().analyze(ws, ws.background, M @ ws.background, H)
        cg = LinearLeastSquaresSolver(ConjugateGradientBackend(rtol=1e-13)).analyze(
            ws, ws.background, M @ ws.background, H
        )
        np.testing.assert_allclose(cg, direct, rtol=1e-7, atol=1e-9)
