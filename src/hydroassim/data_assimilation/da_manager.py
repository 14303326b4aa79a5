"""
Data Assimilation Manager.

Top-level orchestrator for one least-squares assimilation cycle.
Coordinates background aggregation, topology reduction, observation
retrieval, the iterative analysis, and hand-over of the analysis to the
simulation engine and snapshot sink.
"""

import logging
from typing import Optional, Sequence

import numpy as np

from hydroassim.core.config.models.assimilation_config import DataAssimilationConfig
from hydroassim.core.exceptions import (
    CommunicationError,
    ConfigurationError,
    DataAcquisitionError,
    ValidationError,
    hydroassim_error_handler,
)
from hydroassim.core.mixins import TimingMixin
from .diagnostics import analysis_comparison, innovation_statistics
from .least_squares.controller import AssimilationResult, IterativeRefinementController
from .least_squares.forward_model import ForwardModel
from .least_squares.network import RiverNetwork
from .least_squares.solver import LinearLeastSquaresSolver, LinearSolveBackend, create_backend
from .least_squares.state_layout import StateLayout
from .least_squares.topology import build_topology_shift
from .least_squares.workspace import (
    AssimilationWorkspace,
    build_observation_weights,
    build_prior_weights,
)
from .observations import (
    AssimilationWindow,
    ObservationSource,
    RetryingObservationSource,
    RetryPolicy,
    flatten_observations,
)
from .output import SnapshotSink
from .parallel.aggregator import count_local_equations, gather_background_state, scatter_analysis
from .parallel.communicator import Communicator, CoordinatorRole, SerialCommunicator

logger = logging.getLogger(__name__)


class DataAssimilationManager(TimingMixin):
    """Orchestrates a least-squares data assimilation cycle.

    Workflow:
        1. Resolve gauge locations
        2. Gather the background state from all workers
        3. Reduce the problem to nodes upstream of the gauges
        4. Download observations on the coordinator and broadcast them
        5. Allocate the workspace (weights, system buffers)
        6. Run the iterative refinement controller
        7. Write the analysis back into the engine; hand it to the sink
        8. Release the workspace

    Args:
        config: Data assimilation configuration.
        network: River network (topology provider).
        model: Forward model engine of this worker.
        observation_source: Observation source (wrapped in the configured
            retry policy unless it already retries).
        comm: Worker communicator (default: serial).
        backend: Linear-solve backend (default: from config).
        snapshot_sink: Optional sink for the final analysis.
        gauge_scales: Per-gauge scale of the outlier limit.
        logger: Logger (default: module logger).
    """

    def __init__(
        self,
        config: DataAssimilationConfig,
        network: RiverNetwork,
        model: ForwardModel,
        observation_source: ObservationSource,
        comm: Optional[Communicator] = None,
        backend: Optional[LinearSolveBackend] = None,
        snapshot_sink: Optional[SnapshotSink] = None,
        gauge_scales: Optional[Sequence[float]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.network = network
        self.model = model
        self.comm = comm or SerialCommunicator()
        self.role = CoordinatorRole(self.comm, config.coordinator_rank)
        self.snapshot_sink = snapshot_sink
        self.gauge_scales = gauge_scales
        self.logger = logger or logging.getLogger(__name__)
        self.timings = {}

        if isinstance(observation_source, RetryingObservationSource):
            self.observation_source = observation_source
        else:
            self.observation_source = RetryingObservationSource(
                observation_source, RetryPolicy.from_config(config.observations)
            )

        ls = config.least_squares
        self.layout = StateLayout.for_variant(
            ls.model_variant,
            state_dim=ls.state_dim,
            discharge_floor=ls.discharge_floor,
            storage_floor=ls.storage_floor,
        )
        self.solver = LinearLeastSquaresSolver(backend or create_backend(config.solver))

    def resolve_gauges(self, gauge_nodes: Optional[Sequence[int]] = None) -> list:
        """Gauge locations from the argument or the configured link IDs."""
        if gauge_nodes is not None:
            return [int(g) for g in gauge_nodes]
        link_ids = self.config.observations.gauge_link_ids
        if not link_ids:
            raise ConfigurationError("No gauges given and ASSIM_GAUGE_LINKS is not configured")
        return self.network.locations_of(link_ids)

    def run_assimilation_cycle(
        self,
        window: AssimilationWindow,
        gauge_nodes: Optional[Sequence[int]] = None,
    ) -> AssimilationResult:
        """Execute one assimilation cycle.

        Every worker must call this; collectives inside block until all
        workers arrive.

        Returns:
            AssimilationResult with the analysis (identical on all workers).

        Raises:
            LinearSolveError: If the reduced system cannot be solved.
            CommunicationError: After aborting the run on a collective failure.
        """
        self.logger.info("Starting data assimilation cycle")
        try:
            return self._run_cycle(window, gauge_nodes)
        except CommunicationError:
            self.logger.error("Collective communication failed; aborting all workers")
            self.comm.abort(1)
            raise

    def _run_cycle(
        self,
        window: AssimilationWindow,
        gauge_nodes: Optional[Sequence[int]],
    ) -> AssimilationResult:
        ls = self.config.least_squares
        gauges = self.resolve_gauges(gauge_nodes)

        # 1. Background
        background = gather_background_state(self.model, self.network, self.layout, self.comm)
        self._log_network_summary()

        # 2. Topology reduction
        shift = build_topology_shift(
            self.network, self.layout, gauges, self.comm, trim=ls.trim_network
        )
        self.logger.info(f"allstates_needed: {shift.reduced_dim} allstates: {shift.full_dim}")

        # 3. Observations
        with self.time_limit("observation download"):
            observations = self.role.run_and_share(self._fetch_observations, window, len(gauges))
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(f"d_full: {np.array2string(observations, precision=4)}")

        # 4. Workspace
        ws = AssimilationWorkspace.allocate(
            shift,
            background,
            observations,
            num_gauges=len(gauges),
            prior_weights=build_prior_weights(
                shift, self.layout, self.network, ls.weighting, ls.prior_weight
            ),
            observation_weights=build_observation_weights(
                gauges, window.num_steps, self.network, ls.weighting, ls.observation_weight
            ),
            coordinator=self.role.is_coordinator,
        )
        if ws.has_system and self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(f"Weighting matrix B (diagonal): {ws.B}")
            self.logger.debug(f"Weighting matrix R (diagonal): {ws.R}")

        # 5. Analysis
        try:
            controller = IterativeRefinementController.from_config(
                self.layout, ls, solver=self.solver, role=self.role,
                gauge_scales=self.gauge_scales,
            )
            with self.time_limit("least-squares analysis"):
                result = controller.run(ws, self.model)
        finally:
            ws.release()

        result.analysis = self.layout.snapshot_consistency(result.analysis)
        self._log_summary(result, observations, len(gauges))

        # 6. Hand-over
        scatter_analysis(self.model, self.network, self.layout, result.analysis, self.comm)
        if self.snapshot_sink is not None:
            self.role.run_and_share(
                self.snapshot_sink.write,
                result.analysis,
                self.layout.state_dim,
                background=background,
                metadata={
                    'window_begin': int(window.begin),
                    'window_end': int(window.end),
                    'model_variant': ls.model_variant,
                    'iterations': int(result.iterations),
                    'final_error': float(result.error),
                    'mitigated': bool(result.mitigated),
                },
            )
        self.comm.barrier()
        self.logger.info("Data assimilation cycle completed")
        return result

    def _fetch_observations(self, window: AssimilationWindow, num_gauges: int) -> np.ndarray:
        with hydroassim_error_handler("observation download", self.logger,
                                      error_type=DataAcquisitionError):
            matrix = np.atleast_2d(self.observation_source.fetch_observations(window))
        if matrix.shape != (num_gauges, window.num_steps):
            raise ValidationError(
                f"Observation source returned shape {matrix.shape}, "
                f"expected ({num_gauges}, {window.num_steps})"
            )
        return flatten_observations(matrix)

    def _log_network_summary(self) -> None:
        my_eqs = count_local_equations(self.network, self.layout, self.comm.rank)
        total_eqs = self.comm.reduce_sum(my_eqs, root=self.role.coordinator_rank)
        self.logger.debug(f"[{self.comm.rank}]: Good to go with {my_eqs} equations")
        if total_eqs is not None:
            self.logger.info(
                f"Network has a total of {self.network.n_nodes} links "
                f"and {int(total_eqs)} equations"
            )

    def _log_summary(
        self,
        result: AssimilationResult,
        observations: np.ndarray,
        num_gauges: int,
    ) -> None:
        if result.background_predicted is None or result.predicted is None:
            return
        stats = analysis_comparison(result.background_predicted, result.predicted, observations)
        self.logger.info(
            f"Background RMSE {stats['background_rmse']:.4g}, "
            f"last iterate RMSE {stats['analysis_rmse']:.4g} "
            f"({stats['rmse_improvement']:.1f}% improvement)"
        )
        if self.logger.isEnabledFor(logging.DEBUG):
            innov = innovation_statistics(observations, result.predicted, num_gauges)
            self.logger.debug(f"Innovation max |d - q| per gauge: {innov['max_abs']}")
