"""Tests for the data assimilation manager (full cycle)."""

import numpy as np
import pytest

from hydroassim.core.config.factories import build_assimilation_config
from hydroassim.core.exceptions import (
    CommunicationError,
    ConfigurationError,
    DataAcquisitionError,
    RetryableObservationError,
    ValidationError,
)
from hydroassim.data_assimilation.da_manager import DataAssimilationManager
from hydroassim.data_assimilation.least_squares.forward_model import (
    LinearForwardModel,
    gauge_sampling_operator,
)
from hydroassim.data_assimilation.least_squares.network import RiverNetwork
from hydroassim.data_assimilation.observations import (
    ArrayObservationSource,
    AssimilationWindow,
    ObservationSource,
    RetryingObservationSource,
)
from hydroassim.data_assimilation.output import MemorySnapshotSink
from hydroassim.data_assimilation.parallel.communicator import SerialCommunicator

NUM_STEPS = 3
STATE_DIM = 4


class CountingSource(ObservationSource):
    """Observation source that counts calls and can fail a few times first."""

    def __init__(self, values, failures=0, error=RetryableObservationError):
        self.values = np.atleast_2d(np.asarray(values, dtype=float))
        self.failures = failures
        self.error = error
        self.calls = 0

    def fetch_observations(self, window):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("gauge service unavailable")
        return self.values[:, :window.num_steps]


class BrokenCommunicator(SerialCommunicator):
    """Serial communicator whose sum reduction fails."""

    def __init__(self):
        self.aborted = None

    def allreduce_sum(self, buffer):
        raise CommunicationError("reduction failed")

    def abort(self, errorcode=1):
        self.aborted = errorcode


@pytest.fixture
def network():
    # 10 -> 11 -> 12 (gauged outlet)
    return RiverNetwork(downstream=[1, 2, -1], link_ids=[10, 11, 12],
                        upstream_areas=[1.0, 2.0, 3.5])


@pytest.fixture
def background():
    return np.tile([5.0, 0.1, 0.2, 0.3], 3)


@pytest.fixture
def window():
    return AssimilationWindow(begin=0, num_steps=NUM_STEPS, obs_time_step=15.0)


def _config(**overrides):
    raw = {
        'ASSIM_GAUGE_LINKS': [12],
        'ASSIM_NUM_STEPS': NUM_STEPS,
        'OBS_RETRY_DELAY': 0.0,
    }
    raw.update(overrides)
    return build_assimilation_config(raw)


def _model(state):
    operator = gauge_sampling_operator([2], 3, STATE_DIM, NUM_STEPS)
    return LinearForwardModel(operator, STATE_DIM, initial_state=state)


def _partial_state(background, network, rank):
    state = np.full_like(background, -7.0)
    for node in network.local_nodes(rank):
        state[node * STATE_DIM:(node + 1) * STATE_DIM] = background[node * STATE_DIM:(node + 1) * STATE_DIM]
    return state


class TestSerialCycle:

    def test_cycle_updates_gauge_discharge(self, network, background, window):
        model = _model(background)
        sink = MemorySnapshotSink()
        manager = DataAssimilationManager(
            _config(), network, model, ArrayObservationSource(np.full((1, NUM_STEPS), 8.0)),
            snapshot_sink=sink,
        )

        result = manager.run_assimilation_cycle(window)

        # (n * 8 + 5) / (n + 1) with unit weights
        assert result.analysis[8] == pytest.approx(7.25)
        np.testing.assert_allclose(result.analysis[[0, 4]], 5.0)
        np.testing.assert_allclose(result.analysis[1:4], [0.1, 0.2, 0.3])
        np.testing.assert_array_equal(model.state, result.analysis)

        snapshot = sink.latest
        np.testing.assert_array_equal(snapshot['analysis'], result.analysis)
        np.testing.assert_array_equal(snapshot['background'], background)
        assert snapshot['metadata']['iterations'] == result.iterations
        assert snapshot['metadata']['model_variant'] == '254_q'
        assert snapshot['metadata']['window_end'] == window.end
        assert 'observation download' in manager.timings
        assert 'least-squares analysis' in manager.timings

    def test_explicit_gauges_override_config(self, network, background, window):
        manager = DataAssimilationManager(
            build_assimilation_config({'ASSIM_NUM_STEPS': NUM_STEPS}), network,
            _model(background), ArrayObservationSource(np.full((1, NUM_STEPS), 8.0)),
        )
        result = manager.run_assimilation_cycle(window, gauge_nodes=[2])
        assert result.analysis[8] == pytest.approx(7.25)

    def test_no_gauges_configured(self, network, background):
        manager = DataAssimilationManager(
            build_assimilation_config({}), network, _model(background),
            ArrayObservationSource(np.ones((1, NUM_STEPS))),
        )
        with pytest.raises(ConfigurationError, match="ASSIM_GAUGE_LINKS"):
            manager.resolve_gauges()

    def test_area_weighting(self, network, background, window):
        manager = DataAssimilationManager(
            _config(ASSIM_WEIGHTING='upstream_area'), network, _model(background),
            ArrayObservationSource(np.full((1, NUM_STEPS), 8.0)),
        )
        result = manager.run_assimilation_cycle(window)
        assert 5.0 < result.analysis[8] < 8.0

    def test_untrimmed_network(self, network, background, window):
        manager = DataAssimilationManager(
            _config(ASSIM_TRIM_NETWORK=False, ASSIM_MODEL='254'), network, _model(background),
            ArrayObservationSource(np.full((1, NUM_STEPS), 8.0)),
        )
        result = manager.run_assimilation_cycle(window)
        assert result.analysis[8] == pytest.approx(7.25)


class TestObservationHandling:

    def test_transient_failures_are_retried(self, network, background, window):
        source = CountingSource(np.full((1, NUM_STEPS), 8.0), failures=2)
        manager = DataAssimilationManager(_config(), network, _model(background), source)

        result = manager.run_assimilation_cycle(window)

        assert source.calls == 3
        assert result.analysis[8] == pytest.approx(7.25)

    def test_retry_cap_from_config(self, network, background, window):
        source = CountingSource(np.ones((1, NUM_STEPS)), failures=10)
        manager = DataAssimilationManager(_config(OBS_MAX_ATTEMPTS=2), network,
                                          _model(background), source)
        with pytest.raises(DataAcquisitionError):
            manager.run_assimilation_cycle(window)
        assert source.calls == 2

    def test_retrying_source_not_wrapped_twice(self, network, background):
        source = RetryingObservationSource(ArrayObservationSource(np.ones((1, NUM_STEPS))))
        manager = DataAssimilationManager(_config(), network, _model(background), source)
        assert manager.observation_source is source

    def test_unexpected_source_error_is_wrapped(self, network, background, window):
        source = CountingSource(np.ones((1, NUM_STEPS)), failures=1, error=OSError)
        manager = DataAssimilationManager(_config(), network, _model(background), source)
        with pytest.raises(DataAcquisitionError, match="observation download"):
            manager.run_assimilation_cycle(window)

    def test_wrong_observation_shape(self, network, background, window):
        manager = DataAssimilationManager(
            _config(), network, _model(background), ArrayObservationSource(np.ones((2, NUM_STEPS))),
        )
        with pytest.raises(ValidationError, match="shape"):
            manager.run_assimilation_cycle(window)


class TestCommunicationFailure:

    def test_collective_failure_aborts(self, network, background, window):
        comm = BrokenCommunicator()
        manager = DataAssimilationManager(
            _config(), network, _model(background),
            ArrayObservationSource(np.ones((1, NUM_STEPS))), comm=comm,
        )
        with pytest.raises(CommunicationError):
            manager.run_assimilation_cycle(window)
        assert comm.aborted == 1


class TestDistributedCycle:

    @pytest.mark.parametrize("coordinator", [0, 1])
    def test_matches_serial_run(self, network, background, window, run_on_workers, coordinator):
        observations = np.array([[8.0, 9.0, 7.5]])
        serial = DataAssimilationManager(
            _config(), network, _model(background), ArrayObservationSource(observations),
        ).run_assimilation_cycle(window)

        partitioned = network.repartition([0, 1, 0])
        config = _config(DA_COORDINATOR_RANK=coordinator)

        def target(comm):
            model = _model(_partial_state(background, partitioned, comm.rank))
            source = CountingSource(observations)
            sink = MemorySnapshotSink()
            manager = DataAssimilationManager(config, partitioned, model, source,
                                              comm=comm, snapshot_sink=sink)
            result = manager.run_assimilation_cycle(window)
            return result, model, source, sink

        results = run_on_workers(2, target)
        for rank, (result, model, source, sink) in enumerate(results):
            np.testing.assert_allclose(result.analysis, serial.analysis, rtol=1e-12)
            assert result.iterations == serial.iterations
            assert source.calls == (1 if rank == coordinator else 0)
            assert len(sink.snapshots) == (1 if rank == coordinator else 0)
            for node in partitioned.local_nodes(rank):
                np.testing.assert_allclose(model.state[node * STATE_DIM:(node + 1) * STATE_DIM],
                                           result.analysis[node * STATE_DIM:(node + 1) * STATE_DIM])

    def test_coordinator_failure_reaches_all_workers(self, network, background, window,
                                                     run_on_workers_collecting):
        partitioned = network.repartition([0, 1, 0])

        def target(comm):
            source = CountingSource(np.ones((1, NUM_STEPS)), failures=1, error=DataAcquisitionError)
            manager = DataAssimilationManager(
                _config(), partitioned, _model(_partial_state(background, partitioned, comm.rank)),
                source, comm=comm,
            )
            return manager.run_assimilation_cycle(window)

        _, errors = run_on_workers_collecting(2, target)
        assert all(isinstance(e, DataAcquisitionError) for e in errors)
