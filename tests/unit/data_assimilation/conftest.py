"""
Fixtures for data assimilation tests.

Multi-worker behaviour is exercised with a thread-backed communicator:
each worker runs in its own thread and collectives meet at a shared
barrier, so partition-dependent code paths run without MPI.
"""

import copy
import threading

import numpy as np
import pytest

from hydroassim.data_assimilation.least_squares.forward_model import (
    LinearForwardModel,
    gauge_sampling_operator,
)
from hydroassim.data_assimilation.least_squares.network import RiverNetwork
from hydroassim.data_assimilation.parallel.communicator import Communicator

BARRIER_TIMEOUT = 10.0


class _ThreadGroup:
    def __init__(self, size: int):
        self.size = size
        self.barrier = threading.Barrier(size, timeout=BARRIER_TIMEOUT)
        self.slots = [None] * size


class ThreadCommunicator(Communicator):
    """Communicator for workers running as threads of one process."""

    def __init__(self, group: _ThreadGroup, rank: int):
        self.group = group
        self._rank = rank

    @property
    def rank(self) -> int:
        return self._rank

    @property
    def size(self) -> int:
        return self.group.size

    def _exchange(self, value):
        self.group.slots[self._rank] = value
        self.group.barrier.wait()
        values = list(self.group.slots)
        self.group.barrier.wait()
        return values

    def allreduce_sum(self, buffer):
        values = self._exchange(np.array(buffer, dtype=np.float64, copy=True))
        return np.sum(values, axis=0)

    def allreduce_lor(self, flags):
        values = self._exchange(np.array(flags, dtype=bool, copy=True))
        return np.logical_or.reduce(values, axis=0)

    def bcast(self, obj, root=0):
        values = self._exchange(obj if self._rank == root else None)
        return copy.deepcopy(values[root])

    def barrier(self):
        self.group.barrier.wait()


def run_workers(size, target):
    """Run ``target(comm)`` on ``size`` thread workers; return results by rank."""
    group = _ThreadGroup(size)
    results = [None] * size
    errors = [None] * size

    def worker(rank):
        try:
            results[rank] = target(ThreadCommunicator(group, rank))
        except Exception as e:
            # Barrier left intact: peers may still be leaving the last collective
            errors[rank] = e

    threads = [threading.Thread(target=worker, args=(rank,)) for rank in range(size)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=4 * BARRIER_TIMEOUT)

    first = next((e for e in errors if e is not None
                  and not isinstance(e, threading.BrokenBarrierError)), None)
    if first is None:
        first = next((e for e in errors if e is not None), None)
    if first is not None:
        raise first
    return results


def run_workers_collecting(size, target):
    """Like ``run_workers`` but return (results, errors) without raising."""
    group = _ThreadGroup(size)
    results = [None] * size
    errors = [None] * size

    def worker(rank):
        try:
            results[rank] = target(ThreadCommunicator(group, rank))
        except Exception as e:
            # Barrier left intact: peers may still be leaving the last collective
            errors[rank] = e

    threads = [threading.Thread(target=worker, args=(rank,)) for rank in range(size)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=4 * BARRIER_TIMEOUT)
    return results, errors


@pytest.fixture
def run_on_workers():
    return run_workers


@pytest.fixture
def run_on_workers_collecting():
    return run_workers_collecting


@pytest.fixture
def branching_network():
    """Seven-node network with two basins.

    Nodes 0 and 1 drain into 2, nodes 2 and 3 drain into the outlet 4.
    Node 5 drains into the separate outlet 6.
    """
    return RiverNetwork(
        downstream=[2, 2, 4, 4, -1, 6, -1],
        link_ids=[100, 101, 102, 103, 104, 105, 106],
        upstream_areas=[1.0, 2.0, 4.0, 1.5, 10.0, 3.0, 5.0],
    )


@pytest.fixture
def gauge_model_factory():
    """Factory for a linear model observing the discharge of gauge nodes."""
    def build(gauges, n_nodes, num_steps, initial_state, state_dim=4):
        operator = gauge_sampling_operator(gauges, n_nodes, state_dim, num_steps)
        return LinearForwardModel(operator, state_dim, initial_state=initial_state)
    return build
