# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Topology-based reduction of the assimilation problem.

Only state components of nodes that drain into a gauge can change the
predicted observations, so the least-squares problem is posed on that
subset. TopologyShift holds the index maps between the full state and the
reduced problem.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List

import numpy as np

from hydroassim.core.exceptions import ValidationError
from ..parallel.communicator import Communicator
from .network import TopologyProvider
from .state_layout import StateLayout

logger = logging.getLogger(__name__)

NOT_NEEDED = -1


@dataclass(frozen=True)
class TopologyShift:
    """Index maps between the full state and the reduced problem.

    Attributes:
        forward: Reduced index of every full index, ``NOT_NEEDED`` (-1) for
            components outside the reduced problem.
        inverse: Full index of every reduced index, strictly increasing.
    """
    forward: np.ndarray
    inverse: np.ndarray

    def __post_init__(self):
        self.forward.setflags(write=False)
        self.inverse.setflags(write=False)

    @property
    def full_dim(self) -> int:
        return int(self.forward.shape[0])

    @property
    def reduced_dim(self) -> int:
        return int(self.inverse.shape[0])

    def to_reduced(self, full_index: int) -> int:
        return int(self.forward[full_index])

    def to_full(self, reduced_index: int) -> int:
        return int(self.inverse[reduced_index])

    def is_needed(self, full_index: int) -> bool:
        return self.forward[full_index] != NOT_NEEDED

    def restrict(self, state: np.ndarray) -> np.ndarray:
        """Reduced-space copy of a full state vector."""
        return np.asarray(state, dtype=np.float64)[self.inverse]

    def scatter(self, reduced: np.ndarray, base: np.ndarray) -> np.ndarray:
        """Full state equal to ``base`` with the reduced entries replaced."""
        full = np.array(base, dtype=np.float64, copy=True)
        full[self.inverse] = reduced
        return full


def find_needed_nodes(
    topology: TopologyProvider,
    gauge_nodes: Iterable[int],
    comm: Communicator,
    trim: bool = True,
) -> np.ndarray:
    """Flag every node that is a gauge or drains into one.

    Each worker marks the gauges it owns together with their upstream
    nodes; the flags are combined with a logical-or reduction, so nodes
    shared by several gauges are marked once.

    Returns:
        Boolean array of length ``topology.n_nodes``.
    """
    n_nodes = topology.n_nodes
    if not trim:
        return np.ones(n_nodes, dtype=bool)

    needed = np.zeros(n_nodes, dtype=bool)
    for gauge in gauge_nodes:
        if topology.owner_of(gauge) != comm.rank:
            continue
        needed[gauge] = True
        for node in topology.upstream_of(gauge):
            needed[node] = True

    return comm.allreduce_lor(needed)


def build_topology_shift(
    topology: TopologyProvider,
    layout: StateLayout,
    gauge_nodes: Iterable[int],
    comm: Communicator,
    trim: bool = True,
) -> TopologyShift:
    """Build the full <-> reduced index maps for a set of gauges.

    Nodes are visited in ascending order; every analysed component of a
    needed node receives the next reduced index.

    Args:
        topology: Network topology provider.
        layout: State layout (selects the analysed components).
        gauge_nodes: Locations of the gauged nodes.
        comm: Worker communicator.
        trim: When False every node is kept.

    Raises:
        ValidationError: If no gauge is given or a gauge lies outside the network.
    """
    gauges: List[int] = [int(g) for g in gauge_nodes]
    n_nodes = topology.n_nodes
    if not gauges:
        raise ValidationError("At least one gauge is required")
    for gauge in gauges:
        if not 0 <= gauge < n_nodes:
            raise ValidationError(f"Gauge location {gauge} outside network of {n_nodes} nodes")

    needed = find_needed_nodes(topology, gauges, comm, trim=trim)
    nodes = np.flatnonzero(needed)

    analyzed = np.asarray(layout.analyzed, dtype=np.int64)
    inverse = (nodes[:, np.newaxis] * layout.state_dim + analyzed[np.newaxis, :]).ravel()
    inverse = inverse.astype(np.int64)

    forward = np.full(layout.full_dim(n_nodes), NOT_NEEDED, dtype=np.int64)
    forward[inverse] = np.arange(inverse.shape[0], dtype=np.int64)

    logger.info(
        f"Reduced state: {inverse.shape[0]} of {forward.shape[0]} components "
        f"({nodes.shape[0]} of {n_nodes} nodes needed)"
    )
    return TopologyShift(forward=forward, inverse=inverse)
