# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Aggregation of partitioned simulation state.

Each worker owns a disjoint set of nodes. The background state is
gathered by having every worker write its own nodes into a zeroed
full-size buffer and summing the buffers across workers; since every
index has exactly one owner, the sum is a gather and every worker ends
with an identical copy.
"""

import logging

import numpy as np

from hydroassim.core.exceptions import CommunicationError, ValidationError
from ..least_squares.forward_model import ForwardModel
from ..least_squares.network import TopologyProvider
from ..least_squares.state_layout import StateLayout
from .communicator import Communicator

logger = logging.getLogger(__name__)


def gather_background_state(
    model: ForwardModel,
    topology: TopologyProvider,
    layout: StateLayout,
    comm: Communicator,
) -> np.ndarray:
    """Replicate the most recent simulated state on every worker.

    Blocking collective: every worker must call it.

    Returns:
        Full state vector of length ``n_nodes * state_dim``.
    """
    state_dim = layout.state_dim
    buffer = np.zeros(layout.full_dim(topology.n_nodes))

    for node in topology.local_nodes(comm.rank):
        values = np.asarray(model.current_state(node), dtype=np.float64)
        if values.shape[0] < state_dim:
            raise ValidationError(
                f"Node {node} has {values.shape[0]} state components, expected {state_dim}"
            )
        buffer[layout.node_slice(node)] = values[:state_dim]

    background = comm.allreduce_sum(buffer)
    if background.shape != buffer.shape:
        raise CommunicationError(
            f"Reduced background has shape {background.shape}, expected {buffer.shape}"
        )
    return background


def scatter_analysis(
    model: ForwardModel,
    topology: TopologyProvider,
    layout: StateLayout,
    state: np.ndarray,
    comm: Communicator,
) -> int:
    """Write the replicated analysis back into the locally owned nodes.

    Returns:
        Number of nodes updated on this worker.
    """
    owned = topology.local_nodes(comm.rank)
    for node in owned:
        model.set_state(node, np.asarray(state[layout.node_slice(node)], dtype=np.float64))
    return len(owned)


def count_local_equations(topology: TopologyProvider, layout: StateLayout, rank: int) -> int:
    """Number of state equations owned by ``rank``."""
    return len(topology.local_nodes(rank)) * layout.state_dim
