# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
River network topology.

The network is stored as an arena: every node is an integer location
0..N-1, each node records the location of its downstream neighbour, and
the parent lists are kept as one flat index array with per-node offsets
(CSR layout). Upstream queries walk these arrays; no node holds a
reference to another node.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence, Set

import numpy as np

from hydroassim.core.exceptions import ValidationError

OUTLET = -1


class TopologyProvider(ABC):
    """Abstract interface to the river network used by the assimilation."""

    @property
    @abstractmethod
    def n_nodes(self) -> int:
        ...

    @abstractmethod
    def upstream_of(self, node: int) -> Set[int]:
        """All nodes draining into ``node`` (excluding ``node`` itself)."""
        ...

    @abstractmethod
    def owner_of(self, node: int) -> int:
        """Rank of the worker that owns ``node``."""
        ...

    def local_nodes(self, rank: int) -> np.ndarray:
        """Locations owned by ``rank`` in ascending order."""
        return np.array([node for node in range(self.n_nodes) if self.owner_of(node) == rank],
                        dtype=np.int64)


class RiverNetwork(TopologyProvider):
    """Arena adjacency list of a directed, acyclic river network.

    Args:
        downstream: Location of each node's downstream neighbour, ``-1``
            for outlets.
        assignments: Owning worker rank of each node (default: all rank 0).
        link_ids: External link identifier of each node (default: location).
        upstream_areas: Upstream drainage area of each node (km²), used by
            area-normalised weighting.

    Raises:
        ValidationError: If the arrays disagree in length, reference
            unknown nodes, or the network contains a cycle.
    """

    def __init__(
        self,
        downstream: Sequence[int],
        assignments: Optional[Sequence[int]] = None,
        link_ids: Optional[Sequence[int]] = None,
        upstream_areas: Optional[Sequence[float]] = None,
    ):
        self.downstream = np.asarray(downstream, dtype=np.int64)
        n = self.downstream.shape[0]

        if np.any((self.downstream < OUTLET) | (self.downstream >= n)):
            raise ValidationError("Downstream locations must be -1 or a valid node location")
        if np.any(self.downstream == np.arange(n)):
            raise ValidationError("A node cannot drain into itself")

        self.assignments = (
            np.zeros(n, dtype=np.int64) if assignments is None
            else np.asarray(assignments, dtype=np.int64)
        )
        self.link_ids = (
            np.arange(n, dtype=np.int64) if link_ids is None
            else np.asarray(link_ids, dtype=np.int64)
        )
        self.upstream_areas = (
            None if upstream_areas is None
            else np.asarray(upstream_areas, dtype=np.float64)
        )

        for name, arr in (('assignments', self.assignments), ('link_ids', self.link_ids),
                          ('upstream_areas', self.upstream_areas)):
            if arr is not None and arr.shape[0] != n:
                raise ValidationError(f"{name} has length {arr.shape[0]}, expected {n}")
        if np.any(self.assignments < 0):
            raise ValidationError("Worker assignments must be non-negative")
        if len(np.unique(self.link_ids)) != n:
            raise ValidationError("Link IDs must be unique")

        # CSR parent lists
        children = np.flatnonzero(self.downstream != OUTLET)
        parents_of = self.downstream[children]
        order = np.argsort(parents_of, kind='stable')
        self._parents = children[order]
        counts = np.bincount(parents_of, minlength=n)
        self._parent_offsets = np.concatenate(([0], np.cumsum(counts)))

        self._location_of: Dict[int, int] = {
            int(link): loc for loc, link in enumerate(self.link_ids)
        }
        self._check_acyclic()

    @property
    def n_nodes(self) -> int:
        return int(self.downstream.shape[0])

    def _check_node(self, node: int) -> None:
        if not 0 <= node < self.n_nodes:
            raise ValidationError(f"Node {node} outside network of {self.n_nodes} nodes")

    def _check_acyclic(self) -> None:
        # Kahn's algorithm on the downstream graph
        indegree = np.diff(self._parent_offsets).copy()
        stack = list(np.flatnonzero(indegree == 0))
        visited = 0
        while stack:
            node = stack.pop()
            visited += 1
            down = self.downstream[node]
            if down != OUTLET:
                indegree[down] -= 1
                if indegree[down] == 0:
                    stack.append(down)
        if visited != self.n_nodes:
            raise ValidationError("River network contains a cycle")

    def parents(self, node: int) -> np.ndarray:
        """Immediate upstream neighbours of ``node``."""
        self._check_node(node)
        start, end = self._parent_offsets[node], self._parent_offsets[node + 1]
        return self._parents[start:end]

    def upstream_of(self, node: int) -> Set[int]:
        self._check_node(node)
        upstream: Set[int] = set()
        stack = list(self.parents(node))
        while stack:
            current = int(stack.pop())
            if current in upstream:
                continue
            upstream.add(current)
            start, end = self._parent_offsets[current], self._parent_offsets[current + 1]
            stack.extend(self._parents[start:end])
        return upstream

    def owner_of(self, node: int) -> int:
        self._check_node(node)
        return int(self.assignments[node])

    def local_nodes(self, rank: int) -> np.ndarray:
        """Locations owned by ``rank`` in ascending order."""
        return np.flatnonzero(self.assignments == rank)

    def location_of(self, link_id: int) -> int:
        """Location of the node with external identifier ``link_id``."""
        try:
            return self._location_of[int(link_id)]
        except KeyError:
            raise ValidationError(f"Link {link_id} is not part of the network") from None

    def locations_of(self, link_ids: Iterable[int]) -> List[int]:
        return [self.location_of(link_id) for link_id in link_ids]

    def repartition(self, assignments: Sequence[int]) -> 'RiverNetwork':
        """Copy of the network with a different worker partition."""
        return RiverNetwork(
            self.downstream,
            assignments=assignments,
            link_ids=self.link_ids,
            upstream_areas=self.upstream_areas,
        )
