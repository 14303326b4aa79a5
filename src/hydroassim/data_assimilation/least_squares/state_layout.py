# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Per-node state layout and physical constraints.

The full state vector stores ``state_dim`` components per node, node-major:
component ``c`` of node ``i`` lives at ``i * state_dim + c``. Component 0
is discharge; the remaining components are storages. A model variant
selects which components take part in the analysis.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from hydroassim.core.exceptions import ConfigurationError, ValidationError

# Storages below this are treated as exactly empty in a snapshot
SNAPSHOT_ZERO_THRESHOLD = 1e-20


@dataclass(frozen=True)
class StateVariableSpec:
    """Specification for a single per-node state component.

    Attributes:
        name: Component name.
        lower_bound: Minimum physical value (None = no bound).
        upper_bound: Maximum physical value (None = no bound).
    """
    name: str
    lower_bound: Optional[float] = None
    upper_bound: Optional[float] = None


# Model 254: discharge, ponded, topsoil and subsurface storage
MODEL_254_COMPONENTS = ('discharge', 'ponded_storage', 'topsoil_storage', 'subsurface_storage')

MODEL_VARIANTS: Dict[str, Tuple[int, ...]] = {
    '254': (0, 1, 2, 3),
    '254_q': (0,),
    '254_qsp': (0, 1),
    '254_qst': (0, 2),
}


class StateLayout:
    """Maps between nodes, components and full state indices.

    Also acts as the physical constraint enforcer: ``enforce_bounds`` clips
    each component to its bounds after every accepted update.

    Args:
        specs: Ordered component specifications (index 0 is discharge).
        analyzed: Component indices taking part in the analysis.
    """

    def __init__(self, specs: List[StateVariableSpec], analyzed: Tuple[int, ...] = (0,)):
        if not specs:
            raise ValidationError("A state layout needs at least one component")
        analyzed = tuple(sorted(set(analyzed)))
        if not analyzed or analyzed[0] < 0 or analyzed[-1] >= len(specs):
            raise ValidationError(
                f"Analysed components {analyzed} outside a {len(specs)}-component state"
            )
        self.specs = list(specs)
        self.analyzed = analyzed

    @classmethod
    def for_variant(
        cls,
        variant: str,
        state_dim: int = 4,
        discharge_floor: float = 1e-14,
        storage_floor: float = 0.0,
    ) -> 'StateLayout':
        """Build the layout of a model 254 assimilation variant.

        Raises:
            ConfigurationError: For an unknown variant, or a state dimension
                too small for the variant's components.
        """
        if variant not in MODEL_VARIANTS:
            raise ConfigurationError(
                f"Invalid model variant {variant!r} "
                f"(expected one of {', '.join(sorted(MODEL_VARIANTS))})"
            )
        analyzed = MODEL_VARIANTS[variant]
        if state_dim <= max(analyzed):
            raise ConfigurationError(
                f"Variant {variant} analyses component {max(analyzed)} "
                f"but the state has only {state_dim} components"
            )

        specs = [StateVariableSpec(MODEL_254_COMPONENTS[0], lower_bound=discharge_floor)]
        for c in range(1, state_dim):
            name = MODEL_254_COMPONENTS[c] if c < len(MODEL_254_COMPONENTS) else f'storage_{c}'
            specs.append(StateVariableSpec(name, lower_bound=storage_floor))
        return cls(specs, analyzed)

    @property
    def state_dim(self) -> int:
        return len(self.specs)

    @property
    def discharge_floor(self) -> float:
        floor = self.specs[0].lower_bound
        return 0.0 if floor is None else floor

    def full_dim(self, n_nodes: int) -> int:
        return n_nodes * self.state_dim

    def index(self, node: int, component: int = 0) -> int:
        """Full state index of ``component`` of ``node``."""
        return node * self.state_dim + component

    def node_slice(self, node: int) -> slice:
        start = node * self.state_dim
        return slice(start, start + self.state_dim)

    def analyzed_indices(self, node: int) -> List[int]:
        return [self.index(node, c) for c in self.analyzed]

    def discharge(self, state: np.ndarray) -> np.ndarray:
        """View of the discharge component of every node."""
        return np.asarray(state)[0::self.state_dim]

    def enforce_bounds(self, state: np.ndarray) -> np.ndarray:
        """Clip each component to its physical bounds.

        Returns:
            Clipped copy of ``state``.
        """
        X = np.array(state, dtype=np.float64, copy=True)
        if X.shape[0] % self.state_dim:
            raise ValidationError(
                f"State of length {X.shape[0]} is not a multiple of {self.state_dim}"
            )
        for c, spec in enumerate(self.specs):
            if spec.lower_bound is not None:
                X[c::self.state_dim] = np.maximum(X[c::self.state_dim], spec.lower_bound)
            if spec.upper_bound is not None:
                X[c::self.state_dim] = np.minimum(X[c::self.state_dim], spec.upper_bound)
        return X

    def snapshot_consistency(self, state: np.ndarray) -> np.ndarray:
        """Prepare a state for hand-over to the simulation engine.

        Discharge is floored as in ``enforce_bounds``; storages below
        ``SNAPSHOT_ZERO_THRESHOLD`` are set to exactly zero.
        """
        X = np.array(state, dtype=np.float64, copy=True)
        X[0::self.state_dim] = np.maximum(X[0::self.state_dim], self.discharge_floor)
        for c in range(1, self.state_dim):
            comp = X[c::self.state_dim]  # view
            comp[comp < SNAPSHOT_ZERO_THRESHOLD] = 0.0
        return X
