"""
Analysis snapshot sinks.

A snapshot sink receives the final analysis state of a cycle for
persistence. The NetCDF sink writes CF-1.6 style files.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)


class SnapshotSink(ABC):
    """Receives the final analysis state of an assimilation cycle."""

    @abstractmethod
    def write(
        self,
        analysis: np.ndarray,
        state_dim: int,
        background: Optional[np.ndarray] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Persist a snapshot.

        Args:
            analysis: Full analysis state (node-major).
            state_dim: Components per node.
            background: Optional background state for reference.
            metadata: Scalar attributes (window, iterations, error, ...).
        """
        ...


class MemorySnapshotSink(SnapshotSink):
    """Keeps snapshots in memory, newest last."""

    def __init__(self):
        self.snapshots: List[Dict[str, Any]] = []

    def write(self, analysis, state_dim, background=None, metadata=None) -> None:
        self.snapshots.append({
            'analysis': np.array(analysis, copy=True),
            'state_dim': state_dim,
            'background': None if background is None else np.array(background, copy=True),
            'metadata': dict(metadata or {}),
        })

    @property
    def latest(self) -> Optional[Dict[str, Any]]:
        return self.snapshots[-1] if self.snapshots else None


class NetCDFSnapshotSink(SnapshotSink):
    """Writes analysis snapshots to NetCDF.

    Args:
        output_path: Path of the NetCDF file (overwritten on each write).
        link_ids: External link identifiers for the node coordinate.
        component_names: Names for the state coordinate.
    """

    def __init__(
        self,
        output_path: Path,
        link_ids: Optional[Sequence[int]] = None,
        component_names: Optional[Sequence[str]] = None,
    ):
        self.output_path = Path(output_path)
        self.link_ids = None if link_ids is None else np.asarray(link_ids)
        self.component_names = None if component_names is None else list(component_names)

    def write(self, analysis, state_dim, background=None, metadata=None) -> None:
        import xarray as xr

        analysis = np.asarray(analysis, dtype=np.float64).reshape(-1, state_dim)
        n_nodes = analysis.shape[0]

        node_coord = self.link_ids if self.link_ids is not None else np.arange(n_nodes)
        state_coord = (
            self.component_names if self.component_names is not None
            else [f'state_{c}' for c in range(state_dim)]
        )

        data_vars = {'analysis': (['link', 'state'], analysis)}
        if background is not None:
            bg = np.asarray(background, dtype=np.float64).reshape(-1, state_dim)
            data_vars['background'] = (['link', 'state'], bg)
            data_vars['increment'] = (['link', 'state'], analysis - bg)

        ds = xr.Dataset(data_vars=data_vars, coords={'link': node_coord, 'state': state_coord})

        ds.attrs.update({
            'Conventions': 'CF-1.6',
            'title': 'HydroAssim least-squares analysis snapshot',
            'method': 'Iterative weighted least squares',
        })
        for key, value in (metadata or {}).items():
            if isinstance(value, (bool, np.bool_)):
                value = int(value)
            ds.attrs[key] = value

        ds['analysis'].attrs = {'long_name': 'Analysis state (discharge in m3/s, storages in m)'}
        if 'background' in ds:
            ds['background'].attrs = {'long_name': 'Background state before assimilation'}
            ds['increment'].attrs = {'long_name': 'Analysis minus background'}

        self.output_path.parent.mkdir(parents=True, exist_ok=True)

        encoding = {}
        for var in ds.data_vars:
            encoding[str(var)] = {'zlib': True, 'complevel': 4}

        ds.to_netcdf(self.output_path, encoding=encoding)
        logger.info("Wrote analysis snapshot: %s", self.output_path)
