# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Worker communication for distributed assimilation.

All cross-worker operations of a cycle go through a Communicator:
element-wise sum and logical-or reductions, broadcasts and barriers.
Every collective is blocking and has no timeout; a worker that never
reaches a collective stalls the run.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, TypeVar

import numpy as np

from hydroassim.core.exceptions import CommunicationError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class Communicator(ABC):
    """Abstract base class for a fixed group of cooperating workers."""

    @property
    @abstractmethod
    def rank(self) -> int:
        """Rank of this worker within the group."""
        ...

    @property
    @abstractmethod
    def size(self) -> int:
        """Number of workers in the group."""
        ...

    @abstractmethod
    def allreduce_sum(self, buffer: np.ndarray) -> np.ndarray:
        """Element-wise sum of ``buffer`` across all workers.

        Returns a new array; every worker receives the same result.
        """
        ...

    @abstractmethod
    def allreduce_lor(self, flags: np.ndarray) -> np.ndarray:
        """Element-wise logical OR of boolean ``flags`` across all workers."""
        ...

    @abstractmethod
    def bcast(self, obj: Any, root: int = 0) -> Any:
        """Broadcast ``obj`` from ``root`` to every worker."""
        ...

    @abstractmethod
    def barrier(self) -> None:
        """Block until every worker has reached the barrier."""
        ...

    def reduce_sum(self, value: float, root: int = 0) -> Optional[float]:
        """Sum a scalar onto ``root``; other workers receive None."""
        total = self.allreduce_sum(np.array([value], dtype=np.float64))[0]
        return total if self.rank == root else None

    def abort(self, errorcode: int = 1) -> None:
        """Terminate every worker of the run."""
        raise SystemExit(errorcode)


class SerialCommunicator(Communicator):
    """Single-worker communicator; every collective is the identity."""

    @property
    def rank(self) -> int:
        return 0

    @property
    def size(self) -> int:
        return 1

    def allreduce_sum(self, buffer: np.ndarray) -> np.ndarray:
        return np.array(buffer, dtype=np.float64, copy=True)

    def allreduce_lor(self, flags: np.ndarray) -> np.ndarray:
        return np.array(flags, dtype=bool, copy=True)

    def bcast(self, obj: Any, root: int = 0) -> Any:
        if root != 0:
            raise ValidationError(f"Broadcast root {root} outside a single-worker group")
        return obj

    def barrier(self) -> None:
        pass


class MPICommunicator(Communicator):
    """Communicator backed by an mpi4py intracommunicator.

    Args:
        comm: mpi4py communicator (default: ``MPI.COMM_WORLD``).
    """

    def __init__(self, comm=None):
        from mpi4py import MPI

        self._MPI = MPI
        self.comm = comm if comm is not None else MPI.COMM_WORLD

    @property
    def rank(self) -> int:
        return self.comm.Get_rank()

    @property
    def size(self) -> int:
        return self.comm.Get_size()

    def allreduce_sum(self, buffer: np.ndarray) -> np.ndarray:
        send = np.ascontiguousarray(buffer, dtype=np.float64)
        recv = np.empty_like(send)
        try:
            self.comm.Allreduce(send, recv, op=self._MPI.SUM)
        except self._MPI.Exception as e:
            raise CommunicationError(f"Sum reduction failed on rank {self.rank}: {e}") from e
        return recv

    def allreduce_lor(self, flags: np.ndarray) -> np.ndarray:
        send = np.ascontiguousarray(flags, dtype=bool)
        recv = np.empty_like(send)
        try:
            self.comm.Allreduce(send, recv, op=self._MPI.LOR)
        except self._MPI.Exception as e:
            raise CommunicationError(f"Logical-or reduction failed on rank {self.rank}: {e}") from e
        return recv

    def bcast(self, obj: Any, root: int = 0) -> Any:
        try:
            return self.comm.bcast(obj, root=root)
        except self._MPI.Exception as e:
            raise CommunicationError(f"Broadcast from rank {root} failed: {e}") from e

    def barrier(self) -> None:
        self.comm.Barrier()

    def abort(self, errorcode: int = 1) -> None:
        logger.error(f"Rank {self.rank}: aborting all workers (code {errorcode})")
        self.comm.Abort(errorcode)


def default_communicator() -> Communicator:
    """MPI.COMM_WORLD when running under more than one MPI process, else serial."""
    try:
        from mpi4py import MPI
    except ImportError:
        return SerialCommunicator()
    if MPI.COMM_WORLD.Get_size() > 1:
        return MPICommunicator(MPI.COMM_WORLD)
    return SerialCommunicator()


class CoordinatorRole:
    """Gate for work that only the designated coordinator performs.

    The coordinator rank comes from configuration; every coordinator-only
    operation (observation download, linear solve, snapshot writing) is
    funnelled through ``run`` and its result distributed with ``share``.

    Args:
        comm: Worker communicator.
        coordinator_rank: Rank that acts as coordinator.
    """

    def __init__(self, comm: Communicator, coordinator_rank: int = 0):
        if not 0 <= coordinator_rank < comm.size:
            raise ValidationError(
                f"Coordinator rank {coordinator_rank} outside group of size {comm.size}"
            )
        self.comm = comm
        self.coordinator_rank = coordinator_rank

    @property
    def is_coordinator(self) -> bool:
        return self.comm.rank == self.coordinator_rank

    def run(self, func: Callable[..., T], *args, **kwargs) -> Optional[T]:
        """Call ``func`` on the coordinator only; other workers get None."""
        if self.is_coordinator:
            return func(*args, **kwargs)
        return None

    def share(self, value: Optional[T]) -> T:
        """Broadcast the coordinator's ``value`` to every worker."""
        return self.comm.bcast(value, root=self.coordinator_rank)

    def run_and_share(self, func: Callable[..., T], *args, **kwargs) -> T:
        """``run`` followed by ``share``.

        An exception on the coordinator is broadcast so that every worker
        raises it instead of stalling in the broadcast.
        """
        payload = None
        if self.is_coordinator:
            try:
                payload = (True, self.run(func, *args, **kwargs))
            except Exception as e:
                payload = (False, e)
        ok, value = self.share(payload)
        if not ok:
            raise value
        return value
