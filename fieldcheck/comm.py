"""
Blocking collectives shared by the worker group.

Every worker in the group must reach each collective; a worker that never
arrives stalls the others indefinitely. There are no timeouts.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

from fieldcore import Vector

logger = logging.getLogger(__name__)


class Communicator:
    """Minimal collective interface used by partitioning and validation."""

    rank: int = 0
    size: int = 1

    def allreduce_array(self, values: Sequence[float]) -> List[float]:
        """Elementwise global sum of equally sized arrays."""
        raise NotImplementedError

    def allgather(self, obj: Any) -> List[Any]:
        raise NotImplementedError

    def alltoall(self, per_rank: Sequence[Any]) -> List[Any]:
        """Send ``per_rank[r]`` to rank ``r``; return what every rank sent here."""
        raise NotImplementedError

    def barrier(self) -> None:
        raise NotImplementedError

    def allreduce_sum(self, value: float) -> float:
        return self.allreduce_array([value])[0]

    def allreduce_vector(self, vector: Vector) -> Vector:
        x, y, z = self.allreduce_array(list(vector))
        return (x, y, z)

    @property
    def is_root(self) -> bool:
        return self.rank == 0


class SerialCommunicator(Communicator):
    """Group of one; every collective is the identity."""

    def allreduce_array(self, values: Sequence[float]) -> List[float]:
        return list(values)

    def allgather(self, obj: Any) -> List[Any]:
        return [obj]

    def alltoall(self, per_rank: Sequence[Any]) -> List[Any]:
        if len(per_rank) != 1:
            raise ValueError(f"alltoall expects 1 payload, got {len(per_rank)}.")
        return list(per_rank)

    def barrier(self) -> None:
        return None


class MpiCommunicator(Communicator):
    """Wrapper around an ``mpi4py`` communicator using pickle-based collectives."""

    def __init__(self, comm: Optional[Any] = None):
        from mpi4py import MPI

        self._mpi = MPI
        self.comm = comm if comm is not None else MPI.COMM_WORLD
        self.rank = self.comm.Get_rank()
        self.size = self.comm.Get_size()

    def allreduce_array(self, values: Sequence[float]) -> List[float]:
        gathered = self.comm.allgather([float(value) for value in values])
        # summing in rank order keeps every worker's result bit-identical
        totals = [0.0] * len(values)
        for contribution in gathered:
            if len(contribution) != len(totals):
                raise ValueError("allreduce_array called with mismatched lengths across ranks.")
            for idx, value in enumerate(contribution):
                totals[idx] += value
        return totals

    def allgather(self, obj: Any) -> List[Any]:
        return self.comm.allgather(obj)

    def alltoall(self, per_rank: Sequence[Any]) -> List[Any]:
        if len(per_rank) != self.size:
            raise ValueError(f"alltoall expects {self.size} payloads, got {len(per_rank)}.")
        return self.comm.alltoall(list(per_rank))

    def barrier(self) -> None:
        self.comm.Barrier()


def get_communicator(use_mpi: bool = True) -> Communicator:
    """Return an MPI communicator when available and requested, else a serial one."""
    if not use_mpi:
        return SerialCommunicator()
    try:
        comm = MpiCommunicator()
    except ImportError:
        logger.info("mpi4py not available; running as a single worker.")
        return SerialCommunicator()
    if comm.size == 1:
        return SerialCommunicator()
    return comm


def check_periodic_layout(images: int, num_workers: int) -> bool:
    """Warn when a periodic run is spread over a non-cubic worker count."""
    if images <= 0:
        return True
    levels = num_workers.bit_length() - 1
    cubic = num_workers & (num_workers - 1) == 0 and levels % 3 == 0
    if not cubic:
        logger.warning(
            "Worker count %d is not a power of 8; periodic domain will not be square.",
            num_workers,
        )
    return cubic
