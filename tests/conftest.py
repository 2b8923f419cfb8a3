"""
Shared pytest fixtures for fieldcheck.

Besides the parsed configuration assets, this exposes an in-process worker
group: each worker runs on its own thread and the collectives meet at a
shared barrier, so multi-worker behaviour can be tested without MPI.
"""

from __future__ import annotations

import pathlib
import sys
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest
import yaml

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from fieldcheck.comm import Communicator  # noqa: E402
from fieldcheck.config_loader import ValidationBundle, load_bundle_from_yaml  # noqa: E402


class _GroupState:
    def __init__(self, size: int):
        self.slots: List[Any] = [None] * size
        self.barrier = threading.Barrier(size)


class ThreadCommunicator(Communicator):
    def __init__(self, state: _GroupState, rank: int, size: int):
        self._state = state
        self.rank = rank
        self.size = size

    def _exchange(self, value: Any) -> List[Any]:
        self._state.slots[self.rank] = value
        self._state.barrier.wait()
        snapshot = list(self._state.slots)
        self._state.barrier.wait()
        return snapshot

    def allreduce_array(self, values: Sequence[float]) -> List[float]:
        totals = [0.0] * len(values)
        for contribution in self._exchange(list(values)):
            for idx, value in enumerate(contribution):
                totals[idx] += value
        return totals

    def allgather(self, obj: Any) -> List[Any]:
        return self._exchange(obj)

    def alltoall(self, per_rank: Sequence[Any]) -> List[Any]:
        rows = self._exchange(list(per_rank))
        return [rows[source][self.rank] for source in range(self.size)]

    def barrier(self) -> None:
        self._state.barrier.wait()


def run_workers(size: int, work: Callable[[Communicator], Any]) -> List[Any]:
    """Run ``work`` once per worker and return the per-rank results."""
    state = _GroupState(size)
    results: List[Any] = [None] * size
    errors: List[BaseException] = []

    def target(rank: int) -> None:
        try:
            results[rank] = work(ThreadCommunicator(state, rank, size))
        except BaseException as exc:  # re-raised in the calling thread below
            errors.append(exc)
            state.barrier.abort()

    threads = [threading.Thread(target=target, args=(rank,)) for rank in range(size)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    if errors:
        primary: Optional[BaseException] = next(
            (exc for exc in errors if not isinstance(exc, threading.BrokenBarrierError)),
            errors[0],
        )
        raise primary
    return results


@pytest.fixture(scope="session")
def project_root() -> pathlib.Path:
    """Return repository root directory."""
    return REPO_ROOT


def _load_yaml(path: pathlib.Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle)


@pytest.fixture(scope="session")
def config_template(project_root: pathlib.Path) -> Dict[str, Any]:
    """Parsed representation of the default validation config template."""
    return _load_yaml(project_root / "config" / "template.yaml")


@pytest.fixture
def mixed_cell(project_root: pathlib.Path) -> ValidationBundle:
    """Twelve-particle two-type preset, loaded fresh for every test."""
    return load_bundle_from_yaml(project_root / "config" / "presets" / "mixed_cell.yaml")


@pytest.fixture
def worker_group() -> Callable[[int, Callable[[Communicator], Any]], List[Any]]:
    return run_workers
