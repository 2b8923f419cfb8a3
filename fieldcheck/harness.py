"""
Cross-producer validation of force/potential fields.

Two producers evaluate the same owned partition in turn; the harness reduces
four scalars across the worker group and reports relative L2 errors of the
total potential and of the per-particle forces. The second producer is the
reference that normalizes both errors.
"""

from __future__ import annotations

from contextlib import ExitStack
from dataclasses import dataclass, field
import logging
import math
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from fieldcore import (
    Particle,
    Vector,
    vector_add,
    vector_norm2,
    vector_sub,
    vector_zero,
    zero_accumulators,
)

from .comm import Communicator

logger = logging.getLogger(__name__)


@dataclass
class ParticleField:
    """Per-particle potential and force keyed by global id."""

    potential: Dict[int, float] = field(default_factory=dict)
    force: Dict[int, Vector] = field(default_factory=dict)

    @classmethod
    def from_particles(cls, particles: Iterable[Particle]) -> "ParticleField":
        result = cls()
        for particle in particles:
            result.add(particle.id, particle.potential, particle.force)
        return result

    def add(self, particle_id: int, potential: float, force: Vector) -> None:
        self.potential[particle_id] = self.potential.get(particle_id, 0.0) + potential
        self.force[particle_id] = vector_add(self.force.get(particle_id, vector_zero()), force)

    def ids(self) -> List[int]:
        return sorted(self.potential)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "particles": [
                {"id": pid, "potential": self.potential[pid], "force": list(self.force[pid])}
                for pid in self.ids()
            ]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParticleField":
        entries = data.get("particles")
        if not isinstance(entries, list):
            raise ValueError("Field data must contain a 'particles' list.")
        result = cls()
        for entry in entries:
            force = entry.get("force", (0.0, 0.0, 0.0))
            if len(force) != 3:
                raise ValueError(f"Force of particle {entry.get('id')} must have 3 entries.")
            result.add(
                int(entry["id"]),
                float(entry.get("potential", 0.0)),
                (float(force[0]), float(force[1]), float(force[2])),
            )
        return result


class FieldProducer(Protocol):
    """Anything that turns a local particle batch into a per-particle field."""

    name: str

    def evaluate(self, particles: Sequence[Particle]) -> ParticleField:
        ...


@dataclass
class ErrorReport:
    potential_rel: float
    force_rel: float
    label: str = ""

    def within(self, potential_tol: float, force_tol: float) -> bool:
        return self.potential_rel <= potential_tol and self.force_rel <= force_tol


def _ratio(numerator: float, denominator: float) -> float:
    if denominator == 0.0:
        return math.nan if numerator == 0.0 else math.inf
    return numerator / denominator


@dataclass
class ValidationSums:
    pot_sum_a: float = 0.0
    pot_sum_b: float = 0.0
    acc_diff: float = 0.0
    acc_norm: float = 0.0

    @classmethod
    def from_fields(
        cls, field_a: ParticleField, field_b: ParticleField, ids: Iterable[int]
    ) -> "ValidationSums":
        sums = cls()
        for pid in ids:
            for name, source in (("A", field_a), ("B", field_b)):
                if pid not in source.potential or pid not in source.force:
                    raise ValueError(f"Producer {name} returned no value for particle {pid}.")
            sums.pot_sum_a += field_a.potential[pid]
            sums.pot_sum_b += field_b.potential[pid]
            sums.acc_diff += vector_norm2(vector_sub(field_a.force[pid], field_b.force[pid]))
            sums.acc_norm += vector_norm2(field_b.force[pid])
        return sums

    def __add__(self, other: "ValidationSums") -> "ValidationSums":
        return ValidationSums(
            self.pot_sum_a + other.pot_sum_a,
            self.pot_sum_b + other.pot_sum_b,
            self.acc_diff + other.acc_diff,
            self.acc_norm + other.acc_norm,
        )

    def reduce(self, comm: Communicator) -> "ValidationSums":
        totals = comm.allreduce_array([self.pot_sum_a, self.pot_sum_b, self.acc_diff, self.acc_norm])
        return ValidationSums(*totals)

    def report(self, label: str = "") -> ErrorReport:
        pot_diff = (self.pot_sum_a - self.pot_sum_b) ** 2
        pot_norm = self.pot_sum_b**2
        return ErrorReport(
            potential_rel=math.sqrt(_ratio(pot_diff, pot_norm)),
            force_rel=math.sqrt(_ratio(self.acc_diff, self.acc_norm)),
            label=label,
        )


class ValidationHarness:
    """
    Runs two producers over the same owned particles and compares them.

    Both producers must see the same ownership partition and fold state;
    that is left to the caller.
    """

    def __init__(self, comm: Communicator, verbose: bool = False):
        self.comm = comm
        self.verbose = verbose

    def evaluate(self, producer: FieldProducer, particles: Sequence[Particle]) -> ParticleField:
        zero_accumulators(particles)
        return producer.evaluate(particles)

    def compare(
        self,
        producer_a: FieldProducer,
        producer_b: FieldProducer,
        particles: Sequence[Particle],
        label: Optional[str] = None,
    ) -> ErrorReport:
        label = label or f"{producer_a.name} vs. {producer_b.name}"
        field_a = self.evaluate(producer_a, particles)
        field_b = self.evaluate(producer_b, particles)
        local = ValidationSums.from_fields(field_a, field_b, (p.id for p in particles))
        report = local.reduce(self.comm).report(label)
        if self.verbose and self.comm.is_root:
            logger.info("%s", label)
            logger.info("Rel. L2 Error (pot) %.6e", report.potential_rel)
            logger.info("Rel. L2 Error (acc) %.6e", report.force_rel)
        return report


class ValidationRun:
    """
    Scope for one validation run that owns its solver handles.

    Every handle passed through :meth:`own` is closed when the block exits,
    whether or not it raised.
    """

    def __init__(self, comm: Communicator, verbose: bool = False):
        self.harness = ValidationHarness(comm, verbose=verbose)
        self._stack: Optional[ExitStack] = None

    def __enter__(self) -> "ValidationRun":
        self._stack = ExitStack()
        return self

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        stack, self._stack = self._stack, None
        if stack is not None:
            return stack.__exit__(exc_type, exc, tb)
        return None

    def own(self, handle: Any) -> Any:
        if self._stack is None:
            raise RuntimeError("ValidationRun.own() called outside a with block.")
        close = getattr(handle, "close", None)
        if callable(close):
            self._stack.callback(close)
        return handle

    def compare(
        self,
        producer_a: FieldProducer,
        producer_b: FieldProducer,
        particles: Sequence[Particle],
        label: Optional[str] = None,
    ) -> ErrorReport:
        return self.harness.compare(producer_a, producer_b, particles, label=label)
