"""
Field producers: the direct reference kernel plus adapters for external
long-range and reciprocal-space solvers.

External solvers report per-unit-charge potential and field for a local
batch. The adapters own the collective steps around them (dipole and wave
reductions) and the charge times Coulomb-constant scaling.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, List, Optional, Protocol, Sequence, Tuple

from fieldcore import (
    COULOMB_CONSTANT,
    Particle,
    SwitchingWindow,
    TypeScaleTable,
    Vector,
    direct_van_der_waals,
    vector_add,
    vector_scale,
    vector_zero,
)

from .comm import Communicator
from .harness import ParticleField
from .partition import gather_global

logger = logging.getLogger(__name__)

# per-particle (potential, field) for unit charge
SolverValues = List[Tuple[float, Vector]]


@dataclass
class EwaldParameters:
    ksize: int
    alpha: float
    sigma: float
    cutoff: float
    cycle: float

    def __post_init__(self) -> None:
        if self.ksize < 1:
            raise ValueError(f"ksize must be positive, got {self.ksize}.")
        if self.alpha <= 0 or self.cutoff <= 0 or self.cycle <= 0:
            raise ValueError("alpha, cutoff and cycle must be positive.")


@dataclass
class Wave:
    k: Tuple[int, int, int]
    real: float = 0.0
    imag: float = 0.0


class LongRangeSolver(Protocol):
    def evaluate(self, particles: Sequence[Particle]) -> SolverValues:
        ...

    def dipole_correction(
        self,
        values: SolverValues,
        particles: Sequence[Particle],
        global_dipole: Vector,
        global_count: int,
    ) -> SolverValues:
        ...


class ReciprocalSpaceSolver(Protocol):
    def init_waves(self) -> List[Wave]:
        ...

    def dft(self, waves: List[Wave], particles: Sequence[Particle]) -> List[Wave]:
        ...

    def wave_part(self, waves: List[Wave]) -> List[Wave]:
        ...

    def idft(self, waves: List[Wave], particles: Sequence[Particle]) -> SolverValues:
        ...

    def self_term(self, values: SolverValues, particles: Sequence[Particle]) -> SolverValues:
        ...


def _check_length(values: SolverValues, particles: Sequence[Particle], step: str) -> None:
    if len(values) != len(particles):
        raise ValueError(
            f"{step} returned {len(values)} values for {len(particles)} particles."
        )


def _scaled_field(
    values: SolverValues, particles: Sequence[Particle], coulomb_constant: float
) -> ParticleField:
    result = ParticleField()
    for particle, (potential, field_vec) in zip(particles, values):
        factor = particle.charge * coulomb_constant
        particle.potential += potential * factor
        particle.force = vector_add(particle.force, vector_scale(field_vec, factor))
        result.add(particle.id, potential * factor, vector_scale(field_vec, factor))
    return result


def local_dipole(particles: Sequence[Particle]) -> Vector:
    dipole = vector_zero()
    for particle in particles:
        dipole = vector_add(dipole, vector_scale(particle.position, particle.charge))
    return dipole


class DirectVanDerWaalsProducer:
    """Switched inverse-12/6 sum over every global particle."""

    name = "Direct Van der Waals"

    def __init__(
        self,
        table: TypeScaleTable,
        window: SwitchingWindow,
        cycle: float,
        comm: Communicator,
    ):
        self.table = table
        self.window = window
        self.cycle = cycle
        self.comm = comm

    def evaluate(self, particles: Sequence[Particle]) -> ParticleField:
        everyone = gather_global(particles, self.comm)
        direct_van_der_waals(particles, everyone, self.table, self.window, self.cycle)
        return ParticleField.from_particles(particles)


class RecordedFieldProducer:
    """Serves a field recorded earlier by an external solver."""

    def __init__(self, recorded: ParticleField, name: str = "Reference"):
        self.recorded = recorded
        self.name = name

    def evaluate(self, particles: Sequence[Particle]) -> ParticleField:
        result = ParticleField()
        for particle in particles:
            if particle.id not in self.recorded.potential:
                raise ValueError(f"Recorded field has no entry for particle {particle.id}.")
            potential = self.recorded.potential[particle.id]
            force = self.recorded.force[particle.id]
            particle.potential += potential
            particle.force = vector_add(particle.force, force)
            result.add(particle.id, potential, force)
        return result


class LongRangeProducer:
    """Adapter for a hierarchical long-range solver with dipole correction."""

    name = "FMM"

    def __init__(
        self,
        solver: LongRangeSolver,
        comm: Communicator,
        coulomb_constant: float = COULOMB_CONSTANT,
    ):
        self.solver = solver
        self.comm = comm
        self.coulomb_constant = coulomb_constant

    def evaluate(self, particles: Sequence[Particle]) -> ParticleField:
        values = self.solver.evaluate(particles)
        _check_length(values, particles, "Long-range solver")
        global_dipole = self.comm.allreduce_vector(local_dipole(particles))
        global_count = int(self.comm.allreduce_sum(float(len(particles))))
        values = self.solver.dipole_correction(values, particles, global_dipole, global_count)
        _check_length(values, particles, "Dipole correction")
        return _scaled_field(values, particles, self.coulomb_constant)

    def close(self) -> None:
        close = getattr(self.solver, "close", None)
        if callable(close):
            close()


class EwaldProducer:
    """Adapter for a reciprocal-space solver, with optional real-space part."""

    name = "Ewald"

    def __init__(
        self,
        solver: ReciprocalSpaceSolver,
        comm: Communicator,
        coulomb_constant: float = COULOMB_CONSTANT,
        real_space: Optional[Any] = None,
    ):
        self.solver = solver
        self.comm = comm
        self.coulomb_constant = coulomb_constant
        self.real_space = real_space

    def reduce_waves(self, waves: List[Wave]) -> List[Wave]:
        flat: List[float] = []
        for wave in waves:
            flat.extend((wave.real, wave.imag))
        totals = self.comm.allreduce_array(flat)
        return [
            Wave(wave.k, totals[2 * idx], totals[2 * idx + 1]) for idx, wave in enumerate(waves)
        ]

    def evaluate(self, particles: Sequence[Particle]) -> ParticleField:
        values: SolverValues = [(0.0, vector_zero()) for _ in particles]
        if self.real_space is not None:
            real = self.real_space.real_part(particles)
            _check_length(real, particles, "Ewald real part")
            values = _combine(values, real)
        waves = self.solver.init_waves()
        waves = self.solver.dft(waves, particles)
        waves = self.reduce_waves(waves)
        waves = self.solver.wave_part(waves)
        wave_values = self.solver.idft(waves, particles)
        _check_length(wave_values, particles, "Ewald wave part")
        values = _combine(values, wave_values)
        values = self.solver.self_term(values, particles)
        _check_length(values, particles, "Ewald self term")
        logger.debug("Ewald pass over %d local particles, %d waves.", len(particles), len(waves))
        return _scaled_field(values, particles, self.coulomb_constant)

    def close(self) -> None:
        for handle in (self.solver, self.real_space):
            close = getattr(handle, "close", None)
            if callable(close):
                close()


def _combine(left: SolverValues, right: SolverValues) -> SolverValues:
    return [(pa + pb, vector_add(fa, fb)) for (pa, fa), (pb, fb) in zip(left, right)]
