"""
Reference short-range kernel and periodic bookkeeping for fieldcheck.

Conventions:
    - Positions: arbitrary length unit, cubic periodic cell of edge ``cycle``
    - Type indices: 0-based category indices into a TypeScaleTable
    - Charges: elementary charge (e)
    - Coulomb output: kcal/mol when scaled by COULOMB_CONSTANT
    - Accumulators are additive; callers zero them before each pass

The direct van der Waals kernel is deliberately O(n_local * n_global). It
exists to check approximate solvers, not to replace them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import math
from typing import Iterable, List, Optional, Sequence, Tuple


Vector = Tuple[float, float, float]

COULOMB_CONSTANT = 332.0716  # kcal mol^-1 A e^-2
ID_BIT_WIDTH = 29
FLAG_BIT_WIDTH = 3
ID_MASK = (1 << ID_BIT_WIDTH) - 1
FLAG_LIMIT = 1 << FLAG_BIT_WIDTH
WORD_MASK = 0xFFFFFFFF


def vector_add(a: Vector, b: Vector) -> Vector:
    return (a[0] + b[0], a[1] + b[1], a[2] + b[2])


def vector_sub(a: Vector, b: Vector) -> Vector:
    return (a[0] - b[0], a[1] - b[1], a[2] - b[2])


def vector_scale(v: Vector, scalar: float) -> Vector:
    return (v[0] * scalar, v[1] * scalar, v[2] * scalar)


def vector_norm2(v: Vector) -> float:
    return v[0] * v[0] + v[1] * v[1] + v[2] * v[2]


def vector_zero() -> Vector:
    return (0.0, 0.0, 0.0)


def split_range(begin: int, end: int, worker_index: int, num_workers: int) -> Tuple[int, int]:
    """Return the contiguous share of ``[begin, end)`` owned by ``worker_index``.

    The first ``size % num_workers`` shares receive one extra element, so
    share sizes differ by at most one and tile the range exactly.
    """
    if end <= begin:
        raise ValueError(f"Empty range [{begin}, {end}) cannot be split.")
    if num_workers < 1:
        raise ValueError(f"num_workers must be positive, got {num_workers}.")
    if not 0 <= worker_index < num_workers:
        raise ValueError(f"worker_index {worker_index} outside [0, {num_workers}).")
    size = end - begin
    increment, remainder = divmod(size, num_workers)
    local_begin = begin + worker_index * increment + min(worker_index, remainder)
    local_end = local_begin + increment
    if remainder > worker_index:
        local_end += 1
    return local_begin, local_end


@dataclass(frozen=True)
class PartitionAssignment:
    """Ownership map from global id ranges to worker ranks."""

    begin: int
    end: int
    ranges: Tuple[Tuple[int, int], ...]

    @classmethod
    def build(cls, n_global: int, num_workers: int, begin: int = 0) -> "PartitionAssignment":
        end = begin + n_global
        ranges = tuple(split_range(begin, end, rank, num_workers) for rank in range(num_workers))
        return cls(begin=begin, end=end, ranges=ranges)

    @property
    def num_workers(self) -> int:
        return len(self.ranges)

    def local_range(self, rank: int) -> Tuple[int, int]:
        return self.ranges[rank]

    def sizes(self) -> List[int]:
        return [stop - start for start, stop in self.ranges]

    def owner(self, global_id: int) -> int:
        if not self.begin <= global_id < self.end:
            raise ValueError(f"Global id {global_id} outside [{self.begin}, {self.end}).")
        increment, remainder = divmod(self.end - self.begin, self.num_workers)
        offset = global_id - self.begin
        # the first `remainder` shares are one element longer
        boundary = remainder * (increment + 1)
        if offset < boundary:
            return offset // (increment + 1)
        return remainder + (offset - boundary) // increment


def wrap(position: Vector, cycle: float) -> Tuple[Vector, int]:
    """Fold ``position`` into the primary cell, returning per-axis fold flags.

    At most one fold per axis is applied; inputs must lie within one cell
    width of ``[0, cycle]``.
    """
    coords = list(position)
    flags = 0
    for d in range(3):
        if coords[d] < 0:
            coords[d] += cycle
            flags |= 1 << d
        if coords[d] > cycle:
            coords[d] -= cycle
            flags |= 1 << d
    return (coords[0], coords[1], coords[2]), flags


def unwrap(position: Vector, cycle: float, flags: int) -> Vector:
    """Undo :func:`wrap` for every axis whose flag is set.

    The direction of the restoring shift is guessed from which half of the
    cell the coordinate sits in. A coordinate that was folded and landed in
    the other half comes back one cell off; callers rely on the result only
    modulo ``cycle``.
    """
    coords = list(position)
    half = cycle / 2
    for d in range(3):
        if (flags >> d) & 1:
            coords[d] += -cycle if coords[d] > half else cycle
    return (coords[0], coords[1], coords[2])


def minimum_image(delta: Vector, cycle: float) -> Vector:
    """Fold a displacement once onto its nearest periodic image."""
    half = 0.5 * cycle
    folded = []
    for value in delta:
        if value > half:
            value -= cycle
        elif value < -half:
            value += cycle
        folded.append(value)
    return (folded[0], folded[1], folded[2])


@dataclass(frozen=True)
class EncodedIndex:
    """Global particle id plus per-axis wrap flags.

    The packed form keeps the 32-bit layout used by the exchange peers: the
    low 29 bits hold the id and the top three bits hold the flags.
    """

    id: int
    flags: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.id <= ID_MASK:
            raise ValueError(f"Particle id {self.id} does not fit in {ID_BIT_WIDTH} bits.")
        if not 0 <= self.flags < FLAG_LIMIT:
            raise ValueError(f"Wrap flags {self.flags} do not fit in {FLAG_BIT_WIDTH} bits.")

    def encode(self) -> int:
        return self.id | (self.flags << ID_BIT_WIDTH)

    @classmethod
    def decode(cls, value: int) -> "EncodedIndex":
        # signed 32-bit peers hand back negative values once bit 31 is set
        unsigned = value & WORD_MASK
        if unsigned != value and not -(1 << 31) <= value < 0:
            raise ValueError(f"Encoded index {value} wider than 32 bits.")
        return cls(id=unsigned & ID_MASK, flags=unsigned >> ID_BIT_WIDTH)


@dataclass
class Particle:
    id: int
    type_index: int
    charge: float
    position: Vector
    potential: float = 0.0
    force: Vector = field(default_factory=vector_zero)
    previous_position: Optional[Vector] = None


def zero_accumulators(particles: Iterable[Particle]) -> None:
    for particle in particles:
        particle.potential = 0.0
        particle.force = vector_zero()


@dataclass(frozen=True)
class PairScale:
    rescale: float
    energy_scale: float
    force_energy_scale: float


class TypeScaleTable:
    """
    Pairwise (rescale, energy scale, force-energy scale) triples indexed by
    the ordered pair of particle categories.
    """

    def __init__(self, num_types: int, entries: Sequence[PairScale]):
        if num_types < 1:
            raise ValueError(f"num_types must be positive, got {num_types}.")
        if len(entries) != num_types * num_types:
            raise ValueError(
                f"Expected {num_types * num_types} table entries, got {len(entries)}."
            )
        for index, entry in enumerate(entries):
            if entry.rescale <= 0:
                raise ValueError(
                    f"rescale for type pair {divmod(index, num_types)} must be positive, "
                    f"got {entry.rescale}."
                )
        self.num_types = num_types
        self._entries: Tuple[PairScale, ...] = tuple(entries)

    @classmethod
    def from_arrays(
        cls,
        num_types: int,
        rscale: Sequence[float],
        gscale: Sequence[float],
        fgscale: Sequence[float],
    ) -> "TypeScaleTable":
        """Build from three flat row-major ``num_types * num_types`` arrays."""
        for name, values in (("rscale", rscale), ("gscale", gscale), ("fgscale", fgscale)):
            if len(values) != num_types * num_types:
                raise ValueError(
                    f"{name} must hold {num_types * num_types} values, got {len(values)}."
                )
        entries = [
            PairScale(float(rs), float(gs), float(fgs))
            for rs, gs, fgs in zip(rscale, gscale, fgscale)
        ]
        return cls(num_types, entries)

    @classmethod
    def uniform(
        cls, num_types: int, rescale: float, energy_scale: float, force_energy_scale: float
    ) -> "TypeScaleTable":
        entry = PairScale(rescale, energy_scale, force_energy_scale)
        return cls(num_types, [entry] * (num_types * num_types))

    @classmethod
    def lennard_jones(cls, epsilon: Sequence[float], sigma: Sequence[float]) -> "TypeScaleTable":
        """
        Table reproducing 4 eps [(s/r)^12 - (s/r)^6] with Lorentz-Berthelot
        mixing. The force scale makes the accumulated force equal -dE/dx.
        """
        if len(epsilon) != len(sigma):
            raise ValueError("epsilon and sigma must have one entry per type.")
        num_types = len(epsilon)
        entries: List[PairScale] = []
        for i in range(num_types):
            for j in range(num_types):
                eps = math.sqrt(epsilon[i] * epsilon[j])
                sig = 0.5 * (sigma[i] + sigma[j])
                rescale = 1.0 / (sig * sig)
                energy_scale = 4.0 * eps
                entries.append(PairScale(rescale, energy_scale, -6.0 * rescale * energy_scale))
        return cls(num_types, entries)

    def lookup(self, type_i: int, type_j: int) -> PairScale:
        if not (0 <= type_i < self.num_types and 0 <= type_j < self.num_types):
            raise IndexError(
                f"Type pair ({type_i}, {type_j}) outside table of {self.num_types} types."
            )
        return self._entries[type_i * self.num_types + type_j]


@dataclass(frozen=True)
class SwitchingWindow:
    cuton: float
    cutoff: float

    def __post_init__(self) -> None:
        if not 0 <= self.cuton < self.cutoff:
            raise ValueError(
                f"Switching window requires 0 <= cuton < cutoff, got {self.cuton}, {self.cutoff}."
            )


def switching_factor(r2: float, window: SwitchingWindow) -> Tuple[float, float]:
    """Return S(R2) and dS/dR2 of the quintic switch between cuton and cutoff."""
    cuton2 = window.cuton * window.cuton
    cutoff2 = window.cutoff * window.cutoff
    denom = (cutoff2 - cuton2) ** 3
    value = (cutoff2 - r2) ** 2 * (cutoff2 - 3 * cuton2 + 2 * r2) / denom
    slope = 6 * (cutoff2 - r2) * (cuton2 - r2) / denom
    return value, slope


def pair_terms(r2: float, scale: PairScale, window: SwitchingWindow) -> Tuple[float, float]:
    """
    Energy term and force scalar for one pair at squared distance ``r2``.

    Both branches satisfy force_scalar = -d(energy)/d(R2) / (3 * rescale),
    which keeps potential and force continuous across cuton and zero at the
    cutoff.
    """
    cutoff2 = window.cutoff * window.cutoff
    if r2 == 0.0 or r2 >= cutoff2:
        return 0.0, 0.0
    inv_r2 = 1.0 / (r2 * scale.rescale)
    inv_r6 = inv_r2 * inv_r2 * inv_r2
    energy = inv_r6 * (inv_r6 - 1)
    force_scalar = inv_r2 * inv_r6 * (2 * inv_r6 - 1)
    if r2 > window.cuton * window.cuton:
        switch, dswitch = switching_factor(r2, window)
        force_scalar = force_scalar * switch - energy * dswitch / (3 * scale.rescale)
        energy *= switch
    return energy, force_scalar


def direct_van_der_waals(
    local: Iterable[Particle],
    everyone: Sequence[Particle],
    table: TypeScaleTable,
    window: SwitchingWindow,
    cycle: float,
) -> None:
    """Accumulate full per-particle contributions from every global particle.

    Each local particle receives the sum over all ``j``; pair totals are not
    halved. Positions are folded into the primary cell first, so unwrapped
    inputs within one cell width of it still pair with their nearest image.
    """
    sources = [(source, wrap(source.position, cycle)[0]) for source in everyone]
    for target in local:
        folded, _ = wrap(target.position, cycle)
        pot = 0.0
        fx = fy = fz = 0.0
        for source, position in sources:
            delta = minimum_image(vector_sub(folded, position), cycle)
            r2 = vector_norm2(delta)
            if r2 == 0.0:
                continue
            scale = table.lookup(target.type_index, source.type_index)
            energy, force_scalar = pair_terms(r2, scale, window)
            if energy == 0.0 and force_scalar == 0.0:
                continue
            force_scalar *= scale.force_energy_scale
            pot += scale.energy_scale * energy
            fx += delta[0] * force_scalar
            fy += delta[1] * force_scalar
            fz += delta[2] * force_scalar
        target.potential += pot
        target.force = vector_sub(target.force, (fx, fy, fz))
