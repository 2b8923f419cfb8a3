"""
Ownership exchange between workers.

Particles travel folded into the primary cell together with their packed
index, and are unfolded again on arrival.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence, Tuple

from fieldcore import (
    EncodedIndex,
    Particle,
    PartitionAssignment,
    Vector,
    unwrap,
    wrap,
)

from .comm import Communicator

logger = logging.getLogger(__name__)

# (packed index, type index, charge, folded position, previous position)
ParticleRecord = Tuple[int, int, float, Vector, Optional[Vector]]


def pack_particle(particle: Particle, cycle: float) -> ParticleRecord:
    folded, flags = wrap(particle.position, cycle)
    index = EncodedIndex(particle.id, flags)
    return (
        index.encode(),
        particle.type_index,
        particle.charge,
        folded,
        particle.previous_position,
    )


def unpack_particle(record: ParticleRecord, cycle: float) -> Particle:
    packed, type_index, charge, folded, previous = record
    index = EncodedIndex.decode(packed)
    return Particle(
        id=index.id,
        type_index=type_index,
        charge=charge,
        position=unwrap(folded, cycle, index.flags),
        previous_position=previous,
    )


def redistribute(
    particles: Sequence[Particle],
    assignment: PartitionAssignment,
    comm: Communicator,
    cycle: float,
) -> List[Particle]:
    """Move every particle to the worker that owns its global id.

    Returns this worker's particles sorted by id, with fresh accumulators.
    """
    if assignment.num_workers != comm.size:
        raise ValueError(
            f"Assignment covers {assignment.num_workers} workers, group has {comm.size}."
        )
    outgoing: List[List[ParticleRecord]] = [[] for _ in range(comm.size)]
    for particle in particles:
        outgoing[assignment.owner(particle.id)].append(pack_particle(particle, cycle))

    incoming = comm.alltoall(outgoing)
    owned = [unpack_particle(record, cycle) for batch in incoming for record in batch]
    owned.sort(key=lambda particle: particle.id)

    begin, end = assignment.local_range(comm.rank)
    received = [particle.id for particle in owned]
    if received != list(range(begin, end)):
        raise ValueError(
            f"Rank {comm.rank} received {len(received)} particles for ids "
            f"[{begin}, {end}); ids must cover the range exactly once."
        )
    logger.debug("Rank %d owns ids [%d, %d).", comm.rank, begin, end)
    return owned


def gather_global(particles: Sequence[Particle], comm: Communicator) -> List[Particle]:
    """Collect every worker's particles, ordered by global id."""
    shared: List[Any] = [
        (p.id, p.type_index, p.charge, p.position) for p in particles
    ]
    everyone = [
        Particle(id=pid, type_index=type_index, charge=charge, position=position)
        for batch in comm.allgather(shared)
        for pid, type_index, charge, position in batch
    ]
    everyone.sort(key=lambda particle: particle.id)
    return everyone
