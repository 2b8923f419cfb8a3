"""
fieldcheck direct van der Waals oracle.

Loads a YAML validation config, distributes the particles over the worker
group, evaluates the direct switched kernel over each worker's share and,
when a recorded reference field is supplied, reports relative L2 errors:

    mpiexec -n 4 python scripts/run_validation.py --config config/presets/mixed_cell.yaml \
        --reference fmm_vdw.json --mpi

Field JSON layout (both --reference and --dump):
    {"particles": [{"id": 0, "potential": -1.2, "force": [0.1, 0.0, -0.3]}, ...]}
"""

from __future__ import annotations

import argparse
import json
import logging
import pathlib
import sys
from typing import Optional

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from fieldcore import PartitionAssignment  # noqa: E402
from fieldcheck.comm import check_periodic_layout, get_communicator  # noqa: E402
from fieldcheck.config_loader import load_bundle_from_yaml  # noqa: E402
from fieldcheck.harness import ErrorReport, ParticleField, ValidationHarness, ValidationRun  # noqa: E402
from fieldcheck.partition import redistribute  # noqa: E402
from fieldcheck.solvers import DirectVanDerWaalsProducer, RecordedFieldProducer  # noqa: E402

logger = logging.getLogger("fieldcheck.run_validation")


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Direct van der Waals reference run.")
    parser.add_argument(
        "--config",
        type=pathlib.Path,
        required=True,
        help="YAML validation config (system, van_der_waals, particles).",
    )
    parser.add_argument(
        "--reference",
        type=pathlib.Path,
        default=None,
        help="Recorded field JSON from the solver under test.",
    )
    parser.add_argument(
        "--dump",
        type=pathlib.Path,
        default=None,
        help="Write the direct field to this JSON file (rank 0 gathers).",
    )
    parser.add_argument(
        "--mpi",
        action="store_true",
        help="Run over mpi4py COMM_WORLD instead of a single worker.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level for rank 0.",
    )
    return parser.parse_args(argv)


def load_field(path: pathlib.Path) -> ParticleField:
    with path.open("r", encoding="utf-8") as handle:
        return ParticleField.from_dict(json.load(handle))


def write_field(path: pathlib.Path, field: ParticleField) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(field.to_dict(), handle, indent=2)
        handle.write("\n")


def main(argv: Optional[list] = None) -> Optional[ErrorReport]:
    args = parse_args(argv)
    comm = get_communicator(use_mpi=args.mpi)
    level = args.log_level.upper() if comm.is_root else "WARNING"
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    bundle = load_bundle_from_yaml(args.config)
    settings = bundle.settings
    check_periodic_layout(settings.images, comm.size)

    assignment = PartitionAssignment.build(settings.n_global, comm.size)
    # rank 0 scatters the file contents; the other workers start empty
    initial = bundle.particles if comm.is_root else []
    owned = redistribute(initial, assignment, comm, settings.cycle)

    direct = DirectVanDerWaalsProducer(bundle.table, bundle.window, settings.cycle, comm)
    report: Optional[ErrorReport] = None
    with ValidationRun(comm, verbose=settings.verbose) as run:
        if args.reference is not None:
            reference = run.own(RecordedFieldProducer(load_field(args.reference), name="Reference"))
            report = run.compare(reference, direct, owned, label="Reference vs. direct")
            field = ParticleField.from_particles(owned)
            if comm.is_root:
                logger.info(
                    "potential rel. error %.6e, force rel. error %.6e",
                    report.potential_rel,
                    report.force_rel,
                )
        else:
            field = ValidationHarness(comm).evaluate(direct, owned)

    if args.dump is not None:
        gathered = comm.allgather(field.to_dict())
        merged = ParticleField.from_dict(
            {"particles": [entry for part in gathered for entry in part["particles"]]}
        )
        if comm.is_root:
            write_field(args.dump, merged)
            logger.info("Wrote direct field for %d particles to %s", len(merged.ids()), args.dump)
    return report


if __name__ == "__main__":
    main()
