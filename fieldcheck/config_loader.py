"""
Utilities for loading validation runs from YAML configuration files.
"""

from __future__ import annotations

from dataclasses import dataclass
import math
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import yaml

from fieldcore import Particle, SwitchingWindow, TypeScaleTable

from .solvers import EwaldParameters


@dataclass
class ValidationSettings:
    n_global: int
    cycle: float
    images: int = 0
    verbose: bool = False


@dataclass
class ValidationBundle:
    """Container returned by configuration loader."""

    settings: ValidationSettings
    table: TypeScaleTable
    window: SwitchingWindow
    particles: List[Particle]
    ewald: Optional[EwaldParameters]
    metadata: Dict[str, Any]


def load_bundle_from_yaml(path: Path) -> ValidationBundle:
    """Load particles, interaction tables and run settings from a YAML config."""
    data = _load_yaml(path)
    particles = _build_particles(data.get("particles", []))
    settings = _build_settings(data.get("system", {}), len(particles))
    vdw = data.get("van_der_waals")
    if not isinstance(vdw, dict):
        raise ValueError(f"YAML file {path} requires a 'van_der_waals' section.")
    table = _build_table(vdw)
    window = SwitchingWindow(cuton=float(vdw["cuton"]), cutoff=float(vdw["cutoff"]))
    for particle in particles:
        if not 0 <= particle.type_index < table.num_types:
            raise ValueError(
                f"Particle {particle.id} has type {particle.type_index}, "
                f"table defines {table.num_types} types."
            )
    ewald = _build_ewald(data.get("ewald"), settings.cycle)
    return ValidationBundle(
        settings=settings,
        table=table,
        window=window,
        particles=particles,
        ewald=ewald,
        metadata=data.get("metadata", {}),
    )


def _load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        content = yaml.safe_load(handle)
    if not isinstance(content, dict):
        raise ValueError(f"YAML file {path} must contain a mapping at the root.")
    return content


def _build_settings(config: Dict[str, Any], particle_count: int) -> ValidationSettings:
    if "cycle" not in config:
        raise ValueError("system.cycle is required.")
    n_global = int(config.get("n_global", particle_count))
    if n_global != particle_count:
        raise ValueError(
            f"system.n_global is {n_global} but {particle_count} particles are listed."
        )
    cycle = float(config["cycle"])
    if cycle <= 0:
        raise ValueError(f"system.cycle must be positive, got {cycle}.")
    return ValidationSettings(
        n_global=n_global,
        cycle=cycle,
        images=int(config.get("images", 0)),
        verbose=bool(config.get("verbose", False)),
    )


def _build_table(config: Dict[str, Any]) -> TypeScaleTable:
    num_types = int(config.get("num_types", 1))
    arrays = [
        _flatten_square(config.get(key), num_types, key) for key in ("rscale", "gscale", "fgscale")
    ]
    return TypeScaleTable.from_arrays(num_types, *arrays)


def _flatten_square(value: Any, num_types: int, key: str) -> List[float]:
    if value is None:
        raise ValueError(f"van_der_waals.{key} is required.")
    if isinstance(value, (int, float)):
        return [float(value)] * (num_types * num_types)
    if not isinstance(value, Iterable):
        raise ValueError(f"van_der_waals.{key} must be a number or a table.")
    rows = list(value)
    if rows and all(isinstance(row, (list, tuple)) for row in rows):
        if len(rows) != num_types or any(len(row) != num_types for row in rows):
            raise ValueError(f"van_der_waals.{key} must be {num_types}x{num_types}.")
        return [float(entry) for row in rows for entry in row]
    if len(rows) != num_types * num_types:
        raise ValueError(f"van_der_waals.{key} must hold {num_types * num_types} values.")
    return [float(entry) for entry in rows]


def _build_ewald(config: Optional[Dict[str, Any]], cycle: float) -> Optional[EwaldParameters]:
    if not config:
        return None
    return EwaldParameters(
        ksize=int(config["ksize"]),
        alpha=float(config.get("alpha", 10.0 / cycle)),
        sigma=float(config.get("sigma", 0.25 / math.pi)),
        cutoff=float(config["cutoff"]),
        cycle=cycle,
    )


def _build_particles(entries: List[Dict[str, Any]]) -> List[Particle]:
    particles: List[Particle] = []
    seen = set()
    for entry in entries:
        position = _tuple3(entry.get("position"), "position")
        previous = entry.get("previous_position")
        particle = Particle(
            id=int(entry["id"]),
            type_index=int(entry.get("type", 0)),
            charge=float(entry.get("charge", 0.0)),
            position=position,
            previous_position=_tuple3(previous, "previous_position") if previous is not None else None,
        )
        if particle.id in seen:
            raise ValueError(f"Duplicate particle id {particle.id}.")
        seen.add(particle.id)
        particles.append(particle)
    ids = sorted(seen)
    if ids != list(range(len(ids))):
        raise ValueError("Particle ids must cover 0..N-1 exactly once.")
    return particles


def _tuple3(value: Any, key: str) -> Tuple[float, float, float]:
    if not isinstance(value, Sequence) or isinstance(value, str):
        raise ValueError(f"{key} must be a list of 3 numbers.")
    values = list(value)
    if len(values) != 3:
        raise ValueError(f"{key} must contain exactly 3 entries.")
    return float(values[0]), float(values[1]), float(values[2])
