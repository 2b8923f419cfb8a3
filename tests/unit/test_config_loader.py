"""Tests for YAML validation config loader."""

from __future__ import annotations

import math
from pathlib import Path

import pytest
import yaml

from fieldcore import PairScale
from fieldcheck.config_loader import load_bundle_from_yaml


def write_config(tmp_path: Path, data) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def minimal_config(**overrides):
    data = {
        "system": {"cycle": 10.0},
        "van_der_waals": {"cuton": 3.0, "cutoff": 4.0, "rscale": 1.0, "gscale": 1.0, "fgscale": -6.0},
        "particles": [
            {"id": 0, "position": [1.0, 1.0, 1.0]},
            {"id": 1, "position": [2.0, 1.0, 1.0]},
        ],
    }
    data.update(overrides)
    return data


def test_loads_mixed_cell(mixed_cell) -> None:
    assert len(mixed_cell.particles) == 12
    assert mixed_cell.metadata["name"] == "Mixed Cell"
    assert mixed_cell.settings.n_global == 12
    assert mixed_cell.settings.images == 3
    assert mixed_cell.settings.verbose is True
    assert mixed_cell.window.cuton == 3.5
    assert mixed_cell.table.num_types == 2
    assert mixed_cell.table.lookup(0, 1) == PairScale(0.8, 0.5, -2.4)
    assert mixed_cell.particles[7].type_index == 1
    assert mixed_cell.particles[7].position == (8.8, 9.7, 0.2)


def test_ewald_defaults_follow_cell(mixed_cell) -> None:
    ewald = mixed_cell.ewald
    assert ewald is not None
    assert ewald.ksize == 8
    assert ewald.alpha == pytest.approx(1.0)
    assert ewald.sigma == pytest.approx(0.25 / math.pi)
    assert ewald.cycle == 10.0


def test_template_keeps_previous_position(project_root) -> None:
    bundle = load_bundle_from_yaml(project_root / "config" / "template.yaml")
    assert bundle.particles[0].previous_position is None
    assert bundle.particles[1].previous_position == (11.4, 10.0, 10.0)
    assert bundle.particles[1].charge == -0.5


def test_scalar_tables_broadcast(tmp_path) -> None:
    bundle = load_bundle_from_yaml(write_config(tmp_path, minimal_config()))
    assert bundle.table.lookup(0, 0) == PairScale(1.0, 1.0, -6.0)
    assert bundle.ewald is None
    assert bundle.settings.images == 0


def test_flat_tables_accepted(tmp_path) -> None:
    config = minimal_config()
    config["van_der_waals"].update(num_types=2, rscale=[1.0, 2.0, 3.0, 4.0])
    bundle = load_bundle_from_yaml(write_config(tmp_path, config))
    assert bundle.table.lookup(1, 0).rescale == 3.0


@pytest.mark.parametrize(
    "mutate",
    [
        lambda c: c["system"].update(n_global=3),
        lambda c: c["system"].pop("cycle"),
        lambda c: c["particles"][1].update(id=0),
        lambda c: c["particles"][1].update(id=5),
        lambda c: c["particles"][1].update(type=1),
        lambda c: c["particles"][0].update(position=[1.0, 2.0]),
        lambda c: c["van_der_waals"].update(num_types=2, rscale=[[1.0, 1.0]]),
        lambda c: c["van_der_waals"].update(cuton=5.0),
        lambda c: c.pop("van_der_waals"),
    ],
)
def test_invalid_configs_rejected(tmp_path, mutate) -> None:
    config = minimal_config()
    mutate(config)
    with pytest.raises(ValueError):
        load_bundle_from_yaml(write_config(tmp_path, config))


def test_root_must_be_mapping(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_bundle_from_yaml(path)
