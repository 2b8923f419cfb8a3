"""Tests for periodic folding and the packed particle index."""

from __future__ import annotations

import pytest

from fieldcore import ID_BIT_WIDTH, EncodedIndex, minimum_image, unwrap, wrap

CYCLE = 100.0


def _same_image(a: float, b: float) -> bool:
    shift = (a - b) / CYCLE
    return abs(shift - round(shift)) < 1e-12


def test_wrap_sets_flag_per_folded_axis() -> None:
    wrapped, flags = wrap((-10.0, 105.0, 50.0), CYCLE)
    assert wrapped == pytest.approx((90.0, 5.0, 50.0))
    assert flags == 0b011


def test_wrap_leaves_inside_untouched() -> None:
    wrapped, flags = wrap((0.0, 42.0, 100.0), CYCLE)
    assert wrapped == (0.0, 42.0, 100.0)
    assert flags == 0


def test_unwrap_restores_folded_coordinates() -> None:
    original = (-10.0, 105.0, 50.0)
    wrapped, flags = wrap(original, CYCLE)
    assert unwrap(wrapped, CYCLE, flags) == pytest.approx(original)


def test_unwrap_far_fold_returns_equivalent_image() -> None:
    # -60 folds to 40, which sits in the lower half and is shifted up instead
    wrapped, flags = wrap((-60.0, 160.0, 1.0), CYCLE)
    restored = unwrap(wrapped, CYCLE, flags)
    assert restored[0] == pytest.approx(140.0)
    assert restored[1] == pytest.approx(-40.0)
    assert restored[2] == 1.0


@pytest.mark.parametrize("coordinate", [-99.0, -51.0, -49.0, -0.5, 0.0, 37.0, 100.5, 149.0, 151.0, 199.0])
def test_wrap_unwrap_same_image(coordinate: float) -> None:
    wrapped, flags = wrap((coordinate, 0.0, 0.0), CYCLE)
    assert 0.0 <= wrapped[0] <= CYCLE
    restored = unwrap(wrapped, CYCLE, flags)
    assert _same_image(restored[0], coordinate)


def test_minimum_image_folds_once() -> None:
    assert minimum_image((60.0, -60.0, 10.0), CYCLE) == pytest.approx((-40.0, 40.0, 10.0))
    assert minimum_image((-98.5, 0.0, 0.0), CYCLE) == pytest.approx((1.5, 0.0, 0.0))


@pytest.mark.parametrize(
    "particle_id,flags",
    [(0, 0), (1, 7), (12345, 5), ((1 << ID_BIT_WIDTH) - 1, 0), ((1 << ID_BIT_WIDTH) - 1, 7)],
)
def test_encoded_index_round_trip(particle_id: int, flags: int) -> None:
    packed = EncodedIndex(particle_id, flags).encode()
    assert EncodedIndex.decode(packed) == EncodedIndex(particle_id, flags)


def test_encoded_index_layout() -> None:
    assert EncodedIndex(5, 0b010).encode() == 5 | (0b010 << 29)


def test_decode_accepts_signed_32bit_value() -> None:
    packed = EncodedIndex(42, 0b100).encode()
    signed = packed - (1 << 32)
    assert signed < 0
    assert EncodedIndex.decode(signed) == EncodedIndex(42, 0b100)


@pytest.mark.parametrize("particle_id,flags", [(1 << ID_BIT_WIDTH, 0), (-1, 0), (3, 8), (3, -1)])
def test_encoded_index_bounds(particle_id: int, flags: int) -> None:
    with pytest.raises(ValueError):
        EncodedIndex(particle_id, flags)


def test_decode_rejects_wide_value() -> None:
    with pytest.raises(ValueError):
        EncodedIndex.decode(1 << 33)


@pytest.mark.parametrize("value", [-(1 << 31) - 1, -(1 << 40) + 7])
def test_decode_rejects_value_below_signed_32bit(value: int) -> None:
    with pytest.raises(ValueError):
        EncodedIndex.decode(value)


def test_decode_accepts_most_negative_signed_32bit_value() -> None:
    assert EncodedIndex.decode(-(1 << 31)) == EncodedIndex(0, 0b100)
