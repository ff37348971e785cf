from __future__ import annotations

import pytest

from tripsync._geo import bearing_degrees, format_duration, haversine_meters


def test_haversine_zero_for_same_point() -> None:
    assert haversine_meters(48.8566, 2.3522, 48.8566, 2.3522) == 0.0


def test_haversine_one_degree_latitude() -> None:
    # 2 * pi * 6_371_000 / 360
    assert haversine_meters(0.0, 0.0, 1.0, 0.0) == pytest.approx(111_194.93, abs=0.1)


def test_haversine_is_symmetric() -> None:
    a = haversine_meters(33.5731, -7.5898, 34.0209, -6.8416)
    b = haversine_meters(34.0209, -6.8416, 33.5731, -7.5898)
    assert a == pytest.approx(b)


def test_bearing_cardinal_directions() -> None:
    assert bearing_degrees(0.0, 0.0, 1.0, 0.0) == pytest.approx(0.0)
    assert bearing_degrees(0.0, 0.0, 0.0, 1.0) == pytest.approx(90.0)
    assert bearing_degrees(0.0, 0.0, -1.0, 0.0) == pytest.approx(180.0)
    assert bearing_degrees(0.0, 0.0, 0.0, -1.0) == pytest.approx(270.0)


@pytest.mark.parametrize(
    ("minutes", "expected"),
    [
        (0, "< 1 min"),
        (1, "1 min"),
        (59, "59 min"),
        (60, "1h"),
        (65, "1h 5min"),
        (120, "2h"),
    ],
)
def test_format_duration(minutes: int, expected: str) -> None:
    assert format_duration(minutes) == expected
