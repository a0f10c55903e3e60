import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from geo_math import bearing_deg, distance_km, nearest_stop  # noqa: E402
from presence_store import BusStop  # noqa: E402


def test_distance_between_nearby_campus_points():
    d = distance_km(11.0168, 76.9558, 11.0178, 76.9568)
    assert 0.15 < d < 0.16
    assert d == pytest.approx(0.1558, abs=1e-3)


def test_distance_is_symmetric_and_zero_for_same_point():
    assert distance_km(11.0168, 76.9558, 11.0168, 76.9558) == 0.0
    forward = distance_km(11.0168, 76.9558, 12.9716, 77.5946)
    backward = distance_km(12.9716, 77.5946, 11.0168, 76.9558)
    assert forward == pytest.approx(backward)


def test_one_degree_of_latitude_is_about_111_km():
    assert distance_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.19, abs=0.01)


@pytest.mark.parametrize(
    "target, expected",
    [
        ((1.0, 0.0), 0.0),
        ((0.0, 1.0), 90.0),
        ((-1.0, 0.0), 180.0),
        ((0.0, -1.0), 270.0),
    ],
)
def test_bearing_cardinal_directions(target, expected):
    assert bearing_deg(0.0, 0.0, *target) == pytest.approx(expected, abs=1e-9)


def test_nearest_stop_picks_closest_and_handles_empty_route():
    route = [
        BusStop(name="Main Gate", lat=11.0168, lng=76.9558, order=0),
        BusStop(name="Library", lat=11.0200, lng=76.9600, order=1),
        BusStop(name="Hostel", lat=11.0300, lng=76.9700, order=2),
    ]
    stop, km = nearest_stop(route, 11.0199, 76.9601)
    assert stop.name == "Library"
    assert km < 0.05
    assert nearest_stop([], 11.0, 76.0) is None
