import itertools
import math

import pytest

from livemap.schemas.map_data import LiveLocation
from livemap.services.geo import METERS_PER_DEGREE
from livemap.services.spread import ring_radius_m, spread_markers


def _loc(user_id, lat=37.0, lng=-122.0):
    return LiveLocation(user_id=user_id, lat=lat, lng=lng)


def _flat_distance_m(center_lat, center_lng, lat, lng):
    dy = (lat - center_lat) * METERS_PER_DEGREE
    dx = (lng - center_lng) * METERS_PER_DEGREE * math.cos(math.radians(center_lat))
    return math.hypot(dx, dy)


def test_single_location_is_unchanged():
    [m] = spread_markers([_loc("solo", 37.12345, -122.54321)])
    assert (m.lat, m.lng) == (37.12345, -122.54321)


def test_distinct_cells_are_unchanged():
    locs = [_loc("a", 37.0, -122.0), _loc("b", 37.001, -122.0)]
    out = spread_markers(locs)
    assert [(m.lat, m.lng) for m in out] == [(37.0, -122.0), (37.001, -122.0)]


@pytest.mark.parametrize("n, radius", [(2, 20.0), (3, 25.0), (4, 30.0), (7, 45.0)])
def test_ring_radius_grows_with_group(n, radius):
    assert ring_radius_m(n) == radius


@pytest.mark.parametrize("n", [2, 3, 5, 8])
def test_colocated_markers_do_not_collide(n):
    locs = [_loc(f"user-{i}") for i in range(n)]
    out = spread_markers(locs)

    coords = [(m.lat, m.lng) for m in out]
    assert len(set(coords)) == n

    expected = ring_radius_m(n)
    for lat, lng in coords:
        assert _flat_distance_m(37.0, -122.0, lat, lng) == pytest.approx(expected, abs=1e-6)


def test_spread_is_deterministic_and_order_independent():
    locs = [_loc("carol"), _loc("alice"), _loc("bob")]

    first = {m.user_id: (m.lat, m.lng) for m in spread_markers(locs)}
    for perm in itertools.permutations(locs):
        again = {m.user_id: (m.lat, m.lng) for m in spread_markers(perm)}
        assert again == first


def test_first_member_by_user_id_sits_due_east():
    out = {m.user_id: m for m in spread_markers([_loc("zed"), _loc("amy")])}
    amy, zed = out["amy"], out["zed"]

    assert amy.lat == pytest.approx(37.0)
    assert amy.lng > -122.0
    # opposite side of the ring
    assert zed.lat == pytest.approx(37.0)
    assert zed.lng < -122.0


def test_nearly_identical_coordinates_share_a_cell():
    locs = [_loc("a", 37.000001, -122.000001), _loc("b", 37.000002, -122.000002)]
    out = spread_markers(locs)
    for m in out:
        assert _flat_distance_m(37.0, -122.0, m.lat, m.lng) == pytest.approx(20.0, abs=1e-6)


def test_output_follows_input_order_and_keeps_records():
    locs = [_loc("b"), _loc("lonely", 40.0, -100.0), _loc("a")]
    out = spread_markers(locs)

    assert [m.user_id for m in out] == ["b", "lonely", "a"]
    for m, loc in zip(out, locs):
        assert m.location is loc
        assert (loc.lat, loc.lng) in [(37.0, -122.0), (40.0, -100.0)]


def test_custom_radii():
    out = spread_markers([_loc("a"), _loc("b"), _loc("c")], base_radius_m=10, extra_per_member_m=2)
    for m in out:
        assert _flat_distance_m(37.0, -122.0, m.lat, m.lng) == pytest.approx(12.0, abs=1e-6)
