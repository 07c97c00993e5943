import itertools
import math
import random

import pytest

from thriftscout.core import geo
from thriftscout.models import Coordinate


def _random_point(rng):
    return Coordinate(lat=rng.uniform(-89.9, 89.9), lng=rng.uniform(-180, 180))


def _destination(origin, bearing_deg, meters):
    """Point reached from ``origin`` after ``meters`` on the given initial bearing."""
    d = meters / geo.EARTH_RADIUS_M
    theta = math.radians(bearing_deg)
    phi1 = math.radians(origin.lat)
    lam1 = math.radians(origin.lng)
    phi2 = math.asin(math.sin(phi1) * math.cos(d) + math.cos(phi1) * math.sin(d) * math.cos(theta))
    lam2 = lam1 + math.atan2(
        math.sin(theta) * math.sin(d) * math.cos(phi1), math.cos(d) - math.sin(phi1) * math.sin(phi2)
    )
    lng = (math.degrees(lam2) + 540) % 360 - 180
    return Coordinate(lat=math.degrees(phi2), lng=lng)


def test_distance_to_self_is_zero():
    rng = random.Random(1)
    for _ in range(50):
        p = _random_point(rng)
        assert geo.distance(p, p) == 0


def test_distance_is_symmetric():
    rng = random.Random(2)
    for _ in range(50):
        a, b = _random_point(rng), _random_point(rng)
        assert geo.distance(a, b) == pytest.approx(geo.distance(b, a), rel=1e-12)


def test_distance_known_value():
    se = Coordinate(-23.5505, -46.6333)
    paulista = Coordinate(-23.5614, -46.6559)
    assert geo.distance(se, paulista) == pytest.approx(2590, rel=0.02)


def test_triangle_inequality():
    rng = random.Random(3)
    for _ in range(50):
        a, b, c = _random_point(rng), _random_point(rng), _random_point(rng)
        assert geo.distance(a, c) <= geo.distance(a, b) + geo.distance(b, c) + 1e-6


def test_bearing_range_and_cardinal_points():
    origin = Coordinate(0, 0)
    assert geo.bearing(origin, Coordinate(1, 0)) == pytest.approx(0)
    assert geo.bearing(origin, Coordinate(0, 1)) == pytest.approx(90)
    assert geo.bearing(origin, Coordinate(-1, 0)) == pytest.approx(180)
    assert geo.bearing(origin, Coordinate(0, -1)) == pytest.approx(270)
    assert geo.compass_point(350) == "N"
    assert geo.compass_point(100) == "E"
    assert geo.compass_point(225) == "SW"


def test_bounding_box_contains_every_point_in_radius():
    rng = random.Random(4)
    for _ in range(200):
        center = Coordinate(lat=rng.uniform(-85, 85), lng=rng.uniform(-180, 180))
        radius = rng.choice([100, 1000, 5000, 50_000, 500_000])
        box = geo.bounding_box(center, radius)
        for bearing_deg in range(0, 360, 15):
            point = _destination(center, bearing_deg, radius * rng.uniform(0.5, 1.0))
            if geo.distance(center, point) <= radius:
                assert box.contains(point), (center, radius, bearing_deg)


def test_bounding_box_widest_longitude_is_covered():
    # The farthest-east point of the circle sits poleward of the centre latitude.
    center = Coordinate(60.0, 10.0)
    radius = 200_000
    box = geo.bounding_box(center, radius)
    widest = max(
        (_destination(center, b / 10, radius) for b in range(0, 1800)),
        key=lambda p: p.lng,
    )
    assert box.contains(widest)


def test_bounding_box_wraps_antimeridian():
    box = geo.bounding_box(Coordinate(0.0, 179.99), 5000)
    assert box.northeast.lng > 180
    assert box.contains(Coordinate(0.0, -179.98))
    assert len(box.longitude_ranges()) == 2


def test_bounding_box_reaching_pole_spans_all_longitudes():
    box = geo.bounding_box(Coordinate(89.99, 0.0), 5000)
    assert box.northeast.lat == 90
    assert box.longitude_ranges() == [(-180.0, 180.0)]


def test_bounding_box_rejects_negative_radius():
    with pytest.raises(ValueError):
        geo.bounding_box(Coordinate(0, 0), -1)


def test_filter_within_radius_keeps_order_and_distance():
    center = Coordinate(-23.55, -46.63)
    points = [Coordinate(-23.55, -46.63), Coordinate(-23.0, -46.0), Coordinate(-23.551, -46.631)]
    selected = geo.filter_within_radius(center, points, 1000, key=lambda p: p)
    assert [p for p, _ in selected] == [points[0], points[2]]
    assert selected[0][1] == 0


def _brute_force(start, waypoints):
    best = math.inf
    for order in itertools.permutations(range(len(waypoints))):
        best = min(best, geo.path_length([start, *(waypoints[i] for i in order)]))
    return best


def test_optimize_route_is_optimal_for_small_sets():
    rng = random.Random(5)
    for size in range(1, geo.EXHAUSTIVE_ROUTE_LIMIT + 1):
        start = Coordinate(-23.55, -46.63)
        waypoints = [Coordinate(-23.55 + rng.uniform(-0.1, 0.1), -46.63 + rng.uniform(-0.1, 0.1)) for _ in range(size)]
        result = geo.optimize_route(start, waypoints)
        assert result.exhaustive
        assert sorted(result.optimized_order) == list(range(size))
        assert result.total_distance == pytest.approx(_brute_force(start, waypoints))
        assert result.total_duration == round(result.total_distance / geo.AVERAGE_SPEED_MPS)


def test_optimize_route_large_sets_visit_every_waypoint():
    rng = random.Random(6)
    start = Coordinate(0, 0)
    waypoints = [Coordinate(rng.uniform(-1, 1), rng.uniform(-1, 1)) for _ in range(12)]
    result = geo.optimize_route(start, waypoints)
    assert not result.exhaustive
    assert sorted(result.optimized_order) == list(range(12))
    assert result.waypoints == [waypoints[i] for i in result.optimized_order]


def test_optimize_route_switches_to_heuristic_past_exhaustive_limit():
    rng = random.Random(9)
    size = geo.EXHAUSTIVE_ROUTE_LIMIT + 1
    start = Coordinate(-23.55, -46.63)
    waypoints = [Coordinate(-23.55 + rng.uniform(-0.1, 0.1), -46.63 + rng.uniform(-0.1, 0.1)) for _ in range(size)]

    result = geo.optimize_route(start, waypoints)

    assert not result.exhaustive
    assert sorted(result.optimized_order) == list(range(size))
    assert result.total_distance == pytest.approx(geo.path_length([start, *result.waypoints]))


def test_optimize_route_with_end_point():
    start, end = Coordinate(0, 0), Coordinate(0, 3)
    waypoints = [Coordinate(0, 2), Coordinate(0, 1)]
    result = geo.optimize_route(start, waypoints, end)
    assert result.optimized_order == [1, 0]
    assert result.total_distance == pytest.approx(geo.distance(start, end))


def test_optimize_route_empty():
    result = geo.optimize_route(Coordinate(0, 0), [])
    assert result.optimized_order == []
    assert result.total_distance == 0


def test_exhaustive_search_refuses_large_inputs():
    with pytest.raises(ValueError):
        geo._optimize_exhaustive(Coordinate(0, 0), [Coordinate(0, i) for i in range(9)], None)
