"""Geodesy helpers: great-circle distances, bounding boxes and route ordering."""

from __future__ import annotations

import itertools
import logging
import math
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

from thriftscout.models import BoundingBox, Coordinate, DistanceMatrixCell, RouteOptimization
from thriftscout.vendors import google_maps

logger = logging.getLogger(__name__)

T = TypeVar("T")

EARTH_RADIUS_M = 6_371_000
# 50 km/h
AVERAGE_SPEED_MPS = 13.89
EXHAUSTIVE_ROUTE_LIMIT = 8
# Relative pad applied to box offsets so rounding never shrinks the box.
_BOX_PAD = 1e-9


def distance(a: Coordinate, b: Coordinate) -> float:
    """Haversine distance in meters."""
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    d_phi = math.radians(b.lat - a.lat)
    d_lambda = math.radians(b.lng - a.lng)

    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    h = min(1.0, max(0.0, h))
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def bearing(a: Coordinate, b: Coordinate) -> float:
    """Initial compass bearing from ``a`` to ``b`` in [0, 360)."""
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    d_lambda = math.radians(b.lng - a.lng)

    y = math.sin(d_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(d_lambda)
    result = (math.degrees(math.atan2(y, x)) + 360) % 360
    # (-tiny + 360) % 360 can round to exactly 360.0
    return 0.0 if result >= 360 else result


def compass_point(degrees: float) -> str:
    points = ("N", "NE", "E", "SE", "S", "SW", "W", "NW")
    return points[int(((degrees % 360) + 22.5) // 45) % 8]


def bounding_box(center: Coordinate, radius_meters: float) -> BoundingBox:
    """Smallest lat/lng rectangle holding every point within ``radius_meters``.

    The longitude half-width is the exact spherical bound ``asin(sin(d) / cos(lat))``;
    when the circle reaches a pole the box covers every longitude.
    """
    if radius_meters < 0:
        raise ValueError("radius_meters must be non-negative")

    angular = radius_meters / EARTH_RADIUS_M
    lat_offset = math.degrees(angular) * (1 + _BOX_PAD) + 1e-12
    north = min(90.0, center.lat + lat_offset)
    south = max(-90.0, center.lat - lat_offset)

    lat_rad = math.radians(center.lat)
    if angular >= math.pi / 2 or abs(lat_rad) + angular >= math.pi / 2:
        west, east = -180.0, 180.0
    else:
        ratio = min(1.0, math.sin(angular) / math.cos(lat_rad))
        lng_offset = math.degrees(math.asin(ratio)) * (1 + _BOX_PAD) + 1e-12
        if lng_offset >= 180:
            west, east = -180.0, 180.0
        else:
            west, east = center.lng - lng_offset, center.lng + lng_offset

    return BoundingBox(
        northeast=Coordinate(lat=north, lng=east),
        southwest=Coordinate(lat=south, lng=west),
    )


def within_radius(center: Coordinate, point: Coordinate, radius_meters: float) -> bool:
    return distance(center, point) <= radius_meters


def filter_within_radius(
    center: Coordinate,
    items: Iterable[T],
    radius_meters: float,
    key: Callable[[T], Coordinate],
) -> List[Tuple[T, float]]:
    """Return ``(item, distance)`` for every item inside the radius, input order kept."""
    selected: List[Tuple[T, float]] = []
    for item in items:
        meters = distance(center, key(item))
        if meters <= radius_meters:
            selected.append((item, meters))
    return selected


def path_length(points: Sequence[Coordinate]) -> float:
    return sum(distance(points[i], points[i + 1]) for i in range(len(points) - 1))


def estimate_duration(meters: float, speed_mps: float = AVERAGE_SPEED_MPS) -> int:
    return int(round(meters / speed_mps)) if speed_mps > 0 else 0


def optimize_route(
    start: Coordinate,
    waypoints: Sequence[Coordinate],
    end: Optional[Coordinate] = None,
) -> RouteOptimization:
    """Order ``waypoints`` to minimise straight-line travel from ``start``.

    Up to ``EXHAUSTIVE_ROUTE_LIMIT`` waypoints every permutation is evaluated and the
    true optimum is returned. Above that, a nearest-neighbour greedy pass is used;
    it visits every waypoint exactly once but is only an approximation.
    """
    if not waypoints:
        return RouteOptimization(optimized_order=[], total_distance=0.0, total_duration=0, waypoints=[], exhaustive=True)
    if len(waypoints) <= EXHAUSTIVE_ROUTE_LIMIT:
        return _optimize_exhaustive(start, waypoints, end)
    logger.debug("Using nearest-neighbour ordering for %d waypoints", len(waypoints))
    return _optimize_nearest_neighbor(start, waypoints, end)


def _optimize_exhaustive(
    start: Coordinate,
    waypoints: Sequence[Coordinate],
    end: Optional[Coordinate],
) -> RouteOptimization:
    if len(waypoints) > EXHAUSTIVE_ROUTE_LIMIT:
        raise ValueError(f"exhaustive routing is limited to {EXHAUSTIVE_ROUTE_LIMIT} waypoints")

    best_order: Tuple[int, ...] = tuple(range(len(waypoints)))
    best_distance = math.inf
    for order in itertools.permutations(range(len(waypoints))):
        points = [start, *(waypoints[i] for i in order)]
        if end is not None:
            points.append(end)
        total = path_length(points)
        if total < best_distance:
            best_distance = total
            best_order = order

    return RouteOptimization(
        optimized_order=list(best_order),
        total_distance=best_distance,
        total_duration=estimate_duration(best_distance),
        waypoints=[waypoints[i] for i in best_order],
        exhaustive=True,
    )


def _optimize_nearest_neighbor(
    start: Coordinate,
    waypoints: Sequence[Coordinate],
    end: Optional[Coordinate],
) -> RouteOptimization:
    remaining = list(range(len(waypoints)))
    order: List[int] = []
    current = start
    total = 0.0

    while remaining:
        nearest = min(remaining, key=lambda i: distance(current, waypoints[i]))
        total += distance(current, waypoints[nearest])
        order.append(nearest)
        remaining.remove(nearest)
        current = waypoints[nearest]

    if end is not None:
        total += distance(current, end)

    return RouteOptimization(
        optimized_order=order,
        total_distance=total,
        total_duration=estimate_duration(total),
        waypoints=[waypoints[i] for i in order],
        exhaustive=False,
    )


def distance_matrix(
    origins: Sequence[Coordinate],
    destinations: Sequence[Coordinate],
    *,
    api_key: str,
    travel_mode: str = "driving",
    language: str = "pt-BR",
) -> List[DistanceMatrixCell]:
    """Pairwise travel distance/duration from the Distance Matrix API.

    Each cell keeps the provider's element status; a failed cell does not fail the call.
    """
    if not origins or not destinations:
        return []

    payload = google_maps.distance_matrix(
        origins=[(o.lat, o.lng) for o in origins],
        destinations=[(d.lat, d.lng) for d in destinations],
        api_key=api_key,
        mode=travel_mode,
        language=language,
    )

    cells: List[DistanceMatrixCell] = []
    for origin_index, row in enumerate(payload.get("rows", [])):
        for destination_index, element in enumerate(row.get("elements", [])):
            status = element.get("status", "UNKNOWN_ERROR")
            dist = element.get("distance") or {}
            duration = element.get("duration") or {}
            cells.append(
                DistanceMatrixCell(
                    origin_index=origin_index,
                    destination_index=destination_index,
                    distance_m=dist.get("value") if status == "OK" else None,
                    duration_s=duration.get("value") if status == "OK" else None,
                    distance_text=dist.get("text", "N/A"),
                    duration_text=duration.get("text", "N/A"),
                    status=status,
                )
            )

    failed = sum(1 for cell in cells if not cell.ok)
    if failed:
        logger.warning("Distance matrix returned %d failed cells out of %d", failed, len(cells))
    return cells
