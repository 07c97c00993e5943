"""Grid clustering of businesses for map display."""

import math
from typing import Dict, List, Tuple

from thriftscout.models import Business, Coordinate, MapCluster, MapMarker

MARKER_ZOOM = 12


def cluster_size_for_zoom(zoom: int) -> float:
    """Grid cell size in degrees; coarser at lower zoom."""
    if zoom < 8:
        return 0.1
    if zoom < 10:
        return 0.05
    return 0.02


def _average_rating(businesses: List[Business]) -> float:
    ratings = [b.info.rating for b in businesses if b.info.rating is not None]
    return sum(ratings) / len(ratings) if ratings else 0.0


def generate_clusters(businesses: List[Business], zoom: int) -> List[MapCluster]:
    """Assign each business to the grid cell containing it.

    The cell index is ``floor(coordinate / size)``, so the partition depends only on
    positions and zoom. Clusters come back ordered by cell index.
    """
    size = cluster_size_for_zoom(zoom)
    cells: Dict[Tuple[int, int], List[Business]] = {}
    for business in businesses:
        point = business.coordinates
        index = (math.floor(point.lat / size), math.floor(point.lng / size))
        cells.setdefault(index, []).append(business)

    clusters = []
    for (lat_idx, lng_idx), members in sorted(cells.items()):
        clusters.append(
            MapCluster(
                id=f"{lat_idx}_{lng_idx}",
                position=Coordinate(lat=lat_idx * size, lng=lng_idx * size),
                count=len(members),
                average_rating=_average_rating(members),
                businesses=members,
            )
        )
    return clusters


def build_markers(businesses: List[Business]) -> List[MapMarker]:
    return [MapMarker(id=b.key, position=b.coordinates, business=b) for b in businesses]
