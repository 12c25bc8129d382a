"""
Great-circle distances and the coarse lat/lng grid used for bucketing
collectors and surge areas.
"""
import math
from typing import List, Sequence, Tuple

EARTH_RADIUS_KM = 6371.0
KM_PER_DEG_LAT = 111.32


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _index(value: float, cell_deg: float) -> int:
    return int(math.floor(value / cell_deg))


def cell_id(lat: float, lng: float, cell_deg: float) -> str:
    return f"{_index(lat, cell_deg)}:{_index(lng, cell_deg)}"


def cells_within(lat: float, lng: float, radius_km: float, cell_deg: float) -> List[str]:
    """All grid cells that may hold a point within radius_km of (lat, lng)."""
    d_lat = radius_km / KM_PER_DEG_LAT
    # Longitude degrees shrink towards the poles
    cos_lat = max(math.cos(math.radians(lat)), 1e-6)
    d_lng = radius_km / (KM_PER_DEG_LAT * cos_lat)
    lat_lo, lat_hi = _index(lat - d_lat, cell_deg), _index(lat + d_lat, cell_deg)
    lng_lo, lng_hi = _index(lng - d_lng, cell_deg), _index(lng + d_lng, cell_deg)
    return [
        f"{i}:{j}"
        for i in range(lat_lo, lat_hi + 1)
        for j in range(lng_lo, lng_hi + 1)
    ]


def nearest_neighbor_order(points: Sequence[Tuple[float, float]]) -> List[int]:
    """Greedy visiting order starting at points[0]."""
    n = len(points)
    if n == 0:
        return []
    visited = [False] * n
    order = [0]
    visited[0] = True
    for _ in range(n - 1):
        last = points[order[-1]]
        best = None
        best_d = float("inf")
        for i in range(n):
            if not visited[i]:
                d = haversine_km(last[0], last[1], points[i][0], points[i][1])
                if d < best_d:
                    best_d = d
                    best = i
        order.append(best)
        visited[best] = True
    return order
