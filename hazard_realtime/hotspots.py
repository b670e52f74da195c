from math import asin, cos, floor, radians, sin, sqrt
from typing import Dict, List, Optional, Sequence, Tuple

from .models import Centroid, HotspotCell, Incident, Severity

# pad applied when every point shares one latitude (or longitude)
MIN_PAD_DEG = 0.001
PAD_FRACTION = 0.02


def haversine_m(lat1, lon1, lat2, lon2) -> float:
    if None in (lat1, lon1, lat2, lon2):
        return 1e12
    R = 6371000.0
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    a = sin(dlat/2)**2 + cos(radians(lat1))*cos(radians(lat2))*sin(dlon/2)**2
    return 2*R*asin(sqrt(a))


def _padded_bounds(points: Sequence[Incident]) -> Tuple[float, float, float, float]:
    min_lat = min(p.lat for p in points)
    max_lat = max(p.lat for p in points)
    min_lon = min(p.lon for p in points)
    max_lon = max(p.lon for p in points)
    lat_pad = (max_lat - min_lat) * PAD_FRACTION or MIN_PAD_DEG
    lon_pad = (max_lon - min_lon) * PAD_FRACTION or MIN_PAD_DEG
    return min_lat - lat_pad, max_lat + lat_pad, min_lon - lon_pad, max_lon + lon_pad


def _cell_index(value: float, lo: float, hi: float, cells: int) -> int:
    idx = floor((value - lo) / (hi - lo) * cells)
    return max(0, min(cells - 1, idx))


def detect_hotspots(snapshot: Sequence[Incident], grid_size: int = 18) -> List[HotspotCell]:
    """
    Bin incidents into a grid_size x grid_size grid over their padded
    bounding box and rank the non-empty cells.

    Ranking is High count descending, then Medium count descending; ties
    keep the order in which cells were first filled. A cell's centroid is
    the mean of its member points, not the geometric cell centre.
    """
    points = [p for p in snapshot if p.lat is not None and p.lon is not None]
    if not points:
        return []
    grid_size = max(1, int(grid_size))

    min_lat, max_lat, min_lon, max_lon = _padded_bounds(points)

    cells: Dict[Tuple[int, int], List[Incident]] = {}
    for p in points:
        x = _cell_index(p.lon, min_lon, max_lon, grid_size)
        y = _cell_index(p.lat, min_lat, max_lat, grid_size)
        cells.setdefault((x, y), []).append(p)

    hotspots = []
    for (x, y), members in cells.items():
        counts = {s.value: 0 for s in Severity}
        for p in members:
            counts[p.severity.value] += 1
        hotspots.append(HotspotCell(
            cell_key=f"{x}-{y}",
            x_idx=x,
            y_idx=y,
            centroid=Centroid(
                lat=sum(p.lat for p in members) / len(members),
                lon=sum(p.lon for p in members) / len(members),
            ),
            counts_by_severity=counts,
            points=members,
        ))

    hotspots.sort(key=lambda c: (-c.count_high, -c.count_medium))
    return hotspots


def nearest_hotspot(lat: float, lon: float,
                    hotspots: Sequence[HotspotCell]) -> Optional[Tuple[HotspotCell, float]]:
    """Closest hotspot centroid to (lat, lon) and its distance in metres."""
    best = None
    for cell in hotspots:
        d = haversine_m(lat, lon, cell.centroid.lat, cell.centroid.lon)
        if best is None or d < best[1]:
            best = (cell, d)
    return best
