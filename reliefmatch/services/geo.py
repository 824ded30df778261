# reliefmatch/services/geo.py
from math import radians, degrees, sin, cos, asin, atan2, sqrt
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from reliefmatch.schemas import BoundingBox, Coordinate

EARTH_RADIUS_KM = 6371.0


def distance_km(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in km (Haversine)."""
    dlat = radians(b.lat - a.lat)
    dlng = radians(b.lng - a.lng)
    s = sin(dlat/2)**2 + cos(radians(a.lat)) * cos(radians(b.lat)) * sin(dlng/2)**2
    return 2 * EARTH_RADIUS_KM * atan2(sqrt(s), sqrt(1 - s))


def bounding_box(center: Coordinate, radius_km: float) -> BoundingBox:
    """
    Square-ish box enclosing a circle of radius_km around center.
    Longitude span widens with latitude; undefined at the poles.
    """
    lat_rad = radians(center.lat)
    if abs(cos(lat_rad)) < 1e-12:
        raise ValueError("bounding_box is undefined at latitude ±90")
    dlat = radius_km / EARTH_RADIUS_KM
    dlng = asin(min(1.0, sin(dlat) / cos(lat_rad)))
    return BoundingBox(
        northeast=Coordinate(lat=min(90.0, center.lat + degrees(dlat)),
                             lng=min(180.0, center.lng + degrees(dlng))),
        southwest=Coordinate(lat=max(-90.0, center.lat - degrees(dlat)),
                             lng=max(-180.0, center.lng - degrees(dlng))),
    )


def is_in_bounding_box(point: Coordinate, box: BoundingBox) -> bool:
    return (box.southwest.lat <= point.lat <= box.northeast.lat
            and box.southwest.lng <= point.lng <= box.northeast.lng)


def centroid(coords: Sequence[Coordinate]) -> Coordinate:
    """Average on the unit sphere so points either side of ±180° don't cancel out."""
    if not coords:
        return Coordinate(lat=0.0, lng=0.0)
    if len(coords) == 1:
        return coords[0]

    x = y = z = 0.0
    for c in coords:
        lat, lng = radians(c.lat), radians(c.lng)
        x += cos(lat) * cos(lng)
        y += cos(lat) * sin(lng)
        z += sin(lat)
    n = len(coords)
    x, y, z = x / n, y / n, z / n

    lng = atan2(y, x)
    lat = atan2(z, sqrt(x*x + y*y))
    return Coordinate(lat=degrees(lat), lng=degrees(lng))


def to_geojson_point(coord: Coordinate, properties: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [coord.lng, coord.lat]},
        "properties": dict(properties or {}),
    }


def to_feature_collection(points: Iterable[Tuple[Coordinate, Dict[str, Any]]]) -> Dict[str, Any]:
    features: List[Dict[str, Any]] = [to_geojson_point(c, p) for c, p in points]
    return {"type": "FeatureCollection", "features": features}


# --------------------------------------------------
# Display helpers
# --------------------------------------------------
def format_distance(km: float) -> str:
    if km < 1:
        return f"{round(km * 1000)}m"
    if km < 10:
        return f"{km:.1f}km"
    return f"{round(km)}km"


def format_driving_time(minutes: float) -> str:
    if minutes < 1:
        return "less than a minute"
    if minutes < 60:
        return f"{round(minutes)} min"
    hours = int(minutes // 60)
    rest = round(minutes % 60)
    if rest == 60:
        hours, rest = hours + 1, 0
    return f"{hours}h {rest}m" if rest > 0 else f"{hours}h"
