from __future__ import annotations

from typing import Optional, Sequence, Tuple, TYPE_CHECKING
import math

if TYPE_CHECKING:
    from presence_store import BusStop


EARTH_RADIUS_KM = 6371.0


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres between two lat/lng points."""
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bearing_deg(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Initial heading in degrees from the first point to the second, where
    0° is north and 90° is east."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dlng = math.radians(lng2 - lng1)
    x = math.sin(dlng) * math.cos(phi2)
    y = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlng)
    return (math.degrees(math.atan2(x, y)) + 360.0) % 360.0


def nearest_stop(
    route: Sequence["BusStop"],
    lat: float,
    lng: float,
) -> Optional[Tuple["BusStop", float]]:
    """Return (stop, distance_km) of the closest stop on ``route``, or None."""
    best: Optional[Tuple["BusStop", float]] = None
    for stop in route:
        try:
            d = distance_km(lat, lng, float(stop.lat), float(stop.lng))
        except (TypeError, ValueError):
            continue
        if best is None or d < best[1]:
            best = (stop, d)
    return best


__all__ = ["EARTH_RADIUS_KM", "distance_km", "bearing_deg", "nearest_stop"]
