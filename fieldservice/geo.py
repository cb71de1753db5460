"""
Distance helpers for proximity dispatch.

All coordinates are decimal degrees; distances are kilometres.
"""

import math
from urllib.parse import urlencode

EARTH_RADIUS_KM = 6371.0

_MAPS_DIRECTIONS_URL = "https://www.google.com/maps/dir/"


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def format_distance(km: float) -> str:
    """'850m' below one kilometre, '3.9km' otherwise."""
    if km < 1:
        return f"{round(km * 1000)}m"
    return f"{km:.1f}km"


def estimate_eta_minutes(km: float, speed_kmh: float) -> int:
    """Whole minutes to cover ``km`` at ``speed_kmh``, rounded up."""
    if speed_kmh <= 0:
        raise ValueError("speed_kmh must be positive")
    return math.ceil(km / speed_kmh * 60)


def navigation_url(lat: float, lng: float) -> str:
    """Driving directions from the device's position to the destination."""
    query = urlencode(
        {"api": 1, "destination": f"{lat},{lng}", "travelmode": "driving"}
    )
    return f"{_MAPS_DIRECTIONS_URL}?{query}"
