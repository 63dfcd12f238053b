"""Great-circle distance between delivery endpoints."""
import math
from typing import Optional

EARTH_RADIUS_MILES = 3958.8
METERS_PER_MILE = 1609.34


def haversine_miles(
    lat1: Optional[float],
    lon1: Optional[float],
    lat2: Optional[float],
    lon2: Optional[float],
) -> float:
    """
    Haversine distance in miles, rounded to 2 decimals.

    Returns 0 when any coordinate is missing or zero, since an ungeocoded
    address cannot be priced by distance.
    """
    if not lat1 or not lon1 or not lat2 or not lon2:
        return 0.0

    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return round(EARTH_RADIUS_MILES * c, 2)


def meters_to_miles(meters: Optional[float]) -> float:
    if not meters:
        return 0.0
    return round(meters / METERS_PER_MILE, 2)
