"""
Great-circle distance helpers used to find donors and blood banks
close to where blood is needed.
"""
import math

EARTH_RADIUS_KM = 6371
DONOR_MINUTES_PER_KM = 2


def haversine_distance(lat1, lon1, lat2, lon2):
    """
    Straight-line distance in kilometres between two points.
    This is "as the crow flies", road distance is usually longer.
    """
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.asin(math.sqrt(a))

    return c * EARTH_RADIUS_KM


def has_coordinates(obj):
    return getattr(obj, 'latitude', None) is not None and getattr(obj, 'longitude', None) is not None


def find_nearby(lat, lon, items, max_distance=50):
    """
    Objects from ``items`` within ``max_distance`` km of (lat, lon).

    Items without coordinates are skipped.

    Returns:
        List of (item, distance) tuples, closest first
    """
    nearby = []

    for item in items:
        if not has_coordinates(item):
            continue
        distance = haversine_distance(lat, lon, item.latitude, item.longitude)
        if distance <= max_distance:
            nearby.append((item, distance))

    nearby.sort(key=lambda pair: pair[1])
    return nearby


def estimate_eta_minutes(distance_km, minutes_per_km=DONOR_MINUTES_PER_KM):
    """Rough travel time for a donor, in whole minutes."""
    if distance_km is None:
        return None
    return int(round(distance_km * minutes_per_km))
