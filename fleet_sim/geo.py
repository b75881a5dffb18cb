"""Great-circle helpers for crew location updates."""

import math

EARTH_RADIUS_M = 6371000


def haversine(start, end):
    """Calculate distance in meters between two (lat, lng) points."""
    φ1, λ1 = map(math.radians, start)
    φ2, λ2 = map(math.radians, end)
    dφ = φ2 - φ1
    dλ = λ2 - λ1
    a = math.sin(dφ/2)**2 + math.cos(φ1)*math.cos(φ2)*math.sin(dλ/2)**2
    return 2*EARTH_RADIUS_M*math.atan2(math.sqrt(a), math.sqrt(1-a))


def initial_bearing(start, end):
    """Initial bearing in degrees [0, 360) from ``start`` towards ``end``."""
    φ1, λ1 = map(math.radians, start)
    φ2, λ2 = map(math.radians, end)
    dλ = λ2 - λ1
    y = math.sin(dλ) * math.cos(φ2)
    x = math.cos(φ1)*math.sin(φ2) - math.sin(φ1)*math.cos(φ2)*math.cos(dλ)
    return (math.degrees(math.atan2(y, x)) + 360) % 360


def speed_kmh(start, end, seconds):
    """Average speed in km/h for covering start→end in ``seconds``."""
    if seconds <= 0:
        return 0.0
    return haversine(start, end) / seconds * 3.6
