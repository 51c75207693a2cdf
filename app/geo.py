import math

from utils.variables import EARTH_RADIUS_M


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres on a spherical earth."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (math.sin(d_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def round_half_up(value: float) -> int:
    # builtin round() is banker's rounding; grid cells must not shift on .5
    return math.floor(value + 0.5)


def quantize(value: float, scale: int) -> float:
    """Snap a coordinate to a 1/scale degree grid."""
    return round_half_up(value * scale) / scale


def grid_key(lat: float, lon: float, scale: int) -> tuple:
    return (round_half_up(lat * scale), round_half_up(lon * scale))
