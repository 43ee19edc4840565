import math
from decimal import ROUND_DOWN, Decimal

_MICRODEGREE = Decimal("0.000001")


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def truncate_coordinate(value: float) -> float:
    """Truncate (not round) a coordinate to 6 decimal digits, about 11 cm.

    Works on the shortest decimal repr so that truncating an already
    truncated value returns it unchanged.
    """
    if not math.isfinite(value):
        raise ValueError(f"Coordinate must be finite, got {value!r}")
    if abs(value) > 180.0:
        raise ValueError(f"Coordinate out of range, got {value!r}")
    return float(Decimal(repr(value)).quantize(_MICRODEGREE, rounding=ROUND_DOWN))


def is_valid_position(lat: float, lon: float) -> bool:
    """True if lat/lon are finite and inside WGS84 bounds."""
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0
