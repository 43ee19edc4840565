"""Decides whether a new reading supersedes the stored fix.

Pure functions only: the caller owns the store and the locking.
"""

import math
from dataclasses import dataclass

from fixcast.fix import Fix, RawReading
from fixcast.validators import clamp

EARTH_RADIUS_M = 6_371_000.0


@dataclass(frozen=True)
class ReconciliationResult:
    fix: Fix
    # False = partial accept (timestamp only)
    position_accepted: bool
    distance_m: float | None
    previous_timestamp: int

    @property
    def elapsed_ms(self) -> int:
        return self.fix.timestamp - self.previous_timestamp


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance by the spherical law of cosines."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    cos_angle = (
        math.sin(phi1) * math.sin(phi2)
        + math.cos(phi1) * math.cos(phi2) * math.cos(math.radians(lon1 - lon2))
    )
    # Float drift pushes this just past ±1 when the points coincide
    return math.acos(clamp(cos_angle, -1.0, 1.0)) * EARTH_RADIUS_M


def reconcile(candidate: RawReading, previous: Fix | None) -> ReconciliationResult:
    accepted = Fix.from_reading(candidate)

    if previous is None:
        return ReconciliationResult(
            fix=accepted,
            position_accepted=True,
            distance_m=None,
            previous_timestamp=candidate.timestamp,
        )

    distance = distance_m(
        accepted.latitude, accepted.longitude, previous.latitude, previous.longitude
    )

    # A less precise reading whose uncertainty circle covers the stored fix
    # only refreshes the timestamp.
    if (
        candidate.accuracy is not None
        and previous.accuracy is not None
        and candidate.accuracy > previous.accuracy
        and distance < candidate.accuracy
    ):
        return ReconciliationResult(
            fix=previous.model_copy(update={"timestamp": candidate.timestamp}),
            position_accepted=False,
            distance_m=distance,
            previous_timestamp=previous.timestamp,
        )

    return ReconciliationResult(
        fix=accepted,
        position_accepted=True,
        distance_m=distance,
        previous_timestamp=previous.timestamp,
    )
