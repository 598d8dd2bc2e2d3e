from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple
import math

from dispatch_models import Unit


R_EARTH_KM = 6371.0


def haversine_km(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    """Great-circle distance in kilometres between two (lat, lon) points."""
    lat1, lon1 = a
    lat2, lon2 = b
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    s = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    # Rounding can push s a hair past 1 for antipodal points.
    return 2 * R_EARTH_KM * math.asin(math.sqrt(min(1.0, s)))


@dataclass(frozen=True)
class NearestMatch:
    unit: Unit
    distance_km: float

    def to_dict(self) -> dict:
        return {"unit": self.unit.to_dict(), "distance_km": round(self.distance_km, 3)}


def nearest_available(query: Tuple[float, float], units: Iterable[Unit]) -> Optional[NearestMatch]:
    """Return the closest unit whose status category is available, or None.

    Units without a reported position are skipped. Ties keep the first unit
    seen with the minimal distance, so the result depends on the input order
    (ties are exceptional with real GPS fixes).
    """
    best: Optional[NearestMatch] = None
    for unit in units:
        if not unit.status.is_available:
            continue
        position = unit.position
        if position is None:
            continue
        d = haversine_km(query, position)
        if best is None or d < best.distance_km:
            best = NearestMatch(unit=unit, distance_km=d)
    return best


__all__ = ["NearestMatch", "R_EARTH_KM", "haversine_km", "nearest_available"]
