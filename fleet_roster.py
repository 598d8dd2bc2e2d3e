from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from dispatch_models import StatusCategory, Unit


@dataclass(frozen=True)
class RosterSnapshot:
    """A complete, internally consistent copy of the fleet roster."""
    units: Tuple[Unit, ...]
    fetched_at: float  # epoch seconds, 0.0 before the first refresh

    def find(self, unit_id: str) -> Optional[Unit]:
        for unit in self.units:
            if unit.id == unit_id:
                return unit
        return None

    def unit_for_crew_email(self, email: str) -> Optional[Unit]:
        """Return the unit a crew member (matched by email) is assigned to."""
        wanted = email.strip().lower()
        if not wanted:
            return None
        for unit in self.units:
            for member in unit.crew:
                if member.email.strip().lower() == wanted:
                    return unit
        return None

    def stats(self) -> Dict[str, int]:
        counts = {category.value: 0 for category in StatusCategory}
        for unit in self.units:
            counts[unit.status.category.value] += 1
        counts["total"] = len(self.units)
        return counts

    def to_dict(self) -> dict:
        return {
            "fetched_at": self.fetched_at,
            "units": [unit.to_dict() for unit in self.units],
        }


class FleetRoster:
    """Holder of the current roster snapshot.

    Writers replace the whole snapshot; readers always get a fully formed
    ``RosterSnapshot`` and never observe a partially updated roster.
    """

    def __init__(self) -> None:
        self._snapshot = RosterSnapshot(units=(), fetched_at=0.0)
        self.replace_count = 0

    def snapshot(self) -> RosterSnapshot:
        return self._snapshot

    def replace(self, units: Iterable[Unit], fetched_at: Optional[float] = None) -> RosterSnapshot:
        snapshot = RosterSnapshot(
            units=tuple(units),
            fetched_at=time.time() if fetched_at is None else fetched_at,
        )
        self._snapshot = snapshot
        self.replace_count += 1
        return snapshot

    async def refresh(self, client) -> RosterSnapshot:
        """Fetch the authoritative roster from ``client`` and swap it in."""
        units = await client.list_units()
        snapshot = self.replace(units)
        print(f"[roster] refreshed {len(snapshot.units)} units")
        return snapshot


__all__ = ["FleetRoster", "RosterSnapshot"]
