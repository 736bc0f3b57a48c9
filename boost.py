"""
Boost store: temporary full-on overrides per room.

A boost forces some or all of a room's radiators on until it expires or is
cancelled, beating both the schedule and the thermostat. Boosts live in memory
only; a restart clears them.
"""

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from errors import InvalidInput, NotFound
from registry import Room

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Boost:
    room_id: str
    radiator_ids: tuple[str, ...]
    until: datetime

    def is_active(self, now: datetime) -> bool:
        return now < self.until

    def covers(self, radiator_id: str) -> bool:
        return radiator_id in self.radiator_ids

    def remaining_minutes(self, now: datetime) -> int:
        return max(0, math.ceil((self.until - now).total_seconds() / 60))

    def to_dict(self, now: datetime) -> dict:
        return {
            "roomId": self.room_id,
            "radiatorIds": list(self.radiator_ids),
            "until": self.until.isoformat(),
            "remainingMinutes": self.remaining_minutes(now),
        }


class BoostStore:
    """
    Active boosts keyed by room id.

    Args:
        find_room: room id -> Room, or None when the room doesn't exist
        clock: returns "now"; must match the clock the control loop uses
    """

    def __init__(self, find_room: Callable[[str], Room | None], clock: Callable[[], datetime] = datetime.now):
        self.find_room = find_room
        self.clock = clock
        self._boosts: dict[str, Boost] = {}
        self._lock = threading.Lock()

    def start(self, room_id: str, duration_minutes, radiator_ids=None) -> Boost:
        """Boost a room, replacing any boost it already has (no stacking)."""
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, (int, float)) \
                or not math.isfinite(duration_minutes) or duration_minutes <= 0:
            raise InvalidInput("Valid durationMinutes is required")

        room = self.find_room(room_id)
        if room is None:
            raise NotFound("Room not found")

        if radiator_ids:
            if not isinstance(radiator_ids, (list, tuple)):
                raise InvalidInput("radiatorIds must be an array")
            boosted = tuple(dict.fromkeys(r for r in radiator_ids if r in room.radiator_ids))
            if not boosted:
                raise InvalidInput("None of the specified radiators belong to this room")
        else:
            boosted = room.radiator_ids

        try:
            until = self.clock() + timedelta(minutes=duration_minutes)
        except OverflowError:
            raise InvalidInput("durationMinutes is too large") from None
        boost = Boost(room_id, boosted, until)
        with self._lock:
            self._boosts[room_id] = boost
        logger.info(f"Boost activated for room {room.name} (ID: {room_id}) until {boost.until:%Y-%m-%d %H:%M:%S} "
                    f"on [{', '.join(boosted)}]")
        return boost

    def cancel(self, room_id: str) -> Boost:
        now = self.clock()
        with self._lock:
            boost = self._boosts.get(room_id)
            if boost is None or not boost.is_active(now):
                self._boosts.pop(room_id, None)
                raise NotFound("No active boost found for this room")
            del self._boosts[room_id]
        logger.info(f"Boost cancelled for room {room_id}")
        return boost

    def discard(self, room_id: str):
        """Drop a room's boost if it has one (room deleted)."""
        with self._lock:
            self._boosts.pop(room_id, None)

    def prune(self, now: datetime | None = None) -> list[str]:
        """Remove every boost with until <= now. Returns the expired room ids."""
        now = now or self.clock()
        with self._lock:
            expired = [room_id for room_id, boost in self._boosts.items() if not boost.is_active(now)]
            for room_id in expired:
                del self._boosts[room_id]
        for room_id in expired:
            logger.info(f"Boost for room {room_id} has expired")
        return expired

    def get_active(self, room_id: str, now: datetime | None = None) -> Boost | None:
        now = now or self.clock()
        with self._lock:
            boost = self._boosts.get(room_id)
        if boost is None or not boost.is_active(now):
            return None
        return boost

    def get_all_active(self, now: datetime | None = None) -> dict[str, Boost]:
        now = now or self.clock()
        with self._lock:
            return {room_id: b for room_id, b in self._boosts.items() if b.is_active(now)}
