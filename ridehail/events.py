import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Set
import logging

logger = logging.getLogger(__name__)

# event names published by the core
RIDE_ACCEPTED = "ride-accepted"
RIDE_STATUS_UPDATE = "ride-status-update"
RIDE_LOCATION_UPDATE = "ride-location-update"
RIDE_CANCELLED = "ride-cancelled"
NEW_RIDE_REQUEST = "new-ride-request"
OFFER_WITHDRAWN = "offer-withdrawn"
NO_DRIVER_FOUND = "no-driver-found"
DRIVER_AVAILABILITY_UPDATE = "driver-availability-update"


def ride_room(ride_id: int) -> str:
    return f"ride_{ride_id}"


def user_room(user_id: int) -> str:
    return f"user_{user_id}"


def drivers_room(vehicle_class: str) -> str:
    return f"drivers_{vehicle_class}"


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


class EventBus:
    """Room-scoped fan-out to connected clients.

    A connection is anything with an async ``send_json`` (a FastAPI WebSocket
    in production). Delivery is best effort and at most once: nothing is
    queued for absent subscribers, and a connection whose send fails is
    dropped from every room.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[Any]] = {}
        self._lock = asyncio.Lock()

    async def join(self, room: str, conn) -> None:
        async with self._lock:
            self._rooms.setdefault(room, set()).add(conn)

    async def leave(self, room: str, conn) -> None:
        async with self._lock:
            conns = self._rooms.get(room)
            if conns is not None:
                conns.discard(conn)
                if not conns:
                    self._rooms.pop(room, None)

    async def leave_all(self, conn) -> None:
        async with self._lock:
            for room in list(self._rooms):
                conns = self._rooms[room]
                conns.discard(conn)
                if not conns:
                    self._rooms.pop(room, None)

    def members(self, room: str) -> Set[Any]:
        return set(self._rooms.get(room, ()))

    async def publish(self, rooms: Iterable[str] | str, event: str, payload: dict) -> int:
        """Send `event` once to every connection in any of `rooms`. Returns the delivery count."""
        if isinstance(rooms, str):
            rooms = [rooms]
        async with self._lock:
            targets = set()
            for room in rooms:
                targets.update(self._rooms.get(room, ()))
        message = {
            "event": event,
            "data": _encode(payload),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        delivered = 0
        dead = []
        for conn in targets:
            try:
                await conn.send_json(message)
                delivered += 1
            except Exception as e:
                logger.debug("publish: dropping connection after send failure: %s", e)
                dead.append(conn)
        for conn in dead:
            await self.leave_all(conn)
        logger.debug("publish: event=%s rooms=%s delivered=%d", event, rooms, delivered)
        return delivered
