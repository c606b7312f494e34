"""Per-job subscriber rooms and best-effort fan-out of tracking updates."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from pylivetrack._constants import EVENT_JOINED_TRACKING, EVENT_LOCATION_UPDATE, room_name
from pylivetrack.models.tracking import TrackingUpdate

_logger = logging.getLogger(__name__)


class Connection(Protocol):
    """A live subscriber able to receive named events."""

    @property
    def connection_id(self) -> str:
        ...

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        ...


class Broadcaster(Protocol):
    """Room registry injected into the tracker for delivering updates."""

    async def join(self, job_id: str, connection: Connection) -> None:
        ...

    def leave(self, job_id: str, connection: Connection) -> bool:
        ...

    def disconnect(self, connection: Connection) -> None:
        ...

    def close_room(self, job_id: str) -> int:
        ...

    async def publish(self, job_id: str, update: TrackingUpdate) -> int:
        ...


class QueueConnection:
    """In-process subscriber that buffers ``(event, payload)`` tuples."""

    def __init__(self, connection_id: str, *, maxsize: int = 0) -> None:
        self._id = connection_id
        self.queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue(maxsize=maxsize)

    @property
    def connection_id(self) -> str:
        return self._id

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        self.queue.put_nowait((event, payload))

    def drain(self) -> list[tuple[str, dict[str, Any]]]:
        items: list[tuple[str, dict[str, Any]]] = []
        while not self.queue.empty():
            items.append(self.queue.get_nowait())
        return items


class TrackingBroadcaster:
    """Maps job ids to rooms of connections and fans updates out to them.

    Delivery is best-effort: no retry, no persistence.  A connection whose
    ``send`` raises is evicted from every room and has to re-join.  Room
    mutations never await, and ``publish`` iterates a snapshot, so joins and
    leaves may interleave freely with an ongoing publish.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, dict[str, Connection]] = {}

    def members(self, job_id: str) -> list[Connection]:
        return list(self._rooms.get(job_id, {}).values())

    def room_size(self, job_id: str) -> int:
        return len(self._rooms.get(job_id, {}))

    def rooms(self) -> list[str]:
        return [job_id for job_id, room in self._rooms.items() if room]

    async def join(self, job_id: str, connection: Connection) -> None:
        """Add *connection* to the job's room and acknowledge it.

        Repeated joins keep a single membership; each join is acknowledged.
        """
        room = self._rooms.setdefault(job_id, {})
        is_new = connection.connection_id not in room
        room[connection.connection_id] = connection
        if is_new:
            _logger.debug("Connection %s joined room %s", connection.connection_id, room_name(job_id))
        try:
            await connection.send(
                EVENT_JOINED_TRACKING,
                {
                    "jobId": job_id,
                    "message": f"Successfully subscribed to job tracking: {job_id}",
                },
            )
        except Exception:
            _logger.debug("Join acknowledgement failed for %s", connection.connection_id, exc_info=True)
            self._evict(connection.connection_id)

    def leave(self, job_id: str, connection: Connection) -> bool:
        room = self._rooms.get(job_id)
        if room is None or room.pop(connection.connection_id, None) is None:
            return False
        if not room:
            self._rooms.pop(job_id, None)
        _logger.debug("Connection %s left room %s", connection.connection_id, room_name(job_id))
        return True

    def disconnect(self, connection: Connection) -> None:
        """Remove *connection* from every room it joined."""
        self._evict(connection.connection_id)

    def close_room(self, job_id: str) -> int:
        room = self._rooms.pop(job_id, None)
        return len(room) if room else 0

    async def publish(self, job_id: str, update: TrackingUpdate) -> int:
        """Deliver *update* to every current member; return the delivery count."""
        members = self.members(job_id)
        if not members:
            return 0
        payload = update.to_wire()
        delivered = 0
        for connection in members:
            try:
                await connection.send(EVENT_LOCATION_UPDATE, payload)
            except Exception:
                _logger.warning(
                    "Dropping connection %s from %s after failed delivery",
                    connection.connection_id,
                    room_name(job_id),
                    exc_info=True,
                )
                self._evict(connection.connection_id)
                continue
            delivered += 1
        _logger.debug("Broadcast update to room %s delivered=%d", room_name(job_id), delivered)
        return delivered

    def _evict(self, connection_id: str) -> None:
        for job_id in list(self._rooms):
            room = self._rooms[job_id]
            room.pop(connection_id, None)
            if not room:
                self._rooms.pop(job_id, None)
