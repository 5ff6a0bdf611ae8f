"""
In-process fan-out of live events to connected clients.

Connections are grouped into rooms: ``product_<id>`` for everyone watching a
product and ``user_<id>`` for a single user's sessions. Delivery is best
effort: nothing is queued, persisted or replayed, and a connection whose
send fails is dropped. Emitting never raises to the caller.
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, Set

from pydantic_core import to_jsonable_python

logger = logging.getLogger(__name__)


class Connection(Protocol):
    user_id: str
    role: Optional[str]

    async def send_json(self, data: Any) -> None: ...


def product_room(product_id: str) -> str:
    return f"product_{product_id}"


def user_room(user_id: str) -> str:
    return f"user_{user_id}"


class RelayHub:
    def __init__(self) -> None:
        self._rooms: Dict[str, Set[Connection]] = defaultdict(set)
        self._connections: Set[Connection] = set()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def register(self, conn: Connection) -> None:
        self._connections.add(conn)

    def unregister(self, conn: Connection) -> None:
        self._connections.discard(conn)
        for room in list(self._rooms):
            members = self._rooms[room]
            members.discard(conn)
            if not members:
                del self._rooms[room]

    def join(self, conn: Connection, room: str) -> None:
        # Idempotent: sets ignore repeated joins.
        self._rooms[room].add(conn)

    def leave(self, conn: Connection, room: str) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(conn)
        if not members:
            del self._rooms[room]

    def members(self, room: str) -> Set[Connection]:
        return set(self._rooms.get(room, ()))

    async def _send(self, conn: Connection, message: dict) -> None:
        try:
            await conn.send_json(message)
        except Exception as e:
            logger.debug(f"Dropping relay connection for user {getattr(conn, 'user_id', '?')}: {e}")
            self.unregister(conn)

    async def emit(self, room: str, event: str, payload: Any, exclude: Optional[Connection] = None) -> int:
        """Send *event* to every member of *room*; returns how many sends were attempted."""
        targets = [c for c in self.members(room) if c is not exclude]
        if not targets:
            return 0
        message = {"event": event, "data": to_jsonable_python(payload)}
        for conn in targets:
            await self._send(conn, message)
        return len(targets)

    async def emit_to_product(self, product_id: str, event: str, payload: Any) -> int:
        return await self.emit(product_room(product_id), event, payload)

    async def emit_to_user(self, user_id: str, event: str, payload: Any) -> int:
        return await self.emit(user_room(user_id), event, payload)

    async def emit_to_all(self, event: str, payload: Any) -> int:
        targets = list(self._connections)
        message = {"event": event, "data": to_jsonable_python(payload)}
        for conn in targets:
            await self._send(conn, message)
        return len(targets)

    def reset(self) -> None:
        self._rooms.clear()
        self._connections.clear()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
