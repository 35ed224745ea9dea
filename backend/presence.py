# presence.py - Live connections and the rooms they belong to
import logging
from typing import Any, Dict, List, Optional, Set

from models import new_uuid

logger = logging.getLogger("taskboard.presence")


def board_room(board_id: str) -> str:
    return f"board:{board_id}"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


class Connection:
    """One authenticated WebSocket (or any object with an async ``send_json``)."""

    def __init__(self, websocket: Any, user_id: str, user_label: str = "", connection_id: Optional[str] = None):
        self.id = connection_id or new_uuid()
        self.websocket = websocket
        self.user_id = user_id
        self.user_label = user_label or user_id
        self.rooms: Set[str] = set()

    async def send(self, message: dict) -> None:
        await self.websocket.send_json(message)

    def __repr__(self) -> str:
        return f"Connection(id={self.id[:8]}, user={self.user_id[:8]})"


class RoomRegistry:
    """Tracks which connections are in which rooms.

    Rooms exist implicitly: a room with no members is removed from the map and
    querying an unknown room returns an empty list. All mutations are
    synchronous, so a change is visible to the very next broadcast.
    """

    def __init__(self):
        self._rooms: Dict[str, Dict[str, Connection]] = {}
        self._connections: Dict[str, Connection] = {}

    def register(self, connection: Connection) -> None:
        self._connections[connection.id] = connection
        self.join(connection, user_room(connection.user_id))
        logger.info(f"Connection registered: {connection!r}")

    def unregister(self, connection: Connection) -> None:
        for room in list(connection.rooms):
            self.leave(connection, room)
        self._connections.pop(connection.id, None)
        logger.info(f"Connection unregistered: {connection!r}")

    def join(self, connection: Connection, room: str) -> None:
        self._rooms.setdefault(room, {})[connection.id] = connection
        connection.rooms.add(room)

    def leave(self, connection: Connection, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.pop(connection.id, None)
            if not members:
                del self._rooms[room]
        connection.rooms.discard(room)

    def members_of(self, room: str) -> List[Connection]:
        return list(self._rooms.get(room, {}).values())

    def is_member(self, connection: Connection, room: str) -> bool:
        return connection.id in self._rooms.get(room, {})

    def connections_for_user(self, user_id: str) -> List[Connection]:
        return self.members_of(user_room(user_id))

    def evict_user(self, user_id: str, room: str) -> int:
        """Remove every connection of ``user_id`` from ``room``."""
        evicted = 0
        for connection in self.connections_for_user(user_id):
            if room in connection.rooms:
                self.leave(connection, room)
                evicted += 1
        return evicted

    def get_stats(self) -> dict:
        return {
            "total_connections": len(self._connections),
            "users": len({c.user_id for c in self._connections.values()}),
            "board_rooms": sum(1 for r in self._rooms if r.startswith("board:")),
        }
