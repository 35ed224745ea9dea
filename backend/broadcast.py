# broadcast.py - Fan-out of live events to board and user rooms
import logging
from typing import Optional

from events import Event
from presence import Connection, RoomRegistry, board_room, user_room

logger = logging.getLogger("taskboard.ws")


class BroadcastGateway:
    """Delivers events to every connection in a room.

    Delivery is fire-and-forget. A room without members drops the event, and a
    connection whose send fails is unregistered. Errors never reach the caller.
    """

    def __init__(self, registry: RoomRegistry):
        self.registry = registry

    async def broadcast_to_board(self, board_id: str, event: Event, exclude: Optional[Connection] = None) -> int:
        return await self._deliver(board_room(board_id), event, exclude)

    async def send_to_user(self, user_id: str, event: Event, exclude: Optional[Connection] = None) -> int:
        return await self._deliver(user_room(user_id), event, exclude)

    async def _deliver(self, room: str, event: Event, exclude: Optional[Connection]) -> int:
        targets = [c for c in self.registry.members_of(room) if exclude is None or c.id != exclude.id]
        if not targets:
            return 0

        message = event.to_message()
        delivered = 0
        dead = []
        for connection in targets:
            try:
                await connection.send(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping connection {connection!r} after failed send of {event.name}: {e}")
                dead.append(connection)
        for connection in dead:
            self.registry.unregister(connection)

        logger.debug(f"{event.name} → {room}: {delivered}/{len(targets)} delivered")
        return delivered
