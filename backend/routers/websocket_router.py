# routers/websocket_router.py - Real-time board sync over WebSocket
import contextlib
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from auth import verify_identity
from errors import AppError, Unauthorized
from events import (
    GithubAttachmentAdded, GithubAttachmentRemoved, NotificationMarkedRead,
    TaskUpdated, UserJoined, UserLeft,
)
from models import iso_now
from presence import Connection, board_room
from services import Services, get_services

router = APIRouter(tags=["WebSocket"])
logger = logging.getLogger("taskboard.ws")


async def _reply(connection: Connection, msg_type: str, **data) -> None:
    await connection.send({"type": msg_type, "data": data, "timestamp": iso_now()})


async def _error(connection: Connection, kind: str, message: str) -> None:
    await _reply(connection, "error", kind=kind, message=message)


async def _join_board(services: Services, connection: Connection, board_id: str) -> None:
    board = await services.store.get(f"boards/{board_id}")
    if not board:
        await _error(connection, "not_found", "Board not found")
        return
    if connection.user_id not in (board.get("members") or []):
        await _error(connection, "forbidden", "Access denied: not a board member")
        return

    room = board_room(board_id)
    already_joined = services.registry.is_member(connection, room)
    services.registry.join(connection, room)
    await _reply(connection, "joined_board", boardId=board_id)
    if not already_joined:
        await services.gateway.broadcast_to_board(
            board_id,
            UserJoined(user_id=connection.user_id, user_email=connection.user_label, board_id=board_id),
            exclude=connection,
        )


async def _leave_board(services: Services, connection: Connection, board_id: str) -> None:
    room = board_room(board_id)
    was_joined = services.registry.is_member(connection, room)
    services.registry.leave(connection, room)
    await _reply(connection, "left_board", boardId=board_id)
    if was_joined:
        await services.gateway.broadcast_to_board(
            board_id,
            UserLeft(user_id=connection.user_id, user_email=connection.user_label, board_id=board_id),
        )


async def _echo(services: Services, connection: Connection, msg_type: str, data: dict) -> None:
    """Relay a client-side change to the other connections watching the board."""
    board_id = data.get("boardId")
    if not board_id or not services.registry.is_member(connection, board_room(board_id)):
        await _error(connection, "forbidden", "Join the board before sending updates")
        return
    try:
        if msg_type == "task_updated":
            event = TaskUpdated(
                board_id=board_id,
                task_id=data.get("taskId"),
                updates=data.get("updates") or {},
                updated_by=connection.user_id,
            )
        elif msg_type == "github_attachment_added":
            event = GithubAttachmentAdded(
                board_id=board_id,
                task_id=data.get("taskId"),
                attachment=data.get("attachment"),
                added_by=connection.user_id,
            )
        else:
            event = GithubAttachmentRemoved(
                board_id=board_id,
                task_id=data.get("taskId"),
                attachment_id=data.get("attachmentId"),
                removed_by=connection.user_id,
            )
    except ValidationError as e:
        await _error(connection, "bad_request", f"Invalid {msg_type} payload: {e.error_count()} error(s)")
        return
    await services.gateway.broadcast_to_board(board_id, event, exclude=connection)


ECHO_TYPES = {"task_updated", "github_attachment_added", "github_attachment_removed"}


async def handle_message(services: Services, connection: Connection, data: dict) -> None:
    msg_type = data.get("type", "")
    if not isinstance(msg_type, str):
        await _error(connection, "bad_request", "Message type must be a string")
        return

    if msg_type == "ping":
        await _reply(connection, "pong")

    elif msg_type == "join_board":
        board_id = data.get("boardId")
        if board_id:
            await _join_board(services, connection, board_id)
        else:
            await _error(connection, "bad_request", "boardId is required")

    elif msg_type == "leave_board":
        board_id = data.get("boardId")
        if board_id:
            await _leave_board(services, connection, board_id)
        else:
            await _error(connection, "bad_request", "boardId is required")

    elif msg_type in ECHO_TYPES:
        await _echo(services, connection, msg_type, data)

    elif msg_type == "mark_notification_read":
        notification_id = data.get("notificationId")
        if notification_id:
            await services.gateway.send_to_user(
                connection.user_id,
                NotificationMarkedRead(notification_id=notification_id),
                exclude=connection,
            )

    else:
        await _error(connection, "bad_request", f"Unknown message type: {msg_type or '<missing>'}")


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(default=None),
):
    """Main WebSocket endpoint for real-time communication"""
    try:
        identity = verify_identity(token)
    except Unauthorized as e:
        await websocket.close(code=4001, reason=e.message)
        return

    services: Services = websocket.app.state.services
    await websocket.accept()
    connection = Connection(websocket, identity.user_id, identity.email or identity.display_name)
    services.registry.register(connection)
    await _reply(connection, "connected", connectionId=connection.id, userId=identity.user_id)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                await _error(connection, "bad_request", "Messages must be JSON")
                continue
            if not isinstance(data, dict):
                await _error(connection, "bad_request", "Messages must be JSON objects")
                continue
            try:
                await handle_message(services, connection, data)
            except AppError as e:
                await _error(connection, e.kind, e.message)
            except (TypeError, ValueError) as e:
                logger.warning(f"Rejected message from {connection!r}: {e}")
                await _error(connection, "bad_request", "Malformed message")
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error for {connection!r}: {e}")
        with contextlib.suppress(RuntimeError):
            await websocket.close(code=1011)
    finally:
        joined = [room.split(":", 1)[1] for room in connection.rooms if room.startswith("board:")]
        services.registry.unregister(connection)
        for board_id in joined:
            await services.gateway.broadcast_to_board(
                board_id,
                UserLeft(user_id=connection.user_id, user_email=connection.user_label, board_id=board_id),
            )


@router.get("/ws/stats")
async def websocket_stats(services: Services = Depends(get_services)):
    """Get WebSocket connection statistics"""
    return services.registry.get_stats()
