# access.py - Board, card and task lookups with membership checks
from typing import Any, Dict

from errors import Forbidden, NotFound
from store import DocumentStore


async def load_board(store: DocumentStore, board_id: str) -> Dict[str, Any]:
    board = await store.get(f"boards/{board_id}")
    if not board:
        raise NotFound("Board not found")
    return board


def is_member(board: Dict[str, Any], user_id: str) -> bool:
    return user_id in (board.get("members") or [])


def require_member(board: Dict[str, Any], user_id: str) -> None:
    if not is_member(board, user_id):
        raise Forbidden("Access denied: not a board member")


def require_owner(board: Dict[str, Any], user_id: str, action: str = "perform this action") -> None:
    if board.get("ownerId") != user_id:
        raise Forbidden(f"Only the board owner can {action}")


async def load_member_board(store: DocumentStore, board_id: str, user_id: str) -> Dict[str, Any]:
    board = await load_board(store, board_id)
    require_member(board, user_id)
    return board


async def load_card(store: DocumentStore, board_id: str, card_id: str) -> Dict[str, Any]:
    card = await store.get(f"cards/{card_id}")
    if not card or card.get("boardId") != board_id:
        raise NotFound("Card not found")
    return card


async def load_task(store: DocumentStore, board_id: str, task_id: str) -> Dict[str, Any]:
    task = await store.get(f"tasks/{task_id}")
    if not task or task.get("boardId") != board_id:
        raise NotFound("Task not found")
    return task
