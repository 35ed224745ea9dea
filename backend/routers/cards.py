# routers/cards.py - Cards (board columns)
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import Field

from access import load_card, load_member_board
from auth import get_current_user, CurrentUser
from events import CardCreated, CardDeleted, CardMoved, CardUpdated
from models import CamelModel, iso_now
from services import Services, get_services

router = APIRouter(prefix="/api/v1/boards/{board_id}/cards", tags=["Cards"])


# --- Schemas ---

class CardCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)


class CardUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)


class CardMove(CamelModel):
    position: int = Field(..., ge=0)


async def _board_cards(services: Services, board_id: str) -> list:
    cards = await services.store.query_by_field("cards", "boardId", board_id)
    cards.sort(key=lambda c: (c.get("position", 0), c.get("createdAt") or ""))
    return cards


# ============================================================
# LIST & CREATE
# ============================================================

@router.get("")
async def list_cards(
    board_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)

    async def produce():
        return await _board_cards(services, board_id)

    return await services.cache.respond(request, user.id, produce)


@router.get("/user/{member_id}")
async def list_cards_by_user(
    board_id: str,
    member_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    return [c for c in await _board_cards(services, board_id) if member_id in (c.get("members") or [])]


@router.post("", status_code=201)
async def create_card(
    board_id: str,
    data: CardCreate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    existing = await _board_cards(services, board_id)

    now = iso_now()
    card_id = services.store.push_id("cards")
    card = await services.store.set(f"cards/{card_id}", {
        "name": data.name.strip(),
        "description": data.description,
        "boardId": board_id,
        "ownerId": user.id,
        "createdBy": user.id,
        "members": [user.id],
        "tasksCount": 0,
        "position": len(existing),
        "createdAt": now,
        "updatedAt": now,
    })
    await services.gateway.broadcast_to_board(board_id, CardCreated(card=card, board_id=board_id, created_by=user.id))
    return card


# ============================================================
# SINGLE CARD
# ============================================================

@router.get("/{card_id}")
async def get_card(
    board_id: str,
    card_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    return await load_card(services.store, board_id, card_id)


@router.put("/{card_id}")
async def update_card(
    board_id: str,
    card_id: str,
    data: CardUpdate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    await load_card(services.store, board_id, card_id)
    fields = data.model_dump(exclude_none=True)
    fields["updatedAt"] = iso_now()
    card = await services.store.update(f"cards/{card_id}", fields)
    await services.gateway.broadcast_to_board(board_id, CardUpdated(card=card, board_id=board_id, updated_by=user.id))
    return card


@router.patch("/{card_id}/move")
async def move_card(
    board_id: str,
    card_id: str,
    data: CardMove,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    await load_card(services.store, board_id, card_id)
    card = await services.store.update(f"cards/{card_id}", {"position": data.position, "updatedAt": iso_now()})
    await services.gateway.broadcast_to_board(
        board_id,
        CardMoved(card=card, board_id=board_id, position=data.position, moved_by=user.id),
    )
    return card


@router.delete("/{card_id}")
async def delete_card(
    board_id: str,
    card_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    await load_card(services.store, board_id, card_id)
    for task in await services.store.query_by_field("tasks", "cardId", card_id):
        await services.store.delete(f"tasks/{task['id']}")
    await services.store.delete(f"cards/{card_id}")
    await services.gateway.broadcast_to_board(board_id, CardDeleted(card_id=card_id, board_id=board_id, deleted_by=user.id))
    return {"message": "Card deleted", "cardId": card_id}
