# routers/boards.py - Boards, membership and invitations
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import EmailStr, Field

from access import load_board, load_member_board, require_owner
from auth import get_current_user, CurrentUser
from events import BoardCreated, BoardDeleted, BoardUpdated
from models import CamelModel, iso_now
from services import Services, get_services

router = APIRouter(prefix="/api/v1/boards", tags=["Boards"])


# --- Schemas ---

class BoardCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)


class BoardUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)


class InviteRequest(CamelModel):
    member_id: Optional[str] = None
    email: Optional[EmailStr] = None


class InvitationResponse(CamelModel):
    invitation_id: str
    response: str


# ============================================================
# INVITATIONS (static paths first)
# ============================================================

@router.get("/invitations/pending")
async def pending_invitations(
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.invitations.pending_for_user(user.id, user.email)


@router.post("/invitation/respond")
async def respond_to_invitation(
    data: InvitationResponse,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    result = await services.invitations.respond(data.invitation_id, user.id, user.email, data.response)
    message = "Invitation accepted" if data.response == "accepted" else "Invitation declined"
    return {"message": message, **result}


@router.get("/invitation/{invitation_id}/status")
async def invitation_status(
    invitation_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    invitation = await services.invitations.get_status(invitation_id, user.id, user.email)
    return {
        "invitationId": invitation["id"],
        "status": invitation["status"],
        "boardId": invitation["boardId"],
        "respondedAt": invitation.get("respondedAt"),
    }


# ============================================================
# BOARDS
# ============================================================

@router.post("", status_code=201)
async def create_board(
    data: BoardCreate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    now = iso_now()
    board_id = services.store.push_id("boards")
    board = await services.store.set(f"boards/{board_id}", {
        "name": data.name.strip(),
        "description": data.description,
        "ownerId": user.id,
        "members": [user.id],
        "createdAt": now,
        "updatedAt": now,
    })
    await services.gateway.send_to_user(user.id, BoardCreated(board=board))
    return board


@router.get("")
async def list_boards(
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    boards = [b for b in await services.store.scan("boards") if user.id in (b.get("members") or [])]
    boards.sort(key=lambda b: b.get("createdAt") or "", reverse=True)
    return boards


@router.get("/{board_id}")
async def get_board(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await load_member_board(services.store, board_id, user.id)


@router.put("/{board_id}")
async def update_board(
    board_id: str,
    data: BoardUpdate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    board = await load_board(services.store, board_id)
    require_owner(board, user.id, "update the board")
    fields = data.model_dump(exclude_none=True)
    fields["updatedAt"] = iso_now()
    board = await services.store.update(f"boards/{board_id}", fields)
    await services.gateway.broadcast_to_board(board_id, BoardUpdated(board=board, updated_by=user.id))
    return board


@router.delete("/{board_id}")
async def delete_board(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    board = await load_board(services.store, board_id)
    require_owner(board, user.id, "delete the board")

    store = services.store
    for task in await store.query_by_field("tasks", "boardId", board_id):
        await store.delete(f"tasks/{task['id']}")
    for card in await store.query_by_field("cards", "boardId", board_id):
        await store.delete(f"cards/{card['id']}")
    await store.delete(f"boards/{board_id}")

    await services.gateway.broadcast_to_board(board_id, BoardDeleted(board_id=board_id, deleted_by=user.id))
    return {"message": "Board deleted", "boardId": board_id}


# ============================================================
# MEMBERS
# ============================================================

@router.get("/{board_id}/members")
async def board_members(
    board_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    board = await load_member_board(services.store, board_id, user.id)

    async def produce():
        members = []
        for member_id in board.get("members") or []:
            member = await services.store.get(f"users/{member_id}") or {}
            members.append({
                "id": member_id,
                "email": member.get("email"),
                "displayName": member.get("displayName"),
                "photoURL": member.get("photoURL"),
                "isOwner": member_id == board.get("ownerId"),
            })
        return members

    return await services.cache.respond(request, user.id, produce)


@router.delete("/{board_id}/members/{member_id}")
async def remove_member(
    board_id: str,
    member_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    board = await services.invitations.remove_member(board_id, member_id, user.id)
    return {"message": "Member removed", "board": board}


@router.post("/{board_id}/leave")
async def leave_board(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.invitations.leave_board(board_id, user.id)
    return {"message": "You left the board", "boardId": board_id}


# ============================================================
# BOARD INVITATIONS
# ============================================================

@router.post("/{board_id}/invite", status_code=201)
async def invite_member(
    board_id: str,
    data: InviteRequest,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    invitation = await services.invitations.invite(board_id, user.id, member_id=data.member_id, email=data.email)
    return {"message": "Invitation sent", "invitation": invitation}


@router.get("/{board_id}/invitations")
async def board_invitations(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.invitations.list_for_board(board_id, user.id)


@router.delete("/{board_id}/invitations/{invitation_id}")
async def cancel_invitation(
    board_id: str,
    invitation_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    invitation = await services.invitations.cancel(board_id, invitation_id, user.id)
    return {"message": "Invitation cancelled", "invitation": invitation}
