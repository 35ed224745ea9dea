# invitations.py - Board membership and the invitation state machine
#
#   pending ──► accepted   (invitee; adds the invitee to board.members)
#      │──────► declined   (invitee, or implicitly by deleting the notification)
#      └──────► cancelled  (board owner)
#
# Terminal states never transition again. At most one pending invitation
# exists per (board, invitee); the check-then-create is serialised per key.

import logging
from typing import Any, Dict, List, Optional

from broadcast import BroadcastGateway
from errors import BadRequest, Conflict, Forbidden, NotFound
from events import MemberJoined, MemberRemoved, RemovedFromBoard
from mailer import Mailer, invitation_email
from models import InvitationStatus, iso_now, sender_name
from notification_engine import NotificationEngine
from presence import RoomRegistry, board_room
from side_effects import KeyedLocks, PostCommit
from store import DocumentStore

logger = logging.getLogger("taskboard.invitations")


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    return email.strip().lower() or None


class InvitationService:
    def __init__(
        self,
        store: DocumentStore,
        gateway: BroadcastGateway,
        registry: RoomRegistry,
        notifications: NotificationEngine,
        mailer: Mailer,
        locks: Optional[KeyedLocks] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.registry = registry
        self.notifications = notifications
        self.mailer = mailer
        self.locks = locks or KeyedLocks()

    async def _load_board(self, board_id: str) -> Dict[str, Any]:
        board = await self.store.get(f"boards/{board_id}")
        if not board:
            raise NotFound("Board not found")
        return board

    async def _for_board(self, board_id: str) -> List[Dict[str, Any]]:
        return await self.store.query_by_field("invitations", "boardId", board_id)

    async def _pending_exists(self, board_id: str, member_id: Optional[str], email: Optional[str]) -> bool:
        for invitation in await self._for_board(board_id):
            if invitation.get("status") != InvitationStatus.PENDING.value:
                continue
            if member_id and invitation.get("memberId") == member_id:
                return True
            if email and invitation.get("memberEmail") == email:
                return True
        return False

    @staticmethod
    def _is_invitee(invitation: Dict[str, Any], user_id: str, email: Optional[str]) -> bool:
        if invitation.get("memberId"):
            return invitation["memberId"] == user_id
        return bool(email) and invitation.get("memberEmail") == normalize_email(email)

    async def _send_invitation_email(self, invitation: Dict[str, Any], board: Dict[str, Any], inviter_id: str) -> None:
        inviter = await self.store.get(f"users/{inviter_id}")
        await self.mailer.send(invitation_email(invitation["memberEmail"], board.get("name", "a board"), sender_name(inviter)))

    # ============================================================
    # INVITE / RESPOND / CANCEL
    # ============================================================

    async def invite(
        self,
        board_id: str,
        inviter_id: str,
        member_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Dict[str, Any]:
        email = normalize_email(email)
        if not member_id and not email:
            raise BadRequest("Either memberId or email is required")

        board = await self._load_board(board_id)
        members = board.get("members") or []
        if inviter_id not in members:
            raise Forbidden("Only board members can invite others")

        if member_id:
            invitee = await self.store.get(f"users/{member_id}")
            if not invitee:
                raise NotFound("User not found")
            email = email or normalize_email(invitee.get("email"))
        else:
            matches = await self.store.query_by_field("users", "email", email)
            if matches:
                member_id = matches[0]["id"]

        if member_id and member_id in members:
            raise Conflict("User is already a member of this board")

        async with self.locks.hold(f"invite:{board_id}:{member_id or email}"):
            if await self._pending_exists(board_id, member_id, email):
                raise Conflict("A pending invitation already exists for this user")
            now = iso_now()
            invitation_id = self.store.push_id("invitations")
            invitation = await self.store.set(f"invitations/{invitation_id}", {
                "boardId": board_id,
                "boardOwnerId": board.get("ownerId"),
                "invitedBy": inviter_id,
                "memberId": member_id,
                "memberEmail": email,
                "status": InvitationStatus.PENDING.value,
                "createdAt": now,
                "updatedAt": now,
                "respondedAt": None,
            })
        logger.info(f"Invitation {invitation_id[:8]} created on board {board_id[:8]}")

        hooks = PostCommit(f"invite {invitation_id[:8]}")
        if email:
            hooks.add("invitation_email", self._send_invitation_email, invitation, board, inviter_id)
        if member_id:
            hooks.add(
                "invitation_notification",
                self.notifications.notify_board_invitation,
                member_id, inviter_id, invitation, board.get("name", "board"),
            )
        await hooks.run()
        return invitation

    async def respond(self, invitation_id: str, user_id: str, user_email: Optional[str], decision: str) -> Dict[str, Any]:
        try:
            decision = InvitationStatus(decision)
        except ValueError:
            raise BadRequest("Response must be 'accepted' or 'declined'")
        if decision not in (InvitationStatus.ACCEPTED, InvitationStatus.DECLINED):
            raise BadRequest("Response must be 'accepted' or 'declined'")

        async with self.locks.hold(f"invitation:{invitation_id}"):
            invitation = await self.store.get(f"invitations/{invitation_id}")
            if not invitation:
                raise NotFound("Invitation not found")
            if not self._is_invitee(invitation, user_id, user_email):
                raise Forbidden("This invitation is not addressed to you")
            if invitation.get("status") != InvitationStatus.PENDING.value:
                raise NotFound("Invitation not found or already processed")

            now = iso_now()
            invitation = await self.store.update(f"invitations/{invitation_id}", {
                "status": decision.value,
                "memberId": user_id,
                "respondedAt": now,
                "updatedAt": now,
            })

        board_id = invitation["boardId"]
        board = await self.store.get(f"boards/{board_id}")
        if decision == InvitationStatus.ACCEPTED:
            # Status is already written; the member add is a separate write
            if board is None:
                logger.warning(f"Invitation {invitation_id[:8]} accepted but board {board_id[:8]} is gone")
            elif user_id not in (board.get("members") or []):
                board = await self.store.update(f"boards/{board_id}", {
                    "members": (board.get("members") or []) + [user_id],
                    "updatedAt": iso_now(),
                })
        logger.info(f"Invitation {invitation_id[:8]} {decision.value} by {user_id[:8]}")

        hooks = PostCommit(f"respond {invitation_id[:8]}")
        if decision == InvitationStatus.ACCEPTED and board is not None:
            hooks.add(
                "member_joined",
                self.gateway.broadcast_to_board,
                board_id,
                MemberJoined(board_id=board_id, new_member_id=user_id, joined_at=invitation["respondedAt"]),
            )
        hooks.add(
            "reconcile_notification",
            self.notifications.reconcile_invitation_response,
            invitation, decision.value, user_id, (board or {}).get("name"),
        )
        await hooks.run()
        return {
            "invitation": invitation,
            "board": board if decision == InvitationStatus.ACCEPTED else None,
        }

    async def cancel(self, board_id: str, invitation_id: str, user_id: str) -> Dict[str, Any]:
        board = await self._load_board(board_id)
        if board.get("ownerId") != user_id:
            raise Forbidden("Only the board owner can cancel invitations")

        async with self.locks.hold(f"invitation:{invitation_id}"):
            invitation = await self.store.get(f"invitations/{invitation_id}")
            if not invitation or invitation.get("boardId") != board_id:
                raise NotFound("Invitation not found")
            if invitation.get("status") != InvitationStatus.PENDING.value:
                raise BadRequest("Only pending invitations can be cancelled")
            invitation = await self.store.update(f"invitations/{invitation_id}", {
                "status": InvitationStatus.CANCELLED.value,
                "updatedAt": iso_now(),
            })

        hooks = PostCommit(f"cancel {invitation_id[:8]}")
        if invitation.get("memberId"):
            hooks.add(
                "reconcile_notification",
                self.notifications.reconcile_invitation_response,
                invitation, InvitationStatus.CANCELLED.value, invitation["memberId"], board.get("name"),
            )
        await hooks.run()
        return invitation

    async def decline_if_pending(self, invitation_id: str, user_id: str) -> bool:
        """Decline on behalf of the invitee if the invitation is still pending."""
        async with self.locks.hold(f"invitation:{invitation_id}"):
            invitation = await self.store.get(f"invitations/{invitation_id}")
            if not invitation or invitation.get("status") != InvitationStatus.PENDING.value:
                return False
            if invitation.get("memberId") != user_id:
                return False
            now = iso_now()
            await self.store.update(f"invitations/{invitation_id}", {
                "status": InvitationStatus.DECLINED.value,
                "respondedAt": now,
                "updatedAt": now,
            })
        return True

    async def resolve_email_invitations(self, user_id: str, email: str) -> int:
        """Attach pending email-only invitations to a newly signed-up user."""
        email = normalize_email(email)
        resolved = 0
        for invitation in await self.store.query_by_field("invitations", "memberEmail", email):
            if invitation.get("memberId") or invitation.get("status") != InvitationStatus.PENDING.value:
                continue
            invitation = await self.store.update(f"invitations/{invitation['id']}", {
                "memberId": user_id,
                "updatedAt": iso_now(),
            })
            if invitation is None:
                continue
            resolved += 1
            board = await self.store.get(f"boards/{invitation['boardId']}") or {}
            hooks = PostCommit(f"resolve {invitation['id'][:8]}")
            hooks.add(
                "invitation_notification",
                self.notifications.notify_board_invitation,
                user_id, invitation.get("invitedBy") or invitation.get("boardOwnerId"),
                invitation, board.get("name", "board"),
            )
            await hooks.run()
        if resolved:
            logger.info(f"Resolved {resolved} email invitation(s) for {user_id[:8]}")
        return resolved

    # ============================================================
    # MEMBERSHIP
    # ============================================================

    async def remove_member(self, board_id: str, member_id: str, user_id: str) -> Dict[str, Any]:
        board = await self._load_board(board_id)
        if board.get("ownerId") != user_id:
            raise Forbidden("Only the board owner can remove members")
        if member_id == board.get("ownerId"):
            raise BadRequest("The board owner cannot be removed")
        members = board.get("members") or []
        if member_id not in members:
            raise NotFound("User is not a member of this board")

        board = await self.store.update(f"boards/{board_id}", {
            "members": [m for m in members if m != member_id],
            "updatedAt": iso_now(),
        })

        hooks = PostCommit(f"remove member {board_id[:8]}")
        hooks.add(
            "member_removed",
            self.gateway.broadcast_to_board,
            board_id,
            MemberRemoved(board_id=board_id, removed_member_id=member_id, removed_by=user_id),
        )
        hooks.add(
            "removed_from_board",
            self.gateway.send_to_user,
            member_id,
            RemovedFromBoard(board_id=board_id, board_name=board.get("name"), removed_by=user_id),
        )
        await hooks.run()
        self.registry.evict_user(member_id, board_room(board_id))
        return board

    async def leave_board(self, board_id: str, user_id: str) -> Dict[str, Any]:
        board = await self._load_board(board_id)
        members = board.get("members") or []
        if user_id not in members:
            raise BadRequest("You are not a member of this board")
        if board.get("ownerId") == user_id:
            raise BadRequest("The board owner cannot leave the board")

        board = await self.store.update(f"boards/{board_id}", {
            "members": [m for m in members if m != user_id],
            "updatedAt": iso_now(),
        })
        self.registry.evict_user(user_id, board_room(board_id))

        hooks = PostCommit(f"leave {board_id[:8]}")
        hooks.add(
            "member_removed",
            self.gateway.broadcast_to_board,
            board_id,
            MemberRemoved(board_id=board_id, removed_member_id=user_id, left_voluntarily=True),
        )
        await hooks.run()
        return board

    # ============================================================
    # QUERIES
    # ============================================================

    async def list_for_board(self, board_id: str, user_id: str) -> List[Dict[str, Any]]:
        board = await self._load_board(board_id)
        if user_id not in (board.get("members") or []):
            raise Forbidden("Only board members can view invitations")
        invitations = await self._for_board(board_id)
        invitations.sort(key=lambda i: i.get("createdAt") or "", reverse=True)
        return invitations

    async def pending_for_user(self, user_id: str, email: Optional[str]) -> List[Dict[str, Any]]:
        invitations = await self.store.query_by_field("invitations", "memberId", user_id)
        if email:
            invitations += [
                i for i in await self.store.query_by_field("invitations", "memberEmail", normalize_email(email))
                if not i.get("memberId")
            ]
        pending = []
        for invitation in invitations:
            if invitation.get("status") != InvitationStatus.PENDING.value:
                continue
            board = await self.store.get(f"boards/{invitation['boardId']}")
            if not board:
                continue
            inviter = await self.store.get(f"users/{invitation.get('invitedBy') or invitation.get('boardOwnerId')}")
            pending.append({
                **invitation,
                "board": {"id": board["id"], "name": board.get("name")},
                "inviterName": sender_name(inviter),
            })
        pending.sort(key=lambda i: i.get("createdAt") or "", reverse=True)
        return pending

    async def get_status(self, invitation_id: str, user_id: str, email: Optional[str]) -> Dict[str, Any]:
        invitation = await self.store.get(f"invitations/{invitation_id}")
        if not invitation:
            raise NotFound("Invitation not found")
        if not self._is_invitee(invitation, user_id, email):
            raise Forbidden("This invitation is not addressed to you")
        return invitation
