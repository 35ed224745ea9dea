# notification_engine.py - Notification records and their reconciliation with invitations
# - Idempotent creation keyed by (recipient, type, sender, correlation fields)
# - Invitation notifications mirror invitation status in data.status
# - Every write is pushed to the recipient's user room

import json
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from broadcast import BroadcastGateway
from errors import Forbidden, NotFound
from events import NewNotification, NotificationDeleted, NotificationUpdated
from models import NotificationType, InvitationStatus, iso_now, sender_name, utcnow
from side_effects import KeyedLocks
from store import DocumentStore

logger = logging.getLogger("taskboard.notifications")

INVITATION_TYPES = {
    NotificationType.BOARD_INVITATION.value,
    NotificationType.BOARD_INVITATION_ACCEPTED.value,
}

RESPONSE_MESSAGES = {
    InvitationStatus.ACCEPTED.value: 'You accepted the invitation to join "{board}"',
    InvitationStatus.DECLINED.value: 'You declined the invitation to join "{board}"',
    InvitationStatus.CANCELLED.value: 'The invitation to join "{board}" was cancelled',
}

DEFAULT_LIST_LIMIT = 50
RETENTION_DAYS = 30


class NotificationEngine:
    def __init__(self, store: DocumentStore, gateway: BroadcastGateway, locks: Optional[KeyedLocks] = None):
        self.store = store
        self.gateway = gateway
        self.locks = locks or KeyedLocks()
        # (invitation_id, user_id) -> declined?; wired to InvitationService.decline_if_pending
        self.invitation_resolver: Optional[Callable[[str, str], Awaitable[bool]]] = None

    async def _for_recipient(self, recipient_id: str) -> List[Dict[str, Any]]:
        return await self.store.query_by_field("notifications", "recipientId", recipient_id)

    async def _load_owned(self, notification_id: str, user_id: str) -> Dict[str, Any]:
        notification = await self.store.get(f"notifications/{notification_id}")
        if not notification:
            raise NotFound("Notification not found")
        if notification.get("recipientId") != user_id:
            raise Forbidden("Not authorized to access this notification")
        return notification

    # ============================================================
    # CREATE
    # ============================================================

    async def create_if_absent(
        self,
        kind: str,
        recipient_id: str,
        sender_id: str,
        correlation: Dict[str, Any],
        *,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        board_id: Optional[str] = None,
        card_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Persist and push a notification unless an equivalent one exists.

        Returns the new record, or None when a duplicate was found.
        """
        kind = NotificationType(kind).value
        lock_key = "notification:" + json.dumps(
            [recipient_id, kind, sender_id, correlation], sort_keys=True, default=str
        )

        async with self.locks.hold(lock_key):
            for existing in await self._for_recipient(recipient_id):
                existing_data = existing.get("data") or {}
                if (
                    existing.get("type") == kind
                    and existing.get("senderId") == sender_id
                    and all(existing_data.get(k) == v for k, v in correlation.items())
                ):
                    logger.info(f"Duplicate {kind} notification for {recipient_id[:8]} skipped")
                    return None

            now = iso_now()
            notification_id = self.store.push_id("notifications")
            saved = await self.store.set(f"notifications/{notification_id}", {
                "type": kind,
                "title": title,
                "message": message,
                "recipientId": recipient_id,
                "senderId": sender_id,
                "boardId": board_id,
                "cardId": card_id,
                "taskId": task_id,
                "data": {**correlation, **(data or {})},
                "read": False,
                "createdAt": now,
                "updatedAt": now,
            })

        await self.gateway.send_to_user(recipient_id, NewNotification(notification=saved))
        return saved

    async def _sender_name(self, sender_id: str) -> str:
        return sender_name(await self.store.get(f"users/{sender_id}"))

    async def notify_board_invitation(
        self, recipient_id: str, sender_id: str, invitation: Dict[str, Any], board_name: str,
    ) -> Optional[Dict[str, Any]]:
        name = await self._sender_name(sender_id)
        return await self.create_if_absent(
            NotificationType.BOARD_INVITATION,
            recipient_id,
            sender_id,
            {"boardName": board_name, "invitationId": invitation["id"]},
            title="Board Invitation",
            message=f'{name} invited you to join "{board_name}"',
            data={"senderName": name, "status": invitation.get("status", InvitationStatus.PENDING.value)},
            board_id=invitation.get("boardId"),
        )

    async def notify_task_assigned(
        self, recipient_id: str, sender_id: str, task: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        name = await self._sender_name(sender_id)
        return await self.create_if_absent(
            NotificationType.TASK_ASSIGNED,
            recipient_id,
            sender_id,
            {"taskId": task["id"]},
            title="Task Assigned",
            message=f'{name} assigned you to "{task.get("title", "a task")}"',
            data={"taskTitle": task.get("title"), "senderName": name},
            board_id=task.get("boardId"),
            card_id=task.get("cardId"),
            task_id=task["id"],
        )

    async def notify_task_comment(
        self, recipient_id: str, sender_id: str, task: Dict[str, Any], comment: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        name = await self._sender_name(sender_id)
        return await self.create_if_absent(
            NotificationType.TASK_COMMENT,
            recipient_id,
            sender_id,
            {"taskId": task["id"], "commentId": comment["id"]},
            title="New Comment",
            message=f'{name} commented on "{task.get("title", "a task")}"',
            data={"taskTitle": task.get("title"), "senderName": name, "excerpt": comment.get("body", "")[:140]},
            board_id=task.get("boardId"),
            card_id=task.get("cardId"),
            task_id=task["id"],
        )

    # ============================================================
    # INVITATION RECONCILIATION
    # ============================================================

    async def reconcile_invitation_response(
        self,
        invitation: Dict[str, Any],
        new_status: str,
        recipient_id: str,
        board_name: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Bring the recipient's invitation notifications in line with ``new_status``.

        No matching notification is a silent no-op.
        """
        matches = [
            n for n in await self._for_recipient(recipient_id)
            if n.get("type") in INVITATION_TYPES
            and (n.get("data") or {}).get("invitationId") == invitation["id"]
        ]
        updated = []
        for notification in matches:
            data = dict(notification.get("data") or {})
            board = data.get("boardName") or board_name or "board"
            data["status"] = new_status
            data["respondedAt"] = iso_now()
            fields = {
                "message": RESPONSE_MESSAGES[new_status].format(board=board),
                "data": data,
                "updatedAt": iso_now(),
            }
            if new_status == InvitationStatus.ACCEPTED.value:
                fields["type"] = NotificationType.BOARD_INVITATION_ACCEPTED.value
                fields["read"] = True
            elif new_status == InvitationStatus.DECLINED.value:
                fields["read"] = True

            result = await self.store.update(f"notifications/{notification['id']}", fields)
            if result is None:
                continue
            updated.append(result)
            await self.gateway.send_to_user(
                recipient_id,
                NotificationUpdated(notification_id=result["id"], notification=result, action="updated"),
            )

        if not matches:
            logger.debug(f"No notification mirrors invitation {invitation['id'][:8]}")
        return updated

    async def on_notification_deleted(self, notification: Dict[str, Any], acting_user_id: str) -> bool:
        """Dismissing an unanswered invitation notification declines the invitation."""
        if notification.get("type") != NotificationType.BOARD_INVITATION.value:
            return False
        data = notification.get("data") or {}
        invitation_id = data.get("invitationId")
        if not invitation_id or data.get("status") not in (None, InvitationStatus.PENDING.value):
            return False
        if self.invitation_resolver is None:
            return False
        declined = await self.invitation_resolver(invitation_id, acting_user_id)
        if declined:
            logger.info(f"Invitation {invitation_id[:8]} auto-declined on notification delete")
        return declined

    # ============================================================
    # READ / UPDATE / DELETE
    # ============================================================

    async def list_for_user(self, user_id: str, limit: int = DEFAULT_LIST_LIMIT, unread_only: bool = False) -> List[Dict[str, Any]]:
        notifications = await self._for_recipient(user_id)
        if unread_only:
            notifications = [n for n in notifications if not n.get("read")]
        notifications.sort(key=lambda n: n.get("createdAt") or "", reverse=True)
        return notifications[:limit]

    async def unread_count(self, user_id: str) -> int:
        return sum(1 for n in await self._for_recipient(user_id) if not n.get("read"))

    async def mark_read(self, notification_id: str, user_id: str) -> Dict[str, Any]:
        await self._load_owned(notification_id, user_id)
        updated = await self.store.update(f"notifications/{notification_id}", {"read": True, "updatedAt": iso_now()})
        if updated is None:
            raise NotFound("Notification not found")
        await self.gateway.send_to_user(
            user_id,
            NotificationUpdated(notification_id=notification_id, updates={"read": True}, action="read"),
        )
        return updated

    async def mark_all_read(self, user_id: str) -> int:
        count = 0
        for notification in await self._for_recipient(user_id):
            if notification.get("read"):
                continue
            await self.store.update(f"notifications/{notification['id']}", {"read": True, "updatedAt": iso_now()})
            count += 1
        await self.gateway.send_to_user(
            user_id,
            NotificationUpdated(notification_id="all", updates={"read": True}, action="read_all"),
        )
        return count

    async def delete(self, notification_id: str, user_id: str) -> Dict[str, Any]:
        notification = await self._load_owned(notification_id, user_id)
        try:
            await self.on_notification_deleted(notification, user_id)
        except Exception as e:
            logger.warning(f"Invitation follow-up for notification {notification_id[:8]} failed: {e}")
        await self.store.delete(f"notifications/{notification_id}")
        await self.gateway.send_to_user(user_id, NotificationDeleted(notification_id=notification_id))
        return notification

    async def delete_old(self, days: int = RETENTION_DAYS) -> int:
        cutoff = (utcnow() - timedelta(days=days)).isoformat()
        removed = 0
        for notification in await self.store.scan("notifications"):
            if (notification.get("createdAt") or "") < cutoff:
                await self.store.delete(f"notifications/{notification['id']}")
                removed += 1
        if removed:
            logger.info(f"Pruned {removed} notifications older than {days} days")
        return removed
