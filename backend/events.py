# events.py - Closed set of live events pushed over WebSocket rooms
# One pydantic model per event name. Fields are snake_case in Python and
# camelCase on the wire: {"type": name, "data": {...}, "timestamp": iso}.

from typing import Any, ClassVar, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from models import iso_now

EVENT_TYPES: Dict[str, Type["Event"]] = {}


class Event(BaseModel):
    name: ClassVar[str] = ""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any) -> None:
        super().__pydantic_init_subclass__(**kwargs)
        if cls.name:
            EVENT_TYPES[cls.name] = cls

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_message(self) -> Dict[str, Any]:
        return {"type": self.name, "data": self.payload(), "timestamp": iso_now()}


# ============================================================
# BOARDS & MEMBERSHIP
# ============================================================

class BoardCreated(Event):
    name: ClassVar[str] = "board_created"
    board: Dict[str, Any]


class BoardUpdated(Event):
    name: ClassVar[str] = "board_updated"
    board: Dict[str, Any]
    updated_by: str


class BoardDeleted(Event):
    name: ClassVar[str] = "board_deleted"
    board_id: str
    deleted_by: str


class MemberJoined(Event):
    name: ClassVar[str] = "member_joined"
    board_id: str
    new_member_id: str
    joined_at: str


class MemberRemoved(Event):
    name: ClassVar[str] = "member_removed"
    board_id: str
    removed_member_id: str
    removed_by: Optional[str] = None
    left_voluntarily: Optional[bool] = None


class RemovedFromBoard(Event):
    name: ClassVar[str] = "removed_from_board"
    board_id: str
    board_name: Optional[str] = None
    removed_by: str


# ============================================================
# CARDS
# ============================================================

class CardCreated(Event):
    name: ClassVar[str] = "card_created"
    card: Dict[str, Any]
    board_id: str
    created_by: str


class CardUpdated(Event):
    name: ClassVar[str] = "card_updated"
    card: Dict[str, Any]
    board_id: str
    updated_by: str


class CardDeleted(Event):
    name: ClassVar[str] = "card_deleted"
    card_id: str
    board_id: str
    deleted_by: str


class CardMoved(Event):
    name: ClassVar[str] = "card_moved"
    card: Dict[str, Any]
    board_id: str
    position: int
    moved_by: str


# ============================================================
# TASKS
# ============================================================

class TaskCreated(Event):
    name: ClassVar[str] = "task_created"
    task: Dict[str, Any]
    card_id: str
    board_id: str
    created_by: str


class TaskUpdated(Event):
    """Server-side task writes carry ``task``; client echoes carry ``task_id`` + ``updates``."""
    name: ClassVar[str] = "task_updated"
    board_id: str
    updated_by: str
    task: Optional[Dict[str, Any]] = None
    task_id: Optional[str] = None
    updates: Optional[Dict[str, Any]] = None


class TaskDeleted(Event):
    name: ClassVar[str] = "task_deleted"
    task_id: str
    card_id: str
    board_id: str
    deleted_by: str


class TaskStatusChanged(Event):
    name: ClassVar[str] = "task_status_changed"
    task: Dict[str, Any]
    card_id: str
    board_id: str
    old_status: str
    new_status: str
    changed_by: str


class TaskAssigned(Event):
    name: ClassVar[str] = "task_assigned"
    task_id: str
    board_id: str
    member_id: str
    assigned_by: str


class TaskUnassigned(Event):
    name: ClassVar[str] = "task_unassigned"
    task_id: str
    board_id: str
    member_id: str
    unassigned_by: str


class TaskCommentAdded(Event):
    name: ClassVar[str] = "task_comment_added"
    task_id: str
    board_id: str
    comment: Dict[str, Any]


class GithubAttachmentAdded(Event):
    name: ClassVar[str] = "github_attachment_added"
    board_id: str
    task_id: str
    added_by: str
    attachment: Optional[Dict[str, Any]] = None


class GithubAttachmentRemoved(Event):
    name: ClassVar[str] = "github_attachment_removed"
    board_id: str
    task_id: str
    removed_by: str
    attachment_id: Optional[str] = None


# ============================================================
# NOTIFICATIONS
# ============================================================

class NewNotification(Event):
    name: ClassVar[str] = "new_notification"
    notification: Dict[str, Any]


class NotificationUpdated(Event):
    name: ClassVar[str] = "notification_updated"
    notification_id: str
    action: str = "updated"
    notification: Optional[Dict[str, Any]] = None
    updates: Optional[Dict[str, Any]] = None


class NotificationDeleted(Event):
    name: ClassVar[str] = "notification_deleted"
    notification_id: str


class NotificationMarkedRead(Event):
    name: ClassVar[str] = "notification_marked_read"
    notification_id: str


# ============================================================
# PRESENCE
# ============================================================

class UserJoined(Event):
    name: ClassVar[str] = "user_joined"
    user_id: str
    user_email: str
    board_id: str


class UserLeft(Event):
    name: ClassVar[str] = "user_left"
    user_id: str
    user_email: str
    board_id: str
