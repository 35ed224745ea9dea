# models.py - Storage model and shared enums for the Taskboard API
# - Single JSON document table addressed by collection/id
# - Status and type enums shared by routers and engines
# - camelCase request base model

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy import Column, String, DateTime, JSON, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def iso_now() -> str:
    return utcnow().isoformat()


def sender_name(user: Optional[dict]) -> str:
    """Name used in notification text: display name, then email, then 'Someone'."""
    if user:
        name = (user.get("displayName") or "").strip()
        if name:
            return name
        if user.get("email"):
            return user["email"]
    return "Someone"


def display_label(user: Optional[dict], user_id: str = "") -> str:
    """Short human label for attachments and member lists."""
    if user and (user.get("displayName") or "").strip():
        return user["displayName"].strip()
    email = (user or {}).get("email")
    if email:
        local = email.split("@")[0]
        return local[:1].upper() + local[1:].lower()
    if len(user_id) > 8:
        return f"User {user_id[-4:]}"
    return user_id or "Unknown User"


# ============================================================
# ENUMS
# ============================================================

class InvitationStatus(str, PyEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class NotificationType(str, PyEnum):
    BOARD_INVITATION = "board_invitation"
    BOARD_INVITATION_ACCEPTED = "board_invitation_accepted"
    TASK_ASSIGNED = "task_assigned"
    BOARD_MEMBER_ADDED = "board_member_added"
    TASK_COMMENT = "task_comment"


class TaskStatus(str, PyEnum):
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    DONE = "done"


class TaskPriority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AttachmentType(str, PyEnum):
    BRANCH = "branch"
    COMMIT = "commit"
    ISSUE = "issue"
    PULL_REQUEST = "pull_request"


# ============================================================
# DOCUMENTS
# ============================================================

class DocumentRecord(Base):
    """One JSON document. ``collection`` + ``id`` form the document path."""
    __tablename__ = "documents"

    collection = Column(String(64), primary_key=True)
    id = Column(String(64), primary_key=True)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_documents_collection", "collection"),
    )


# ============================================================
# SCHEMA BASE
# ============================================================

class CamelModel(BaseModel):
    """Request body base: accepts both camelCase and snake_case keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
