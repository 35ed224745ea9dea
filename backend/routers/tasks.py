# routers/tasks.py - Tasks, assignees, comments and GitHub attachments
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import Field

from access import is_member, load_card, load_member_board, load_task
from auth import get_current_user, CurrentUser
from errors import AppError, BadRequest, Conflict, NotFound
from events import (
    GithubAttachmentAdded, GithubAttachmentRemoved, TaskAssigned, TaskCommentAdded,
    TaskCreated, TaskDeleted, TaskStatusChanged, TaskUnassigned, TaskUpdated,
)
from models import AttachmentType, CamelModel, TaskPriority, TaskStatus, display_label, iso_now, new_uuid
from services import Services, get_services
from side_effects import PostCommit

router = APIRouter(prefix="/api/v1/boards/{board_id}", tags=["Tasks"])
logger = logging.getLogger("taskboard.tasks")


# --- Schemas ---

class TaskCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[str] = None


class TaskUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[str] = None
    position: Optional[int] = Field(None, ge=0)


class TaskMove(CamelModel):
    target_card_id: str
    position: Optional[int] = Field(None, ge=0)


class AssignRequest(CamelModel):
    member_id: str


class CommentCreate(CamelModel):
    body: str = Field(..., min_length=1, max_length=5000)


class RepositoryRef(CamelModel):
    owner: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    full_name: Optional[str] = None


class AttachmentCreate(CamelModel):
    type: AttachmentType
    repository: RepositoryRef
    github_id: str = Field(..., min_length=1)


# Maps validated update fields onto stored document keys
_FIELD_NAMES = {"due_date": "dueDate"}


async def _card_task(services: Services, board_id: str, card_id: str, task_id: str) -> dict:
    task = await load_task(services.store, board_id, task_id)
    if task.get("cardId") != card_id:
        raise NotFound("Task not found")
    return task


async def _bump_tasks_count(services: Services, card_id: str, delta: int) -> None:
    card = await services.store.get(f"cards/{card_id}")
    if card:
        await services.store.update(f"cards/{card_id}", {"tasksCount": max(0, card.get("tasksCount", 0) + delta)})


# ============================================================
# TASK CRUD
# ============================================================

@router.get("/cards/{card_id}/tasks")
async def list_tasks(
    board_id: str,
    card_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    await load_card(services.store, board_id, card_id)
    tasks = await services.store.query_by_field("tasks", "cardId", card_id)
    tasks.sort(key=lambda t: (t.get("position", 0), t.get("createdAt") or ""))
    return tasks


@router.post("/cards/{card_id}/tasks", status_code=201)
async def create_task(
    board_id: str,
    card_id: str,
    data: TaskCreate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    await load_card(services.store, board_id, card_id)
    siblings = await services.store.query_by_field("tasks", "cardId", card_id)

    now = iso_now()
    task_id = services.store.push_id("tasks")
    task = await services.store.set(f"tasks/{task_id}", {
        "title": data.title.strip(),
        "description": data.description,
        "status": data.status.value,
        "priority": data.priority.value,
        "dueDate": data.due_date,
        "cardId": card_id,
        "boardId": board_id,
        "ownerId": user.id,
        "assignedTo": [],
        "position": len(siblings),
        "githubAttachments": [],
        "comments": [],
        "createdAt": now,
        "updatedAt": now,
    })
    await _bump_tasks_count(services, card_id, 1)
    await services.gateway.broadcast_to_board(
        board_id, TaskCreated(task=task, card_id=card_id, board_id=board_id, created_by=user.id),
    )
    return task


@router.get("/cards/{card_id}/tasks/{task_id}")
async def get_task(
    board_id: str,
    card_id: str,
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    return await _card_task(services, board_id, card_id, task_id)


@router.put("/cards/{card_id}/tasks/{task_id}")
async def update_task(
    board_id: str,
    card_id: str,
    task_id: str,
    data: TaskUpdate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    before = await _card_task(services, board_id, card_id, task_id)

    fields = {
        _FIELD_NAMES.get(k, k): (v.value if hasattr(v, "value") else v)
        for k, v in data.model_dump(exclude_none=True).items()
    }
    fields["updatedAt"] = iso_now()
    task = await services.store.update(f"tasks/{task_id}", fields)

    await services.gateway.broadcast_to_board(
        board_id, TaskUpdated(board_id=board_id, task=task, updated_by=user.id),
    )
    if "status" in fields and fields["status"] != before.get("status"):
        await services.gateway.broadcast_to_board(board_id, TaskStatusChanged(
            task=task,
            card_id=card_id,
            board_id=board_id,
            old_status=before.get("status", TaskStatus.TODO.value),
            new_status=fields["status"],
            changed_by=user.id,
        ))
    return task


@router.delete("/cards/{card_id}/tasks/{task_id}")
async def delete_task(
    board_id: str,
    card_id: str,
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    await _card_task(services, board_id, card_id, task_id)
    await services.store.delete(f"tasks/{task_id}")
    await _bump_tasks_count(services, card_id, -1)
    await services.gateway.broadcast_to_board(
        board_id, TaskDeleted(task_id=task_id, card_id=card_id, board_id=board_id, deleted_by=user.id),
    )
    return {"message": "Task deleted", "taskId": task_id}


@router.patch("/tasks/{task_id}/move")
async def move_task(
    board_id: str,
    task_id: str,
    data: TaskMove,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    task = await load_task(services.store, board_id, task_id)
    await load_card(services.store, board_id, data.target_card_id)

    source_card_id = task.get("cardId")
    fields = {"cardId": data.target_card_id, "updatedAt": iso_now()}
    if data.position is not None:
        fields["position"] = data.position
    elif source_card_id != data.target_card_id:
        fields["position"] = len(await services.store.query_by_field("tasks", "cardId", data.target_card_id))
    task = await services.store.update(f"tasks/{task_id}", fields)

    if source_card_id != data.target_card_id:
        await _bump_tasks_count(services, source_card_id, -1)
        await _bump_tasks_count(services, data.target_card_id, 1)
    await services.gateway.broadcast_to_board(
        board_id, TaskUpdated(board_id=board_id, task=task, updated_by=user.id),
    )
    return task


# ============================================================
# ASSIGNEES
# ============================================================

@router.post("/cards/{card_id}/tasks/{task_id}/assign")
async def assign_task(
    board_id: str,
    card_id: str,
    task_id: str,
    data: AssignRequest,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    board = await load_member_board(services.store, board_id, user.id)
    task = await _card_task(services, board_id, card_id, task_id)
    if not is_member(board, data.member_id):
        raise BadRequest("User must be a board member to be assigned")
    assigned = task.get("assignedTo") or []
    if data.member_id in assigned:
        raise Conflict("User is already assigned to this task")

    task = await services.store.update(f"tasks/{task_id}", {
        "assignedTo": assigned + [data.member_id],
        "updatedAt": iso_now(),
    })

    hooks = PostCommit(f"assign {task_id[:8]}")
    hooks.add(
        "task_assigned",
        services.gateway.broadcast_to_board,
        board_id,
        TaskAssigned(task_id=task_id, board_id=board_id, member_id=data.member_id, assigned_by=user.id),
    )
    if data.member_id != user.id:
        hooks.add("assignment_notification", services.notifications.notify_task_assigned, data.member_id, user.id, task)
    await hooks.run()
    return task


@router.get("/cards/{card_id}/tasks/{task_id}/assign")
async def list_assignees(
    board_id: str,
    card_id: str,
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    task = await _card_task(services, board_id, card_id, task_id)
    assignees = []
    for member_id in task.get("assignedTo") or []:
        member = await services.store.get(f"users/{member_id}")
        assignees.append({
            "id": member_id,
            "email": (member or {}).get("email"),
            "displayName": display_label(member, member_id),
            "photoURL": (member or {}).get("photoURL"),
        })
    return assignees


@router.delete("/cards/{card_id}/tasks/{task_id}/assign/{member_id}")
async def unassign_task(
    board_id: str,
    card_id: str,
    task_id: str,
    member_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    task = await _card_task(services, board_id, card_id, task_id)
    assigned = task.get("assignedTo") or []
    if member_id not in assigned:
        raise NotFound("User is not assigned to this task")
    task = await services.store.update(f"tasks/{task_id}", {
        "assignedTo": [m for m in assigned if m != member_id],
        "updatedAt": iso_now(),
    })
    await services.gateway.broadcast_to_board(
        board_id,
        TaskUnassigned(task_id=task_id, board_id=board_id, member_id=member_id, unassigned_by=user.id),
    )
    return task


# ============================================================
# COMMENTS
# ============================================================

@router.get("/cards/{card_id}/tasks/{task_id}/comments")
async def list_comments(
    board_id: str,
    card_id: str,
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    task = await _card_task(services, board_id, card_id, task_id)
    return task.get("comments") or []


@router.post("/cards/{card_id}/tasks/{task_id}/comments", status_code=201)
async def add_comment(
    board_id: str,
    card_id: str,
    task_id: str,
    data: CommentCreate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    task = await _card_task(services, board_id, card_id, task_id)
    author = await services.store.get(f"users/{user.id}")
    comment = {
        "id": new_uuid(),
        "authorId": user.id,
        "authorName": display_label(author, user.id),
        "body": data.body,
        "createdAt": iso_now(),
    }
    task = await services.store.update(f"tasks/{task_id}", {
        "comments": (task.get("comments") or []) + [comment],
        "updatedAt": iso_now(),
    })

    hooks = PostCommit(f"comment {task_id[:8]}")
    hooks.add(
        "comment_added",
        services.gateway.broadcast_to_board,
        board_id,
        TaskCommentAdded(task_id=task_id, board_id=board_id, comment=comment),
    )
    for assignee in task.get("assignedTo") or []:
        if assignee != user.id:
            hooks.add("comment_notification", services.notifications.notify_task_comment, assignee, user.id, task, comment)
    await hooks.run()
    return comment


# ============================================================
# GITHUB ATTACHMENTS
# ============================================================

@router.post("/cards/{card_id}/tasks/{task_id}/github-attachments", status_code=201)
async def add_github_attachment(
    board_id: str,
    card_id: str,
    task_id: str,
    data: AttachmentCreate,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    task = await _card_task(services, board_id, card_id, task_id)
    full_name = data.repository.full_name or f"{data.repository.owner}/{data.repository.name}"
    attachments = task.get("githubAttachments") or []
    for existing in attachments:
        if (
            existing.get("type") == data.type.value
            and existing.get("githubId") == data.github_id
            and (existing.get("repository") or {}).get("fullName") == full_name
        ):
            raise Conflict("This GitHub item is already attached to the task")

    attacher = await services.store.get(f"users/{user.id}")
    attachment = {
        "id": new_uuid(),
        "type": data.type.value,
        "repository": {"owner": data.repository.owner, "name": data.repository.name, "fullName": full_name},
        "githubId": data.github_id,
        "attachedBy": display_label(attacher, user.id),
        "attachedByUserId": user.id,
        "attachedAt": iso_now(),
    }
    await services.store.update(f"tasks/{task_id}", {
        "githubAttachments": attachments + [attachment],
        "updatedAt": iso_now(),
    })
    await services.gateway.broadcast_to_board(
        board_id,
        GithubAttachmentAdded(board_id=board_id, task_id=task_id, attachment=attachment, added_by=user.id),
    )
    return attachment


@router.get("/cards/{card_id}/tasks/{task_id}/github-attachments")
async def list_github_attachments(
    board_id: str,
    card_id: str,
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    task = await _card_task(services, board_id, card_id, task_id)
    attachments = task.get("githubAttachments") or []
    viewer = await services.store.get(f"users/{user.id}") or {}
    token = viewer.get("githubAccessToken")
    if not token or not attachments:
        return [{**a, "metadata": None} for a in attachments]

    enriched = []
    async with services.github_factory(token) as github:
        for attachment in attachments:
            repository = attachment.get("repository") or {}
            try:
                metadata = await github.get_attachment_metadata(
                    repository.get("owner"), repository.get("name"), attachment["type"], attachment["githubId"],
                )
            except (AppError, ValueError, KeyError) as e:
                logger.warning(f"Metadata fetch failed for attachment {attachment['id'][:8]}: {e}")
                metadata = {"title": "Unable to fetch details", "error": True}
            enriched.append({**attachment, "metadata": metadata})
    return enriched


@router.delete("/cards/{card_id}/tasks/{task_id}/github-attachments/{attachment_id}")
async def remove_github_attachment(
    board_id: str,
    card_id: str,
    task_id: str,
    attachment_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await load_member_board(services.store, board_id, user.id)
    task = await _card_task(services, board_id, card_id, task_id)
    attachments = task.get("githubAttachments") or []
    remaining = [a for a in attachments if a.get("id") != attachment_id]
    if len(remaining) == len(attachments):
        raise NotFound("Attachment not found")
    await services.store.update(f"tasks/{task_id}", {"githubAttachments": remaining, "updatedAt": iso_now()})
    await services.gateway.broadcast_to_board(
        board_id,
        GithubAttachmentRemoved(board_id=board_id, task_id=task_id, attachment_id=attachment_id, removed_by=user.id),
    )
    return {"message": "Attachment removed", "attachmentId": attachment_id}
