# routers/notifications.py - Notification inbox
from fastapi import APIRouter, Depends, Query

from auth import get_current_user, CurrentUser
from services import Services, get_services

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])


@router.get("")
async def list_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.notifications.list_for_user(user.id, limit=limit, unread_only=unread_only)


@router.get("/unread-count")
async def unread_count(
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return {"unread": await services.notifications.unread_count(user.id)}


@router.patch("/mark-all-read")
async def mark_all_read(
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    count = await services.notifications.mark_all_read(user.id)
    return {"message": "All notifications marked as read", "updated": count}


@router.patch("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.notifications.mark_read(notification_id, user.id)


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.notifications.delete(notification_id, user.id)
    return {"message": "Notification deleted", "notificationId": notification_id}
