"""Notification inbox API."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kontrivibe.auth import require_user
from kontrivibe.db.engine import get_session
from kontrivibe.db.notification_tables import NotificationRow
from kontrivibe.db.tables import utcnow
from kontrivibe.db.user_tables import UserRow
from kontrivibe.errors import NotFoundError

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def _serialize(n: NotificationRow) -> dict:
    return {
        "id": n.id,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "data": n.data or {},
        "isRead": n.is_read,
        "readAt": n.read_at.isoformat() if n.read_at else None,
        "createdAt": n.created_at.isoformat() if n.created_at else None,
    }


async def _get_owned(session: AsyncSession, notification_id: str, user_id: str) -> NotificationRow:
    result = await session.execute(
        select(NotificationRow).where(
            NotificationRow.id == notification_id, NotificationRow.user_id == user_id,
        )
    )
    notification = result.scalar_one_or_none()
    if notification is None:
        raise NotFoundError("Notification not found")
    return notification


@router.get("")
async def list_notifications(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    unread_only: bool = Query(False, alias="unreadOnly"),
    user: UserRow = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    query = select(NotificationRow).where(NotificationRow.user_id == user.id)
    if unread_only:
        query = query.where(NotificationRow.is_read.is_(False))
    result = await session.execute(
        query.order_by(NotificationRow.created_at.desc()).offset(offset).limit(limit)
    )
    unread = await session.scalar(
        select(func.count()).select_from(NotificationRow).where(
            NotificationRow.user_id == user.id, NotificationRow.is_read.is_(False),
        )
    )
    return {
        "notifications": [_serialize(n) for n in result.scalars()],
        "unreadCount": unread or 0,
    }


@router.patch("/read-all")
async def mark_all_read(
    user: UserRow = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    result = await session.execute(
        update(NotificationRow)
        .where(NotificationRow.user_id == user.id, NotificationRow.is_read.is_(False))
        .values(is_read=True, read_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return {"success": True, "updated": result.rowcount}


@router.patch("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    user: UserRow = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    notification = await _get_owned(session, notification_id, user.id)
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        await session.commit()
    return {"success": True, "notification": _serialize(notification)}


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    user: UserRow = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    notification = await _get_owned(session, notification_id, user.id)
    await session.execute(delete(NotificationRow).where(NotificationRow.id == notification.id))
    await session.commit()
    return {"success": True}
