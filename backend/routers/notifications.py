# routers/notifications.py — In-app notification inbox
# Rows are written by task assignment, invitations and the reminder
# scanner; this router only reads them back and manages read state.
from typing import Optional, Dict, Any, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select, func, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from models import Notification, NotificationType, utcnow
from routers.websocket_router import manager
from task_service import to_iso, enum_value

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])


# ============================================================
# SCHEMAS
# ============================================================

class NotificationOut(BaseModel):
    id: str
    type: str
    title: str
    message: str
    is_read: bool
    read_at: Optional[str] = None
    task_id: Optional[str] = None
    board_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, n: Notification) -> "NotificationOut":
        return cls(
            id=n.id,
            type=enum_value(n.type),
            title=n.title,
            message=n.message or "",
            is_read=bool(n.is_read),
            read_at=to_iso(n.read_at),
            task_id=n.task_id,
            board_id=n.board_id,
            data=n.data or {},
            created_at=to_iso(n.created_at),
        )


class NotificationCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(default="", max_length=2000)
    type: NotificationType = NotificationType.SYSTEM
    task_id: Optional[str] = None
    board_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


async def _own_notification(notification_id: str, user_id: str, db: AsyncSession) -> Notification:
    stmt = select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
    notification = (await db.execute(stmt)).scalar_one_or_none()
    if notification is None:
        raise HTTPException(404, "Notification not found")
    return notification


def _unread_count(user_id: str, kind: Optional[NotificationType] = None):
    stmt = select(func.count(Notification.id)).where(
        Notification.user_id == user_id, Notification.is_read.is_(False),
    )
    if kind is not None:
        stmt = stmt.where(Notification.type == kind)
    return stmt


# ============================================================
# INBOX
# ============================================================

@router.get("", response_model=List[NotificationOut])
async def list_notifications(
    unread_only: bool = False,
    type: Optional[NotificationType] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Newest first"""
    stmt = select(Notification).where(Notification.user_id == user.id)
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    if type is not None:
        stmt = stmt.where(Notification.type == type)
    stmt = stmt.order_by(Notification.created_at.desc()).offset(offset).limit(limit)
    rows = (await db.execute(stmt)).scalars().all()
    return [NotificationOut.from_row(n) for n in rows]


@router.get("/count")
async def notification_count(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Unread badge numbers; reminders are also counted in the total"""
    unread = (await db.execute(_unread_count(user.id))).scalar() or 0
    reminders = (await db.execute(_unread_count(user.id, NotificationType.REMINDER))).scalar() or 0
    return {"unread": unread, "reminders": reminders}


@router.post("", response_model=NotificationOut, status_code=201)
async def create_notification(
    data: NotificationCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    notification = Notification(user_id=user.id, **data.model_dump())
    db.add(notification)
    await db.commit()
    await db.refresh(notification)

    out = NotificationOut.from_row(notification)
    await manager.send_to_user(user.id, {"type": "notification", "notification": out.model_dump()})
    return out


# ============================================================
# READ STATE
# ============================================================

@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    notification = await _own_notification(notification_id, user.id, db)
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        await db.commit()
    return {"id": notification.id, "is_read": True}


@router.post("/read-all")
async def mark_all_read(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user.id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=utcnow())
    )
    await db.commit()
    return {"marked": result.rowcount or 0}


# ============================================================
# CLEANUP
# ============================================================

@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    notification = await _own_notification(notification_id, user.id, db)
    await db.delete(notification)
    await db.commit()
    return {"deleted": notification_id}


@router.delete("")
async def clear_read_notifications(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Drop everything already read; unread items stay"""
    result = await db.execute(
        delete(Notification).where(Notification.user_id == user.id, Notification.is_read.is_(True))
    )
    await db.commit()
    return {"deleted": result.rowcount or 0}
