from typing import List

from fastapi import APIRouter, HTTPException
from sqlalchemy import func, update
from sqlmodel import Session, col, select

from db import SessionDep
from models import Notification, User, utcnow
from schemas import NotificationRead
from .auth import CurrentUserRoleDep

router = APIRouter(tags=["notifications"])


def _own_notification(session: Session, notification_id: int, user: User) -> Notification:
    notification = session.get(Notification, notification_id)
    if notification is None or notification.user_id != user.id:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification


@router.get("/", response_model=List[NotificationRead])
def list_notifications(
    session: SessionDep,
    current: CurrentUserRoleDep,
    unread_only: bool = False,
    limit: int = 50,
):
    """
    The current user's notifications, newest first.
    """
    query = (
        select(Notification)
        .where(Notification.user_id == current["user"].id)
        .order_by(col(Notification.created_at).desc(), col(Notification.id).desc())
        .limit(limit)
    )
    if unread_only:
        query = query.where(Notification.is_read == False)  # noqa: E712
    return session.exec(query).all()


@router.get("/unread-count")
def unread_count(session: SessionDep, current: CurrentUserRoleDep):
    count = session.exec(
        select(func.count(col(Notification.id))).where(
            Notification.user_id == current["user"].id,
            Notification.is_read == False,  # noqa: E712
        )
    ).one()
    return {"unread": count}


@router.post("/read-all")
def mark_all_read(session: SessionDep, current: CurrentUserRoleDep):
    result = session.connection().execute(
        update(Notification.__table__)
        .where(
            Notification.__table__.c.user_id == current["user"].id,
            Notification.__table__.c.is_read == False,  # noqa: E712
        )
        .values(is_read=True, read_at=utcnow())
    )
    session.commit()
    return {"updated": result.rowcount}


@router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_read(notification_id: int, session: SessionDep, current: CurrentUserRoleDep):
    notification = _own_notification(session, notification_id, current["user"])
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        session.add(notification)
        session.commit()
        session.refresh(notification)
    return notification


@router.post("/{notification_id}/unread", response_model=NotificationRead)
def mark_unread(notification_id: int, session: SessionDep, current: CurrentUserRoleDep):
    notification = _own_notification(session, notification_id, current["user"])
    notification.is_read = False
    notification.read_at = None
    session.add(notification)
    session.commit()
    session.refresh(notification)
    return notification
