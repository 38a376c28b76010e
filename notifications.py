"""
Notification delivery for the request workflow.

The workflow only talks to a NotificationSink. The default sink stores
Notification rows that the inbox endpoints in routers/notifications.py read
back; a websocket or e-mail transport would be another sink.
"""
import logging
from typing import Optional

from sqlmodel import Session

from models import Notification

logger = logging.getLogger(__name__)

SYSTEM_SENDER = "System"
SYSTEM_EMAIL = "system@supply.local"


class NotificationSink:
    def create_notification(
        self,
        user_id: int,
        title: str,
        message: str,
        type: str,
        request_id: Optional[int] = None,
        priority: str = "medium",
        action_required: bool = False,
        data: Optional[dict] = None,
        sender_name: str = SYSTEM_SENDER,
        sender_email: Optional[str] = SYSTEM_EMAIL,
    ) -> Optional[Notification]:
        raise NotImplementedError


class DatabaseNotificationSink(NotificationSink):
    """Persists each notification in its own commit."""

    def __init__(self, session: Session):
        self.session = session

    def create_notification(
        self,
        user_id: int,
        title: str,
        message: str,
        type: str,
        request_id: Optional[int] = None,
        priority: str = "medium",
        action_required: bool = False,
        data: Optional[dict] = None,
        sender_name: str = SYSTEM_SENDER,
        sender_email: Optional[str] = SYSTEM_EMAIL,
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            type=type,
            request_id=request_id,
            priority=priority,
            action_required=action_required,
            data=data or {},
            sender_name=sender_name,
            sender_email=sender_email,
        )
        self.session.add(notification)
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(notification)
        logger.info(
            "notification %s (%s) stored for user %s, request %s",
            notification.id,
            type,
            user_id,
            request_id,
        )
        return notification
