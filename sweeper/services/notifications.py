"""
Notification outbox.
Persists dispatch events for the external delivery service to pick up.
"""
from typing import List, Optional
import uuid

from sqlalchemy.orm import Session

from ..models.models import Notification
from ..config import settings
from .events import DispatchEvent
from .time_rules import utc_now


class NotificationOutbox:
    """
    Event sink that writes one ``notifications`` row per event.

    Rows start ``pending``; the delivery service marks them ``sent`` or
    ``failed`` once it has handled them.
    """

    def __init__(self, db: Session, enabled: Optional[bool] = None):
        self.db = db
        self.enabled = settings.enable_notification_outbox if enabled is None else enabled

    def publish(self, event: DispatchEvent) -> None:
        if not self.enabled:
            return

        notification = Notification(
            event_type=event.type.value,
            booking_id=event.booking_id,
            payload_json=event.to_dict(),
            status="pending",
        )

        self.db.add(notification)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise


def list_pending_notifications(db: Session, limit: int = 50) -> List[Notification]:
    return (
        db.query(Notification)
        .filter(Notification.status == "pending")
        .order_by(Notification.created_at.asc())
        .limit(limit)
        .all()
    )


def mark_notification(
    db: Session,
    notification_id: uuid.UUID,
    status: str,
    error_message: Optional[str] = None,
) -> Optional[Notification]:
    """
    Record the delivery outcome for one notification.

    Args:
        db: Database session
        notification_id: Notification ID
        status: sent|failed
        error_message: Delivery error, when failed

    Returns:
        Updated Notification, or None if it does not exist
    """
    if status not in ("sent", "failed"):
        raise ValueError(f"Unsupported notification status: {status}")

    notification = db.query(Notification).filter(Notification.id == notification_id).first()
    if not notification:
        return None

    notification.status = status
    notification.error_message = error_message
    notification.sent_at = utc_now() if status == "sent" else None
    db.commit()
    db.refresh(notification)
    return notification
