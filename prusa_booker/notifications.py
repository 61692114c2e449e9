import logging

from sqlmodel import Session, select

from .errors import NotFoundError
from .models import Notification

logger = logging.getLogger(__name__)


def create_notification(
    session: Session, user_id: int, title: str, message: str, type: str = "info"
) -> Notification:
    """Stage a notification in the caller's transaction. The caller commits."""
    notification = Notification(user_id=user_id, title=title, message=message, type=type)
    session.add(notification)
    logger.debug("Queued notification %r for user %s", title, user_id)
    return notification


def list_notifications(session: Session, user_id: int) -> list[Notification]:
    query = (
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
    )
    return list(session.exec(query).all())


def mark_read(session: Session, notification_id: int, user_id: int) -> Notification:
    notification = session.get(Notification, notification_id)
    # someone else's notification is reported as missing
    if not notification or notification.user_id != user_id:
        raise NotFoundError("Notification not found")
    notification.read = True
    session.add(notification)
    session.commit()
    session.refresh(notification)
    return notification
