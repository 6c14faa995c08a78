import logging
import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from sqlmodel import Session

from core.firebase import send_push
from models.notification import Notification

logger = logging.getLogger(__name__)

load_dotenv()


def push_enabled() -> bool:
    return os.getenv("FCM_ENABLED", "False").lower() in ("true", "1", "t")


class NotificationService:
    """
    Notification dispatch collaborator.

    Always stores an in-app notification; when FCM_ENABLED is set it also
    pushes to the member's topic. Callers treat this as fire-and-forget and
    must isolate any exception it raises.
    """

    def __init__(self, session: Session, push: Optional[bool] = None):
        self.session = session
        self.push = push_enabled() if push is None else push

    def notify(
        self,
        member_id: str,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        notification_type: str = "attendance",
    ) -> Notification:
        notification = Notification(
            recipient_id=member_id,
            title=title,
            message=message,
            type=notification_type,
            meta=metadata or {},
        )
        self.session.add(notification)
        self.session.commit()
        self.session.refresh(notification)

        if self.push:
            try:
                message_id = send_push(f"member_{member_id}", title, message, metadata)
                logger.info("[NOTIFY] Push %s sent to member %s", message_id, member_id)
            except Exception:
                # The in-app copy is already stored
                logger.exception("[NOTIFY] Push delivery failed for member %s", member_id)

        logger.info("[NOTIFY] '%s' sent to member %s", title, member_id)
        return notification
