from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from ..models.models import Notification, User

logger = logging.getLogger(__name__)


def _resolve_recipient_ids(
    session: Session,
    user_ids: Optional[Iterable[Optional[int]]] = None,
    role_names: Optional[Iterable[str]] = None,
) -> List[int]:
    recipients: Set[int] = set()
    if user_ids:
        recipients.update(user_id for user_id in user_ids if user_id is not None)

    if role_names:
        role_names = [name.upper() for name in role_names]
        if role_names:
            query = (
                session.query(User.id)
                .filter(User.role.in_(role_names), User.is_active.is_(True))
                .distinct()
            )
            for row in query:
                recipients.add(row[0])

    return sorted(recipients)


def create_notification(
    session: Session,
    *,
    title: str,
    message: str,
    level: str = "info",
    category: Optional[str] = None,
    link_url: Optional[str] = None,
    user_ids: Optional[Iterable[Optional[int]]] = None,
    role_names: Optional[Iterable[str]] = None,
) -> List[Notification]:
    recipient_ids = _resolve_recipient_ids(session, user_ids=user_ids, role_names=role_names)
    if not recipient_ids:
        return []

    notifications: List[Notification] = []
    now = datetime.now(timezone.utc)
    for recipient_id in recipient_ids:
        notification = Notification(
            user_id=recipient_id,
            title=title,
            message=message,
            level=level,
            category=category,
            link_url=link_url,
            created_at=now,
        )
        session.add(notification)
        notifications.append(notification)
    session.flush()
    return notifications


def dispatch_after_commit(session: Session, label: str, callback: Callable[[Session], object]) -> bool:
    """Run one best-effort side effect after the financial write has committed.

    Failures are logged and rolled back; they never propagate to the caller.
    """
    try:
        callback(session)
        session.commit()
    except Exception:
        session.rollback()
        logger.exception("Post-commit side effect %s failed", label)
        return False
    return True


def notify_roles(
    session: Session,
    *,
    label: str,
    title: str,
    message: str,
    role_names: Iterable[str],
    user_ids: Optional[Iterable[Optional[int]]] = None,
    level: str = "info",
    category: Optional[str] = None,
    link_url: Optional[str] = None,
) -> bool:
    role_names = list(role_names)
    user_ids = list(user_ids or [])
    return dispatch_after_commit(
        session,
        label,
        lambda db: create_notification(
            db,
            title=title,
            message=message,
            level=level,
            category=category,
            link_url=link_url,
            user_ids=user_ids,
            role_names=role_names,
        ),
    )
