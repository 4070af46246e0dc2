"""
User-visible plan notifications.

Written inside the same transaction as the plan transition that produced
them, so a rolled-back transition never leaves a stray notice behind.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session

from legalinsight.core.clock import Clock, ensure_utc, resolve_clock
from legalinsight.core.database import get_db_session, plan_notifications
from legalinsight.models.notification import NotificationKind, PlanNotification


def record_notification(
    session: Session,
    user_id: str,
    kind: NotificationKind,
    title: str,
    message: str,
    now: datetime,
) -> None:
    session.execute(
        insert(plan_notifications).values(
            user_id=user_id,
            kind=kind.value,
            title=title,
            message=message,
            created_at=now,
        )
    )


def list_notifications(user_id: str, unread_only: bool = False, limit: int = 50) -> List[PlanNotification]:
    stmt = select(plan_notifications).where(plan_notifications.c.user_id == user_id)
    if unread_only:
        stmt = stmt.where(plan_notifications.c.read_at.is_(None))
    stmt = stmt.order_by(plan_notifications.c.created_at.desc(), plan_notifications.c.id.desc()).limit(limit)

    with get_db_session() as session:
        rows = session.execute(stmt).all()
    return [
        PlanNotification(
            id=row.id,
            user_id=row.user_id,
            kind=NotificationKind(row.kind),
            title=row.title,
            message=row.message,
            created_at=ensure_utc(row.created_at),
            read_at=ensure_utc(row.read_at),
        )
        for row in rows
    ]


def mark_notifications_read(user_id: str, ids: Optional[List[int]] = None, clock: Optional[Clock] = None) -> int:
    """Mark the given (or all unread) notifications as read. Returns rows updated."""
    now = resolve_clock(clock).now()
    stmt = (
        update(plan_notifications)
        .where(plan_notifications.c.user_id == user_id)
        .where(plan_notifications.c.read_at.is_(None))
    )
    if ids:
        stmt = stmt.where(plan_notifications.c.id.in_(ids))
    with get_db_session() as session:
        result = session.execute(stmt.values(read_at=now))
        return result.rowcount
