"""
User directory.
- get_or_create_user(user_id, email)
- get_user(user_id)
- find_user_id_by_email(email)
"""

from typing import Optional
from sqlalchemy import select, insert, update, func

from legalinsight.core.clock import Clock, resolve_clock, ensure_utc
from legalinsight.core.database import get_db_session, users as app_users
from legalinsight.models.user import User


def _normalize_email(email: Optional[str]) -> Optional[str]:
    if not email or not email.strip():
        return None
    return email.strip().lower()


def get_user(user_id: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        if not row:
            return None
        return User(
            user_id=row.user_id,
            email=row.email,
            created_at=ensure_utc(row.created_at),
            display_name=row.display_name,
            status=row.status,
        )


def find_user_id_by_email(email: Optional[str]) -> Optional[str]:
    normalized = _normalize_email(email)
    if not normalized:
        return None
    with get_db_session() as session:
        return session.execute(
            select(app_users.c.user_id).where(func.lower(app_users.c.email) == normalized)
        ).scalar()


def get_or_create_user(user_id: str, email: Optional[str] = None, clock: Optional[Clock] = None) -> User:
    normalized = _normalize_email(email)
    existing = get_user(user_id)
    if existing:
        if normalized and existing.email != normalized:
            with get_db_session() as session:
                session.execute(
                    update(app_users).where(app_users.c.user_id == user_id).values(email=normalized)
                )
            return existing.model_copy(update={"email": normalized})
        return existing

    now = resolve_clock(clock).now()
    with get_db_session() as session:
        session.execute(
            insert(app_users).values(
                user_id=user_id,
                email=normalized,
                status="active",
                created_at=now,
            )
        )
    return User(user_id=user_id, email=normalized, created_at=now, status="active")
