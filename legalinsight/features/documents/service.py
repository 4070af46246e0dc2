"""
Documents: the countable unit for usage metering.

Analysis itself happens elsewhere; this module only records that a
document was submitted, soft-deletes it, and runs the windowed count.
"""

from datetime import datetime
from typing import List, Optional
import uuid

from sqlalchemy import select, insert, update, func

from legalinsight.core.clock import Clock, ensure_utc, resolve_clock
from legalinsight.core.database import get_db_session, documents
from legalinsight.core.errors import NotFoundError
from legalinsight.models.document import DocumentRecord


def _row_to_document(row) -> DocumentRecord:
    return DocumentRecord(
        id=row.id,
        user_id=row.user_id,
        title=row.title,
        created_at=ensure_utc(row.created_at),
        deleted=bool(row.deleted),
        deleted_at=ensure_utc(row.deleted_at),
    )


def record_document(user_id: str, title: Optional[str] = None, clock: Optional[Clock] = None) -> DocumentRecord:
    now = resolve_clock(clock).now()
    document = DocumentRecord(id=str(uuid.uuid4()), user_id=user_id, title=title, created_at=now)
    with get_db_session() as session:
        session.execute(
            insert(documents).values(
                id=document.id,
                user_id=user_id,
                title=title,
                created_at=now,
                deleted=False,
            )
        )
    return document


def soft_delete_document(user_id: str, document_id: str, clock: Optional[Clock] = None) -> DocumentRecord:
    now = resolve_clock(clock).now()
    with get_db_session() as session:
        row = session.execute(
            select(documents)
            .where(documents.c.id == document_id)
            .where(documents.c.user_id == user_id)
        ).first()
        if not row:
            raise NotFoundError(f"Document {document_id} not found")
        if not row.deleted:
            session.execute(
                update(documents)
                .where(documents.c.id == document_id)
                .values(deleted=True, deleted_at=now)
            )
    existing = _row_to_document(row)
    if existing.deleted:
        return existing
    return existing.model_copy(update={"deleted": True, "deleted_at": now})


def list_documents(user_id: str, include_deleted: bool = False) -> List[DocumentRecord]:
    stmt = select(documents).where(documents.c.user_id == user_id)
    if not include_deleted:
        stmt = stmt.where(documents.c.deleted.is_(False))
    with get_db_session() as session:
        rows = session.execute(stmt.order_by(documents.c.created_at.desc())).all()
    return [_row_to_document(row) for row in rows]


def count_documents(user_id: str, start: datetime, end: datetime, include_deleted: bool = False) -> int:
    """Count documents created in [start, end)."""
    stmt = (
        select(func.count())
        .select_from(documents)
        .where(documents.c.user_id == user_id)
        .where(documents.c.created_at >= ensure_utc(start))
        .where(documents.c.created_at < ensure_utc(end))
    )
    if not include_deleted:
        stmt = stmt.where(documents.c.deleted.is_(False))
    with get_db_session() as session:
        return int(session.execute(stmt).scalar() or 0)
