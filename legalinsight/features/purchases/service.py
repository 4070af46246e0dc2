"""
legalinsight/features/purchases/service.py

Purchase Ledger.

Purchases are keyed by the payment provider's order id. Rows are immutable
except for the completed -> refunded status transition.
"""

from datetime import datetime
from typing import List, Optional, Tuple
import logging
import uuid

from sqlalchemy import select, insert, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from legalinsight.core.clock import ensure_utc
from legalinsight.core.database import get_db_session, purchases
from legalinsight.core.errors import ConflictError, TransientQueryError
from legalinsight.models.plan import PlanTier
from legalinsight.models.purchase import PurchaseRecord, PurchaseStatus


logger = logging.getLogger(__name__)


def _row_to_purchase(row) -> PurchaseRecord:
    return PurchaseRecord(
        id=row.id,
        user_id=row.user_id,
        order_id=row.order_id,
        product_id=row.product_id,
        plan_id=PlanTier(row.plan_id),
        amount=row.amount,
        currency=row.currency,
        status=PurchaseStatus(row.status),
        started_at=ensure_utc(row.started_at),
        expires_at=ensure_utc(row.expires_at),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def fetch_purchase_by_order(session: Session, order_id: str) -> Optional[PurchaseRecord]:
    row = session.execute(
        select(purchases).where(purchases.c.order_id == order_id)
    ).first()
    return _row_to_purchase(row) if row else None


def upsert_purchase(
    session: Session,
    *,
    user_id: str,
    order_id: str,
    product_id: str,
    plan_id: PlanTier,
    amount: float,
    currency: str,
    status: PurchaseStatus,
    started_at: datetime,
    expires_at: Optional[datetime],
    now: datetime,
) -> Tuple[PurchaseRecord, bool]:
    """
    Insert a purchase, or move an existing one from completed to refunded.

    Returns (record, changed). Redelivery of an already-recorded state
    returns the stored row with changed=False. Any other change to an
    existing order is rejected.
    """
    existing = fetch_purchase_by_order(session, order_id)
    if existing is None:
        purchase_id = str(uuid.uuid4())
        session.execute(
            insert(purchases).values(
                id=purchase_id,
                user_id=user_id,
                order_id=order_id,
                product_id=product_id,
                plan_id=plan_id.value,
                amount=amount,
                currency=currency,
                status=status.value,
                started_at=started_at,
                expires_at=expires_at,
                created_at=now,
                updated_at=now,
            )
        )
        return PurchaseRecord(
            id=purchase_id,
            user_id=user_id,
            order_id=order_id,
            product_id=product_id,
            plan_id=plan_id,
            amount=amount,
            currency=currency,
            status=status,
            started_at=started_at,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        ), True

    if existing.user_id != user_id:
        raise ConflictError(f"Order {order_id} belongs to another user")
    if existing.status is status:
        return existing, False
    if existing.status is PurchaseStatus.REFUNDED:
        raise ConflictError(f"Order {order_id} is already refunded")

    session.execute(
        update(purchases)
        .where(purchases.c.id == existing.id)
        .values(status=status.value, updated_at=now)
    )
    return existing.model_copy(update={"status": status, "updated_at": now}), True


def has_ever_paid(user_id: str) -> bool:
    """True when the user has at least one completed purchase."""
    return count_completed_purchases(user_id) > 0


def count_completed_purchases(user_id: str, plan_id: Optional[PlanTier] = None) -> int:
    stmt = (
        select(func.count())
        .select_from(purchases)
        .where(purchases.c.user_id == user_id)
        .where(purchases.c.status == PurchaseStatus.COMPLETED.value)
    )
    if plan_id is not None:
        stmt = stmt.where(purchases.c.plan_id == plan_id.value)
    try:
        with get_db_session() as session:
            return int(session.execute(stmt).scalar() or 0)
    except SQLAlchemyError as exc:
        raise TransientQueryError(f"Failed to read purchases for user {user_id}") from exc


def list_purchases(user_id: str) -> List[PurchaseRecord]:
    with get_db_session() as session:
        rows = session.execute(
            select(purchases)
            .where(purchases.c.user_id == user_id)
            .order_by(purchases.c.created_at.desc())
        ).all()
    return [_row_to_purchase(row) for row in rows]
