from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from payment_service.models import (
    Order,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentStatusCache,
    utcnow,
)


def as_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def as_aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def get_payment_by_transaction_id(session: AsyncSession, transaction_id: str) -> Optional[Payment]:
    result = await session.execute(
        select(Payment).where(Payment.transaction_id == transaction_id)
    )
    return result.scalar_one_or_none()


async def receipt_already_recorded(session: AsyncSession, receipt_number: str) -> bool:
    result = await session.execute(
        select(Payment.id).where(Payment.mpesa_receipt_number == receipt_number).limit(1)
    )
    return result.first() is not None


async def total_completed_payments(session: AsyncSession, order_id: str) -> Decimal:
    result = await session.execute(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.order_id == order_id,
            Payment.status == PaymentStatus.COMPLETED,
        )
    )
    return as_decimal(result.scalar_one())


def order_payment_status(order: Order, total_paid: Decimal, now: datetime) -> PaymentStatusCache:
    balance = as_decimal(order.total_amount) - total_paid
    if balance <= 0:
        return PaymentStatusCache.PAID
    if total_paid > 0:
        return PaymentStatusCache.PARTIAL
    due_date = as_aware(order.payment_due_date)
    if due_date is not None and due_date < now:
        return PaymentStatusCache.OVERDUE
    return PaymentStatusCache.PENDING


async def refresh_order_payment_status_cache(session: AsyncSession, order_id: str) -> Optional[PaymentStatusCache]:
    order = await session.get(Order, order_id)
    if order is None:
        return None
    total_paid = await total_completed_payments(session, order_id)
    cache_status = order_payment_status(order, total_paid, utcnow())
    await session.execute(
        update(Order)
        .where(Order.id == order_id)
        .values(payment_status_cache=cache_status, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return cache_status


async def find_pending_mpesa_payments(session: AsyncSession, created_before: datetime, limit: Optional[int] = None) -> List[Payment]:
    query = (
        select(Payment)
        .where(
            Payment.payment_method == PaymentMethod.MPESA,
            Payment.status == PaymentStatus.PENDING,
            Payment.created_at < created_before,
        )
        .order_by(Payment.created_at)
    )
    if limit is not None:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())
