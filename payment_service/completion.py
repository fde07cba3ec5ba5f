"""
Decides whether a completed payment settles its order.

The read of the order, the sum of completed payments and the write of the
``paid`` status happen in one transaction. The status write is conditional on
the status observed at read time, so two completions racing for the same
order cannot both apply it.
"""
import enum
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from payment_service.logger import get_logger
from payment_service.messaging import build_event, publish_event
from payment_service.models import (
    ORDER_TRANSITIONS,
    PAYABLE_ORDER_STATUSES,
    Order,
    OrderStatus,
    Payment,
    ensure_transition,
    utcnow,
)
from payment_service.repository import as_decimal, total_completed_payments

logger = get_logger("completion")


class CompletionOutcome(enum.Enum):
    PAID = "paid"
    OVERPAID = "overpaid"
    PARTIAL = "partial"
    SKIPPED = "skipped"
    NOT_FOUND = "not_found"
    ERROR = "error"


def record_customer_credit(customer_id: str, amount):
    # Overpayments are detected but customer credits are not created yet
    logger.warning(
        "overpayment_credit_not_implemented",
        customer_id=customer_id,
        overpayment_amount=str(amount),
    )


async def handle_payment_completion(session: AsyncSession, payment: Payment) -> CompletionOutcome:
    try:
        await session.refresh(payment)
        order_id = payment.order_id

        # The session may already hold this order with an older status
        result = await session.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            logger.error("order_not_found", order_id=order_id, payment_id=payment.id)
            await session.commit()
            return CompletionOutcome.NOT_FOUND

        if order.status not in PAYABLE_ORDER_STATUSES:
            logger.info(
                "order_not_payable",
                order_id=order_id,
                status=order.status.value,
            )
            await session.commit()
            return CompletionOutcome.SKIPPED

        total_paid = await total_completed_payments(session, order_id)
        order_total = as_decimal(order.total_amount)
        balance = order_total - total_paid
        logger.info(
            "payment_analysis",
            order_id=order_id,
            order_total=str(order_total),
            total_paid=str(total_paid),
            balance=str(balance),
            payment_amount=str(payment.amount),
        )

        if balance > 0:
            logger.info(
                "partial_payment",
                order_id=order_id,
                total_paid=str(total_paid),
                order_total=str(order_total),
                remaining=str(balance),
            )
            await session.commit()
            return CompletionOutcome.PARTIAL

        observed_status = order.status
        ensure_transition(observed_status, OrderStatus.PAID, ORDER_TRANSITIONS)
        now = utcnow()
        update_result = await session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == observed_status)
            .values(status=OrderStatus.PAID, payment_date=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if update_result.rowcount != 1:
            logger.info("order_status_changed_concurrently", order_id=order_id)
            await session.rollback()
            return CompletionOutcome.SKIPPED
        await session.commit()
        await session.refresh(order)

        logger.info(
            "order_marked_paid",
            order_id=order_id,
            total_paid=str(total_paid),
            order_total=str(order_total),
        )
        await publish_event(
            "order.paid",
            build_event("OrderPaid", order_id=order_id, total_paid=str(total_paid)),
        )

        if balance < 0:
            overpayment = -balance
            logger.info(
                "overpayment_detected",
                order_id=order_id,
                customer_id=order.customer_id,
                overpayment_amount=str(overpayment),
            )
            if order.customer_id:
                record_customer_credit(order.customer_id, overpayment)
            return CompletionOutcome.OVERPAID

        return CompletionOutcome.PAID

    except Exception as e:
        logger.error("payment_completion_failed", error=str(e), exc_info=True)
        await session.rollback()
        return CompletionOutcome.ERROR
