"""
Status poller: recovers M-Pesa payments whose confirmation webhook never
arrived by asking the gateway directly. One invocation is one pass; run it
from an external schedule.
"""
import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import List, Optional
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from payment_service.config import Settings
from payment_service.errors import DuplicateReceipt, PaymentNotFound
from payment_service.gateway import MpesaGateway
from payment_service.logger import configure_logging, get_logger
from payment_service.models import Payment, PaymentStatus, utcnow
from payment_service.database import configure_database
from payment_service.repository import as_aware, find_pending_mpesa_payments, get_payment_by_transaction_id
from payment_service.schemas import ManualCheckResult, TransactionStatusResponse
from payment_service.webhooks import apply_settled_payment

logger = get_logger("poller")

# Rows read per pass, as a multiple of the batch size, before the cool-down filter
CANDIDATE_SCAN_FACTOR = 10


@dataclass
class PollingResults:
    checked: int = 0
    completed: int = 0
    failed: int = 0
    errors: int = 0


def _parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return as_aware(datetime.fromisoformat(str(value)))
    except ValueError:
        return None


def due_for_check(payment: Payment, cooldown_cutoff: datetime) -> bool:
    last_check = _parse_timestamp((payment.payment_metadata or {}).get("last_status_check"))
    return last_check is None or last_check < cooldown_cutoff


async def find_payments_to_check(session: AsyncSession, settings: Settings) -> List[Payment]:
    now = utcnow()
    grace_cutoff = now - timedelta(minutes=settings.poll_grace_minutes)
    cooldown_cutoff = now - timedelta(minutes=settings.poll_cooldown_minutes)

    candidates = await find_pending_mpesa_payments(
        session, grace_cutoff, limit=settings.poll_batch_size * CANDIDATE_SCAN_FACTOR
    )
    eligible = [p for p in candidates if due_for_check(p, cooldown_cutoff)]
    return eligible[: settings.poll_batch_size]


async def update_payment_from_status(
    session: AsyncSession, payment: Payment, status_response: TransactionStatusResponse
) -> PaymentStatus:
    """Persist a status query result and run completion when it settles the payment."""
    payment.merge_metadata(
        last_status_check=utcnow().isoformat(),
        status_query_response=status_response.model_dump(exclude_none=True),
    )

    if status_response.query_succeeded:
        if status_response.transaction_succeeded:
            payment.transition_to(PaymentStatus.COMPLETED)
            payment.payment_date = utcnow()
            payment.merge_metadata(transaction_confirmed_via_polling=True)
            if status_response.TransactionID:
                payment.transaction_id = status_response.TransactionID
                payment.mpesa_receipt_number = status_response.TransactionID
                payment.merge_metadata(mpesa_receipt_number=status_response.TransactionID)
        else:
            payment.transition_to(PaymentStatus.FAILED)
            payment.merge_metadata(failure_reason=status_response.ResultDesc or "Transaction failed")
    else:
        # Too early, or the gateway does not know the transaction yet
        logger.info(
            "status_query_unsuccessful",
            payment_id=payment.id,
            response_description=status_response.ResponseDescription,
        )

    await session.commit()
    status = payment.status

    if status == PaymentStatus.COMPLETED:
        logger.info("payment_completed_via_polling", payment_id=payment.id)
    elif status == PaymentStatus.FAILED:
        logger.info("payment_failed_via_polling", payment_id=payment.id)

    if status != PaymentStatus.PENDING:
        await apply_settled_payment(session, payment, status)
    return status


async def record_check_error(session: AsyncSession, payment_id: str, metadata: dict, error: Exception):
    try:
        await session.rollback()
        await session.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values(
                payment_metadata={
                    **metadata,
                    "last_status_check": utcnow().isoformat(),
                    "last_status_error": str(error),
                }
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except Exception as e:
        logger.error("status_error_not_recorded", payment_id=payment_id, error=str(e))
        await session.rollback()


async def run_transaction_status_polling(
    session: AsyncSession, gateway: MpesaGateway, settings: Settings
) -> PollingResults:
    logger.info("status_polling_started")
    results = PollingResults()

    try:
        pending = await find_payments_to_check(session, settings)
    except Exception as e:
        logger.error("status_polling_failed", error=str(e), exc_info=True)
        return results

    logger.info("pending_payments_found", count=len(pending))
    payment_ids = [p.id for p in pending]

    for index, payment_id in enumerate(payment_ids):
        if index and settings.poll_delay_seconds:
            await asyncio.sleep(settings.poll_delay_seconds)

        metadata = {}
        try:
            # Reload: an earlier rollback may have expired the instance
            payment = await session.get(Payment, payment_id)
            if payment is None or payment.status != PaymentStatus.PENDING:
                continue
            metadata = dict(payment.payment_metadata or {})

            status_response = await gateway.query_transaction_status(payment.transaction_id)
            status = await update_payment_from_status(session, payment, status_response)

            results.checked += 1
            if status == PaymentStatus.COMPLETED:
                results.completed += 1
            elif status == PaymentStatus.FAILED:
                results.failed += 1
        except Exception as e:
            logger.error("payment_status_check_failed", payment_id=payment_id, error=str(e))
            results.errors += 1
            await record_check_error(session, payment_id, metadata, e)

    logger.info("status_polling_completed", **asdict(results))
    if results.completed or results.failed:
        logger.info("status_polling_recovered", recovered=results.completed + results.failed)
    return results


async def manual_status_check(
    checkout_request_id: str, session: AsyncSession, gateway: MpesaGateway
) -> ManualCheckResult:
    """
    Run one status query and completion cycle for a single payment.

    Raises PaymentNotFound when no payment carries the identifier,
    GatewayError when the gateway cannot be queried and DuplicateReceipt
    when the gateway reports a receipt already held by another payment.
    """
    logger.info("manual_status_check", checkout_request_id=checkout_request_id)
    payment = await get_payment_by_transaction_id(session, checkout_request_id)
    if payment is None:
        raise PaymentNotFound(checkout_request_id)

    status_response = await gateway.query_transaction_status(checkout_request_id)
    if payment.status == PaymentStatus.PENDING:
        try:
            await update_payment_from_status(session, payment, status_response)
        except IntegrityError as e:
            await session.rollback()
            logger.warning(
                "duplicate_receipt_from_status_query",
                checkout_request_id=checkout_request_id,
                receipt_number=status_response.TransactionID,
                error=str(e.orig),
            )
            raise DuplicateReceipt(status_response.TransactionID) from e
    else:
        logger.info("payment_already_settled", payment_id=payment.id, status=payment.status.value)

    # Report what the store holds, not the in-memory instance
    await session.refresh(payment)
    logger.info(
        "manual_status_check_completed",
        checkout_request_id=checkout_request_id,
        payment_status=payment.status.value,
    )
    return ManualCheckResult(success=True, payment_status=payment.status.value)


async def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    session_factory = configure_database(settings)
    gateway = MpesaGateway(settings)
    try:
        async with session_factory() as session:
            await run_transaction_status_polling(session, gateway, settings)
    finally:
        await gateway.aclose()


if __name__ == "__main__":
    asyncio.run(main())
