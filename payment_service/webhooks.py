from typing import Any
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from payment_service.completion import handle_payment_completion
from payment_service.errors import InvalidTransition
from payment_service.logger import get_logger
from payment_service.messaging import build_event, publish_event
from payment_service.models import PaymentStatus, utcnow
from payment_service.repository import (
    get_payment_by_transaction_id,
    receipt_already_recorded,
    refresh_order_payment_status_cache,
)
from payment_service.schemas import GatewayAck, StkCallbackEnvelope

logger = get_logger("webhooks")


def ack(result_code: int = 0, result_desc: str = "Accepted") -> dict:
    return GatewayAck(ResultCode=result_code, ResultDesc=result_desc).model_dump()


async def process_confirmation(payload: Any, session: AsyncSession) -> dict:
    """
    Apply one STK callback from the gateway.

    Every outcome that the gateway should not retry acknowledges with
    ResultCode 0, including unknown transactions, duplicates and store errors.
    Only a payload that cannot be parsed gets a non-zero code.
    """
    try:
        callback = StkCallbackEnvelope.model_validate(payload).Body.stkCallback
    except ValidationError as e:
        logger.error("invalid_confirmation_payload", error=str(e))
        return ack(1, "Invalid payload")

    checkout_request_id = callback.CheckoutRequestID
    logger.info(
        "confirmation_received",
        checkout_request_id=checkout_request_id,
        result_code=callback.ResultCode,
        result_desc=callback.ResultDesc,
    )

    try:
        payment = await get_payment_by_transaction_id(session, checkout_request_id)
        if payment is None:
            logger.warning("payment_not_found", checkout_request_id=checkout_request_id)
            return ack(0, "Accepted - Payment not found")

        receipt_number = callback.receipt_number
        if receipt_number and await receipt_already_recorded(session, receipt_number):
            logger.info("duplicate_confirmation", receipt_number=receipt_number)
            return ack(0, "Already processed")

        now = utcnow().isoformat()
        if callback.succeeded:
            payment.transition_to(PaymentStatus.COMPLETED)
            payment.payment_date = utcnow()
            if receipt_number:
                payment.transaction_id = receipt_number
                payment.mpesa_receipt_number = receipt_number
            payment.merge_metadata(
                mpesa_receipt_number=receipt_number,
                mpesa_transaction_date=callback.metadata_value("TransactionDate"),
                mpesa_phone_number=callback.metadata_value("PhoneNumber"),
                webhook_processed_at=now,
                webhook_result_code=callback.ResultCode,
                webhook_result_desc=callback.ResultDesc,
            )
        else:
            payment.transition_to(PaymentStatus.FAILED)
            payment.merge_metadata(
                webhook_processed_at=now,
                webhook_result_code=callback.ResultCode,
                webhook_result_desc=callback.ResultDesc,
                failure_reason=callback.ResultDesc,
            )

        await session.commit()
        status = payment.status
        logger.info(
            "payment_status_updated",
            payment_id=payment.id,
            order_id=payment.order_id,
            status=status.value,
            transaction_id=payment.transaction_id,
        )
    except InvalidTransition as e:
        logger.warning("confirmation_ignored", checkout_request_id=checkout_request_id, error=str(e))
        await session.rollback()
        return ack(0, "Already processed")
    except IntegrityError:
        # Another delivery recorded the same receipt between our check and commit
        logger.info("duplicate_confirmation", checkout_request_id=checkout_request_id)
        await session.rollback()
        return ack(0, "Already processed")
    except Exception as e:
        logger.error("confirmation_processing_failed", checkout_request_id=checkout_request_id, error=str(e), exc_info=True)
        await session.rollback()
        return ack(0, "Accepted")

    await apply_settled_payment(session, payment, status)
    return ack(0, "Accepted")


async def apply_settled_payment(session: AsyncSession, payment, status: PaymentStatus):
    """Follow-up work after a payment reaches a terminal status; never raises."""
    order_id = payment.order_id
    payment_id = payment.id
    try:
        await refresh_order_payment_status_cache(session, order_id)
    except Exception as e:
        logger.error("order_payment_cache_update_failed", order_id=order_id, error=str(e))
        await session.rollback()

    if status == PaymentStatus.COMPLETED:
        await publish_event(
            "payment.completed",
            build_event("PaymentCompleted", payment_id=payment_id, order_id=order_id),
        )
        await handle_payment_completion(session, payment)
    elif status == PaymentStatus.FAILED:
        await publish_event(
            "payment.failed",
            build_event("PaymentFailed", payment_id=payment_id, order_id=order_id),
        )
