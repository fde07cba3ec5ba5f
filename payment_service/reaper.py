import asyncio
from datetime import timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from payment_service.config import Settings
from payment_service.database import configure_database
from payment_service.logger import configure_logging, get_logger
from payment_service.messaging import build_event, publish_event
from payment_service.models import PaymentStatus, utcnow
from payment_service.repository import find_pending_mpesa_payments

logger = get_logger("reaper")

CLEANUP_REASON = "Expired"


async def cleanup_old_pending_payments(session: AsyncSession, settings: Settings) -> int:
    """Fail M-Pesa payments left pending past the stale threshold. Returns how many were reaped."""
    cutoff = utcnow() - timedelta(hours=settings.stale_payment_hours)
    try:
        stale_payments = await find_pending_mpesa_payments(session, cutoff)
    except Exception as e:
        logger.error("stale_payment_lookup_failed", error=str(e), exc_info=True)
        return 0

    if not stale_payments:
        logger.info("no_stale_payments")
        return 0

    cleaned_at = utcnow().isoformat()
    for payment in stale_payments:
        payment.transition_to(PaymentStatus.FAILED)
        payment.merge_metadata(cleanup_reason=CLEANUP_REASON, cleanup_at=cleaned_at)

    try:
        await session.commit()
    except Exception as e:
        logger.error("stale_payment_cleanup_failed", error=str(e), exc_info=True)
        await session.rollback()
        return 0

    for payment in stale_payments:
        await publish_event(
            "payment.expired",
            build_event("PaymentExpired", payment_id=payment.id, order_id=payment.order_id),
        )

    logger.info("stale_payments_cleaned", count=len(stale_payments))
    return len(stale_payments)


async def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    session_factory = configure_database(settings)
    async with session_factory() as session:
        await cleanup_old_pending_payments(session, settings)


if __name__ == "__main__":
    asyncio.run(main())
