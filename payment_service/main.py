import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from payment_service.config import Settings
from payment_service.database import configure_database, get_session, init_db
from payment_service.errors import DuplicateReceipt, GatewayError, PaymentNotFound
from payment_service.gateway import MpesaGateway
from payment_service.logger import configure_logging, get_logger
from payment_service.messaging import close_rabbitmq, setup_rabbitmq
from payment_service.models import Order
from payment_service.poller import manual_status_check
from payment_service.repository import get_payment_by_transaction_id
from payment_service.schemas import ManualCheckResult, OrderSummary, PaymentStatusRead
from payment_service.webhooks import ack, process_confirmation

logger = get_logger("api")

app = FastAPI(title="Payment Service")


@app.on_event("startup")
async def startup_event():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    configure_database(settings)
    await init_db()
    await setup_rabbitmq(settings.rabbitmq_url)
    app.state.gateway = MpesaGateway(settings)


@app.on_event("shutdown")
async def shutdown_event():
    await app.state.gateway.aclose()
    await close_rabbitmq()


def get_gateway(request: Request) -> MpesaGateway:
    return request.app.state.gateway


@app.get("/health")
async def health():
    return {"status": "ok"}


async def read_payload(request: Request, event: str):
    try:
        return await request.json()
    except ValueError as e:
        logger.error(event, error=str(e))
        return None


@app.post("/api/mpesa/validation")
async def mpesa_validation(request: Request):
    payload = await read_payload(request, "validation_body_unreadable")
    if payload is None:
        return ack(1, "Invalid payload")
    logger.info("validation_received", payload=payload)
    return ack()


@app.post("/api/mpesa/confirmation")
async def mpesa_confirmation(request: Request, db: AsyncSession = Depends(get_session)):
    payload = await read_payload(request, "confirmation_body_unreadable")
    if payload is None:
        return ack(1, "Invalid payload")
    return await process_confirmation(payload, db)


@app.post("/api/mpesa/status-result")
async def mpesa_status_result(request: Request):
    payload = await read_payload(request, "status_result_body_unreadable")
    if payload is None:
        return ack(1, "Invalid payload")
    logger.info("status_result_received", payload=payload)
    return ack()


@app.post("/api/mpesa/status-timeout")
async def mpesa_status_timeout(request: Request):
    payload = await read_payload(request, "status_timeout_body_unreadable")
    if payload is None:
        return ack(1, "Invalid payload")
    logger.info("status_timeout_received", payload=payload)
    return ack()


@app.get("/api/mpesa/status/{checkout_request_id}", response_model=PaymentStatusRead)
async def get_payment_status(checkout_request_id: str, db: AsyncSession = Depends(get_session)):
    payment = await get_payment_by_transaction_id(db, checkout_request_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")

    order = await db.get(Order, payment.order_id)
    return PaymentStatusRead(
        payment_id=payment.id,
        order_id=payment.order_id,
        amount=payment.amount,
        payment_status=payment.status.value,
        payment_method=payment.payment_method.value,
        transaction_id=payment.transaction_id,
        payment_date=payment.payment_date,
        metadata=payment.payment_metadata or {},
        order=OrderSummary(
            id=order.id,
            customer_id=order.customer_id,
            status=order.status.value,
            total_amount=order.total_amount,
            payment_status_cache=order.payment_status_cache.value,
        ) if order else None,
    )


@app.post("/api/mpesa/status/{checkout_request_id}/check", response_model=ManualCheckResult)
async def trigger_status_check(
    checkout_request_id: str,
    db: AsyncSession = Depends(get_session),
    gateway: MpesaGateway = Depends(get_gateway),
):
    try:
        return await manual_status_check(checkout_request_id, db, gateway)
    except PaymentNotFound as e:
        logger.warning("manual_status_check_failed", error=str(e))
        return JSONResponse(status_code=404, content=ManualCheckResult(success=False, error=str(e)).model_dump())
    except GatewayError as e:
        logger.error("manual_status_check_failed", error=str(e))
        return JSONResponse(status_code=502, content=ManualCheckResult(success=False, error=str(e)).model_dump())
    except DuplicateReceipt as e:
        logger.warning("manual_status_check_failed", error=str(e))
        return JSONResponse(status_code=409, content=ManualCheckResult(success=False, error=str(e)).model_dump())


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
