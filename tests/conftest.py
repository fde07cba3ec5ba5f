from datetime import timedelta
from decimal import Decimal
from uuid import uuid4
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from payment_service.config import Settings
from payment_service.models import (
    Base,
    Order,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    utcnow,
)


@pytest.fixture
def settings():
    return Settings(
        mpesa_consumer_key="test-key",
        mpesa_consumer_secret="test-secret",
        mpesa_base_url="https://mpesa.test",
        mpesa_shortcode="174379",
        mpesa_passkey="test-passkey",
        mpesa_callback_url="https://callbacks.test",
        database_url="sqlite+aiosqlite://",
        poll_delay_seconds=0,
    )


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_order(session):
    async def _make_order(total="100.00", status=OrderStatus.INVOICED, customer_id="cust-1", **kwargs):
        order = Order(
            id=str(uuid4()),
            customer_id=customer_id,
            status=status,
            total_amount=Decimal(total),
            **kwargs,
        )
        session.add(order)
        await session.commit()
        return order

    return _make_order


@pytest.fixture
def make_payment(session):
    async def _make_payment(
        order,
        amount="100.00",
        status=PaymentStatus.PENDING,
        method=PaymentMethod.MPESA,
        transaction_id=None,
        age=timedelta(minutes=0),
        metadata=None,
        **kwargs,
    ):
        created_at = utcnow() - age
        payment = Payment(
            id=str(uuid4()),
            order_id=order.id,
            amount=Decimal(amount),
            payment_method=method,
            status=status,
            transaction_id=transaction_id or f"ws_CO_{uuid4().hex[:12]}",
            payment_metadata=metadata or {},
            created_at=created_at,
            updated_at=created_at,
            **kwargs,
        )
        session.add(payment)
        await session.commit()
        return payment

    return _make_payment


def stk_callback(checkout_request_id, result_code=0, result_desc="The service request is processed successfully.", receipt=None, amount=100, phone=254708374149):
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if receipt is not None:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20250716102115},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": callback}}
