from unittest.mock import AsyncMock, patch
import httpx
import pytest
import pytest_asyncio
from conftest import stk_callback
from payment_service.database import get_session
from payment_service.errors import DuplicateReceipt, GatewayError
from payment_service.gateway import MpesaGateway
from payment_service.main import app, get_gateway
from payment_service.models import OrderStatus, PaymentStatus
from payment_service.schemas import TransactionStatusResponse


@pytest.fixture
def mock_gateway():
    return AsyncMock(spec=MpesaGateway)


@pytest_asyncio.fixture
async def client(session_factory, mock_gateway):
    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_gateway] = lambda: mock_gateway
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "path",
    ["/api/mpesa/validation", "/api/mpesa/status-result", "/api/mpesa/status-timeout"],
)
async def test_passthrough_endpoints_acknowledge(client, path):
    response = await client.post(path, json={"TransID": "NLJ7RT61SV"})

    assert response.status_code == 200
    assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}


@pytest.mark.asyncio
async def test_confirmation_endpoint_completes_payment(client, session, make_order, make_payment):
    order = await make_order(total="100.00")
    payment = await make_payment(order, transaction_id="ws_CO_300")

    response = await client.post("/api/mpesa/confirmation", json=stk_callback("ws_CO_300", receipt="NLJ7RT61SC"))

    assert response.status_code == 200
    assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    await session.refresh(payment)
    await session.refresh(order)
    assert payment.status == PaymentStatus.COMPLETED
    assert order.status == OrderStatus.PAID


@pytest.mark.asyncio
async def test_confirmation_endpoint_rejects_unparseable_body(client):
    response = await client.post(
        "/api/mpesa/confirmation",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == {"ResultCode": 1, "ResultDesc": "Invalid payload"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "path",
    ["/api/mpesa/validation", "/api/mpesa/status-result", "/api/mpesa/status-timeout"],
)
@pytest.mark.parametrize("body", [b"", b"{not json"])
async def test_passthrough_endpoints_reject_unparseable_body(client, path, body):
    response = await client.post(path, content=body, headers={"Content-Type": "application/json"})

    assert response.status_code == 200
    assert response.json() == {"ResultCode": 1, "ResultDesc": "Invalid payload"}


@pytest.mark.asyncio
async def test_payment_status_lookup(client, make_order, make_payment):
    order = await make_order(total="250.00")
    payment = await make_payment(order, amount="250.00", transaction_id="ws_CO_301")

    response = await client.get("/api/mpesa/status/ws_CO_301")

    assert response.status_code == 200
    data = response.json()
    assert data["payment_id"] == payment.id
    assert data["payment_status"] == "pending"
    assert data["payment_method"] == "Mpesa"
    assert data["order"]["id"] == order.id
    assert data["order"]["status"] == "invoiced"


@pytest.mark.asyncio
async def test_payment_status_lookup_unknown(client):
    response = await client.get("/api/mpesa/status/ws_CO_missing")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_manual_check_endpoint(client, mock_gateway, make_order, make_payment):
    order = await make_order(total="100.00")
    await make_payment(order, transaction_id="ws_CO_302")
    mock_gateway.query_transaction_status.return_value = TransactionStatusResponse(
        ResponseCode="0", ResultCode="0", TransactionID="NLJ7RT61SD"
    )

    response = await client.post("/api/mpesa/status/ws_CO_302/check")

    assert response.status_code == 200
    assert response.json() == {"success": True, "payment_status": "completed", "error": None}


@pytest.mark.asyncio
async def test_manual_check_endpoint_unknown_payment(client):
    response = await client.post("/api/mpesa/status/ws_CO_missing/check")

    assert response.status_code == 404
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_manual_check_endpoint_gateway_failure(client, mock_gateway, make_order, make_payment):
    order = await make_order()
    await make_payment(order, transaction_id="ws_CO_303")
    mock_gateway.query_transaction_status.side_effect = GatewayError("Transaction status query failed: 503")

    response = await client.post("/api/mpesa/status/ws_CO_303/check")

    assert response.status_code == 502
    assert response.json() == {
        "success": False,
        "payment_status": None,
        "error": "Transaction status query failed: 503",
    }


@pytest.mark.asyncio
async def test_manual_check_endpoint_duplicate_receipt(client):
    with patch(
        "payment_service.main.manual_status_check",
        new=AsyncMock(side_effect=DuplicateReceipt("NLJ7RT61SE")),
    ):
        response = await client.post("/api/mpesa/status/ws_CO_304/check")

    assert response.status_code == 409
    body = response.json()
    assert body["success"] is False
    assert "NLJ7RT61SE" in body["error"]
