import base64
import time
from datetime import datetime, timezone
from typing import Optional
import httpx
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from payment_service.config import Settings
from payment_service.errors import GatewayError
from payment_service.logger import get_logger
from payment_service.schemas import TransactionStatusResponse

logger = get_logger("gateway")

# Refresh the OAuth token this many seconds before it expires
TOKEN_EXPIRY_MARGIN = 60

gateway_retry = retry(
    retry=retry_if_exception_type(httpx.TransportError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


class MpesaGateway:
    """Client for the Daraja OAuth and transaction status APIs."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client or httpx.AsyncClient(base_url=settings.mpesa_base_url)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    async def aclose(self):
        await self._client.aclose()

    @gateway_retry
    async def _fetch_token(self) -> dict:
        credentials = f"{self.settings.mpesa_consumer_key}:{self.settings.mpesa_consumer_secret}"
        auth = base64.b64encode(credentials.encode()).decode()
        response = await self._client.get(
            "/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            headers={"Authorization": f"Basic {auth}"},
        )
        response.raise_for_status()
        return response.json()

    async def get_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        try:
            data = await self._fetch_token()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("token_fetch_failed", error=str(e))
            raise GatewayError(f"Could not obtain M-Pesa access token: {e}") from e

        token = data.get("access_token")
        if not token:
            raise GatewayError("M-Pesa token response did not include an access token")
        expires_in = int(data.get("expires_in", 3599))
        self._token = token
        self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
        return token

    def security_password(self, timestamp: str) -> str:
        raw = f"{self.settings.mpesa_shortcode}{self.settings.mpesa_passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    def status_query_payload(self, transaction_id: str, timestamp: str) -> dict:
        callback_url = self.settings.mpesa_callback_url
        return {
            "Initiator": self.settings.mpesa_shortcode,
            "SecurityCredential": self.security_password(timestamp),
            "CommandID": "TransactionStatusQuery",
            "TransactionID": transaction_id,
            "PartyA": self.settings.mpesa_shortcode,
            "IdentifierType": "4",
            "ResultURL": f"{callback_url}/api/mpesa/status-result",
            "QueueTimeOutURL": f"{callback_url}/api/mpesa/status-timeout",
            "Remarks": "Transaction status query",
            "Occasion": "Status check",
        }

    @gateway_retry
    async def _post_status_query(self, token: str, payload: dict) -> httpx.Response:
        response = await self._client.post(
            "/mpesa/transactionstatus/v1/query",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        response.raise_for_status()
        return response

    async def query_transaction_status(self, transaction_id: str) -> TransactionStatusResponse:
        token = await self.get_token()
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        payload = self.status_query_payload(transaction_id, timestamp)

        logger.info("transaction_status_query", transaction_id=transaction_id)
        try:
            response = await self._post_status_query(token, payload)
            return TransactionStatusResponse.model_validate(response.json())
        except httpx.HTTPStatusError as e:
            logger.error(
                "transaction_status_query_failed",
                transaction_id=transaction_id,
                status_code=e.response.status_code,
                body=e.response.text,
            )
            raise GatewayError(f"Transaction status query failed: {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            logger.error("transaction_status_query_failed", transaction_id=transaction_id, error=str(e))
            raise GatewayError(f"Transaction status query failed: {e}") from e
