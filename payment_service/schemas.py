from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional
from pydantic import BaseModel, Field, field_validator


def _as_code(v: Any) -> Any:
    # Daraja sends result codes as numbers in callbacks and as strings in query responses
    if v is None:
        return v
    return str(v)


class CallbackItem(BaseModel):
    Name: str
    Value: Any = None


class CallbackMetadataBundle(BaseModel):
    Item: List[CallbackItem] = Field(default_factory=list)


class StkCallback(BaseModel):
    MerchantRequestID: Optional[str] = None
    CheckoutRequestID: str
    ResultCode: str
    ResultDesc: str = ""
    CallbackMetadata: Optional[CallbackMetadataBundle] = None

    @field_validator("ResultCode", mode="before")
    @classmethod
    def normalize_code(cls, v: Any) -> Any:
        return _as_code(v)

    def metadata_value(self, name: str) -> Any:
        if not self.CallbackMetadata:
            return None
        for item in self.CallbackMetadata.Item:
            if item.Name == name:
                return item.Value
        return None

    @property
    def receipt_number(self) -> Optional[str]:
        value = self.metadata_value("MpesaReceiptNumber")
        return str(value) if value is not None else None

    @property
    def succeeded(self) -> bool:
        return self.ResultCode == "0"


class StkCallbackBody(BaseModel):
    stkCallback: StkCallback


class StkCallbackEnvelope(BaseModel):
    Body: StkCallbackBody


class GatewayAck(BaseModel):
    ResultCode: int = 0
    ResultDesc: str = "Accepted"


class TransactionStatusResponse(BaseModel):
    ResponseCode: str
    ResponseDescription: str = ""
    OriginatorConversationID: Optional[str] = None
    ConversationID: Optional[str] = None
    TransactionID: Optional[str] = None
    ResultCode: Optional[str] = None
    ResultDesc: Optional[str] = None

    @field_validator("ResponseCode", "ResultCode", mode="before")
    @classmethod
    def normalize_codes(cls, v: Any) -> Any:
        return _as_code(v)

    @property
    def query_succeeded(self) -> bool:
        return self.ResponseCode == "0"

    @property
    def transaction_succeeded(self) -> bool:
        return self.query_succeeded and self.ResultCode == "0"


class OrderSummary(BaseModel):
    id: str
    customer_id: Optional[str] = None
    status: str
    total_amount: Decimal
    payment_status_cache: str


class PaymentStatusRead(BaseModel):
    payment_id: str
    order_id: str
    amount: Decimal
    payment_status: str
    payment_method: str
    transaction_id: Optional[str] = None
    payment_date: Optional[datetime] = None
    metadata: dict
    order: Optional[OrderSummary] = None


class ManualCheckResult(BaseModel):
    success: bool
    payment_status: Optional[str] = None
    error: Optional[str] = None
