"""Request/response schemas plus the provider-facing contract types."""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from spacepay.common.errors import MalformedCallback
from spacepay.common.state_machine import PaymentStatus, PaymentType


SUCCESS_CODE = "0"
# STK query answer while the payer has not responded to the prompt yet.
STILL_PROCESSING_CODES = frozenset({"500.001.1001", "4999"})


class ChargeAck(BaseModel):
    """Immediate acknowledgement of a charge-initiation request."""

    correlation_id: str
    merchant_request_id: str | None = None
    response_code: str = SUCCESS_CODE
    response_description: str | None = None
    customer_message: str | None = None


class GatewayResult(BaseModel):
    """Outcome of one charge as reported by a callback or a status query."""

    correlation_id: str
    result_code: str
    result_description: str | None = None
    receipt_number: str | None = None
    transaction_date: str | None = None
    amount: Decimal | None = None
    phone_number: str | None = None

    @property
    def is_success(self) -> bool:
        return self.result_code == SUCCESS_CODE

    @property
    def is_still_processing(self) -> bool:
        return self.result_code in STILL_PROCESSING_CODES

    def target_status(self) -> PaymentStatus | None:
        """Status this result asks for, or None when it carries no decision."""

        if self.is_still_processing:
            return None
        if self.is_success:
            return PaymentStatus.COMPLETED
        return PaymentStatus.FAILED


class CallbackItem(BaseModel):
    name: str = Field(alias="Name")
    value: Any = Field(default=None, alias="Value")


class CallbackMetadataBlock(BaseModel):
    items: list[CallbackItem] = Field(default_factory=list, alias="Item")


class StkCallback(BaseModel):
    merchant_request_id: str | None = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(min_length=1, alias="CheckoutRequestID")
    result_code: int | str = Field(alias="ResultCode")
    result_desc: str | None = Field(default=None, alias="ResultDesc")
    metadata: CallbackMetadataBlock | None = Field(default=None, alias="CallbackMetadata")


class CallbackBody(BaseModel):
    stk_callback: StkCallback = Field(alias="stkCallback")


class CallbackEnvelope(BaseModel):
    """Provider result notification: `{"Body": {"stkCallback": {...}}}`."""

    body: CallbackBody = Field(alias="Body")

    @classmethod
    def parse(cls, raw: Any) -> "CallbackEnvelope":
        try:
            return cls.model_validate(raw)
        except pydantic.ValidationError as exc:
            raise MalformedCallback(f"unparseable callback payload: {exc.error_count()} error(s)") from exc

    def to_result(self) -> GatewayResult:
        callback = self.body.stk_callback
        values = {}
        if callback.metadata is not None:
            values = {item.name: item.value for item in callback.metadata.items}
        return GatewayResult(
            correlation_id=callback.checkout_request_id,
            result_code=str(callback.result_code),
            result_description=callback.result_desc,
            receipt_number=_optional_str(values.get("MpesaReceiptNumber")),
            transaction_date=_optional_str(values.get("TransactionDate")),
            amount=_optional_decimal(values.get("Amount")),
            phone_number=_optional_str(values.get("PhoneNumber")),
        )


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _optional_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class CallbackAck(BaseModel):
    """Body returned to the provider so it stops redelivering."""

    model_config = ConfigDict(populate_by_name=True)

    result_code: int = Field(default=0, serialization_alias="ResultCode")
    result_desc: str = Field(default="Accepted", serialization_alias="ResultDesc")


class PaymentInitiateRequest(BaseModel):
    """Payload accepted by `POST /payments`."""

    property_id: str | int
    amount: Decimal
    phone_number: str
    payment_type: PaymentType


class PaymentStatusResponse(BaseModel):
    """Client-facing projection polled while a charge is in flight."""

    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    status: str
    amount: Decimal
    payment_type: str
    gateway_receipt_number: str | None = None
    failure_reason: str | None = None
    updated_at: datetime | None = None


class TimelineEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_state: str | None
    to_state: str
    reason: str
    source: str
    created_at: datetime | None = None


class PaymentDetailResponse(PaymentStatusResponse):
    user_id: str | None = None
    property_id: str
    phone_number: str
    gateway_correlation_id: str | None = None
    result_code: str | None = None
    result_description: str | None = None
    transaction_date: str | None = None
    completed_at: datetime | None = None
    conflict_count: int = 0
    created_at: datetime | None = None
    timeline: list[TimelineEntry] = Field(default_factory=list)


class ConflictResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    conflict_id: str
    payment_id: str
    current_status: str
    reported_status: str
    source: str
    result_code: str | None = None
    detail: dict = Field(default_factory=dict)
    resolved: bool
    created_at: datetime | None = None


class PaymentSummaryResponse(BaseModel):
    total_revenue: Decimal
    counts: dict[str, int]
    open_conflicts: int
