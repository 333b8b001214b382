"""M-Pesa adapter against a mocked transport."""

import base64
import json
from datetime import datetime
from decimal import Decimal

import httpx
import pytest

from spacepay.common.config import CommonSettings
from spacepay.common.errors import GatewayUnavailable
from spacepay.services.payments.gateway import MpesaGateway, make_password, make_timestamp
from spacepay.services.payments.service import PaymentService


CONFIG = CommonSettings(
    mpesa_consumer_key="key",
    mpesa_consumer_secret="secret",
    mpesa_shortcode="174379",
    mpesa_passkey="passkey",
    mpesa_callback_url="https://example.test/payments/mpesa/callback",
    gateway_timeout_seconds=2.0,
)


class ProviderStub:
    """Records requests and answers from a per-path table."""

    def __init__(self, answers: dict, token_answer=(200, {"access_token": "tok-1", "expires_in": "3599"})):
        self.answers = answers
        self.token_answer = token_answer
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/v1/generate":
            answer = self.token_answer
        else:
            answer = self.answers[request.url.path]
        if isinstance(answer, Exception):
            raise answer
        status, body = answer
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


def _gateway(stub: ProviderStub) -> MpesaGateway:
    return MpesaGateway(CONFIG, transport=httpx.MockTransport(stub))


ACCEPTED = (
    200,
    {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": "ws_CO_191220191020363925",
        "ResponseCode": "0",
        "ResponseDescription": "Success. Request accepted for processing",
        "CustomerMessage": "Success. Request accepted for processing",
    },
)


def test_password_is_base64_of_shortcode_passkey_timestamp():
    password = make_password("174379", "passkey", "20261019101530")

    assert base64.b64decode(password).decode() == "174379passkey20261019101530"
    assert make_timestamp(datetime(2026, 10, 19, 10, 15, 30)) == "20261019101530"


@pytest.mark.asyncio
async def test_charge_request_returns_ack():
    stub = ProviderStub({"/mpesa/stkpush/v1/processrequest": ACCEPTED})

    ack = await _gateway(stub).initiate_charge(
        phone_number="254712345678", amount=Decimal("99.50"), reference="pay-1", description="Space Hub - RENT"
    )

    assert ack.correlation_id == "ws_CO_191220191020363925"
    assert ack.merchant_request_id == "29115-34620561-1"
    [push] = stub.calls("/mpesa/stkpush/v1/processrequest")
    body = json.loads(push.content)
    assert push.headers["Authorization"] == "Bearer tok-1"
    assert body["Amount"] == 100
    assert body["PartyA"] == body["PhoneNumber"] == "254712345678"
    assert body["AccountReference"] == "pay-1"
    assert body["CallBackURL"] == CONFIG.mpesa_callback_url
    assert base64.b64decode(body["Password"]).decode() == f"174379passkey{body['Timestamp']}"


@pytest.mark.asyncio
async def test_access_token_is_reused():
    stub = ProviderStub({"/mpesa/stkpush/v1/processrequest": ACCEPTED})
    gateway = _gateway(stub)

    for _ in range(3):
        await gateway.initiate_charge(
            phone_number="254712345678", amount=Decimal("10"), reference="pay-1", description="d"
        )

    assert len(stub.calls("/oauth/v1/generate")) == 1


@pytest.mark.asyncio
async def test_rejected_charge_raises():
    rejected = (
        400, {"requestId": "r-1", "errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid PhoneNumber"}
    )
    stub = ProviderStub({"/mpesa/stkpush/v1/processrequest": rejected})

    with pytest.raises(GatewayUnavailable, match="Invalid PhoneNumber"):
        await _gateway(stub).initiate_charge(
            phone_number="254712345678", amount=Decimal("10"), reference="pay-1", description="d"
        )


@pytest.mark.asyncio
async def test_transport_timeout_raises_gateway_unavailable():
    stub = ProviderStub({"/mpesa/stkpush/v1/processrequest": httpx.ReadTimeout("timed out")})

    with pytest.raises(GatewayUnavailable):
        await _gateway(stub).initiate_charge(
            phone_number="254712345678", amount=Decimal("10"), reference="pay-1", description="d"
        )


@pytest.mark.asyncio
async def test_non_json_answer_raises():
    stub = ProviderStub({"/mpesa/stkpush/v1/processrequest": (502, "<html>bad gateway</html>")})

    with pytest.raises(GatewayUnavailable):
        await _gateway(stub).initiate_charge(
            phone_number="254712345678", amount=Decimal("10"), reference="pay-1", description="d"
        )


@pytest.mark.asyncio
async def test_query_while_payer_has_not_answered():
    pending = (
        500, {"requestId": "r-2", "errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"}
    )
    stub = ProviderStub({"/mpesa/stkpushquery/v1/query": pending})

    result = await _gateway(stub).query_status("ws_CO_1")

    assert result.is_still_processing
    assert result.target_status() is None


@pytest.mark.asyncio
async def test_query_reports_final_result():
    answer = (
        200,
        {
            "ResponseCode": "0",
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_1",
            "ResultCode": "1032",
            "ResultDesc": "Request cancelled by user",
        },
    )
    stub = ProviderStub({"/mpesa/stkpushquery/v1/query": answer})

    result = await _gateway(stub).query_status("ws_CO_1")

    assert result.correlation_id == "ws_CO_1"
    assert result.result_code == "1032"
    assert result.target_status().value == "FAILED"
    [query] = stub.calls("/mpesa/stkpushquery/v1/query")
    assert json.loads(query.content)["CheckoutRequestID"] == "ws_CO_1"


@pytest.mark.asyncio
async def test_query_with_unknown_error_code_raises():
    answer = (404, {"errorCode": "404.001.04", "errorMessage": "Invalid Authentication Header"})
    stub = ProviderStub({"/mpesa/stkpushquery/v1/query": answer})

    with pytest.raises(GatewayUnavailable):
        await _gateway(stub).query_status("ws_CO_1")


def _service(session_factory, stub: ProviderStub) -> PaymentService:
    return PaymentService(session_factory, gateway=_gateway(stub), config=CONFIG)


@pytest.mark.asyncio
async def test_non_json_token_answer_fails_payment(session_factory):
    stub = ProviderStub({"/mpesa/stkpush/v1/processrequest": ACCEPTED}, token_answer=(200, "<html>maintenance</html>"))

    payment = await _service(session_factory, stub).initiate("p1", 5000, "0712345678", "BOOKING_FEE")

    assert payment.status == "FAILED"
    assert "token" in payment.failure_reason
    assert stub.calls("/mpesa/stkpush/v1/processrequest") == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "token_answer",
    [
        (200, ["tok-1"]),
        (200, {"access_token": "tok-1", "expires_in": "soon"}),
        (200, {"expires_in": 3599}),
    ],
)
async def test_unusable_token_answer_raises(token_answer):
    stub = ProviderStub({"/mpesa/stkpush/v1/processrequest": ACCEPTED}, token_answer=token_answer)

    with pytest.raises(GatewayUnavailable):
        await _gateway(stub).initiate_charge(
            phone_number="254712345678", amount=Decimal("10"), reference="pay-1", description="d"
        )


@pytest.mark.asyncio
async def test_non_string_checkout_request_id_fails_payment(session_factory):
    status, body = ACCEPTED
    stub = ProviderStub({"/mpesa/stkpush/v1/processrequest": (status, {**body, "CheckoutRequestID": 12345})})

    payment = await _service(session_factory, stub).initiate("p1", 5000, "0712345678", "BOOKING_FEE")

    assert payment.status == "FAILED"
    assert "CheckoutRequestID" in payment.failure_reason
    assert payment.gateway_correlation_id is None


@pytest.mark.asyncio
async def test_garbage_query_amount_leaves_payment_processing(session_factory, age_payment):
    answers = {"/mpesa/stkpush/v1/processrequest": ACCEPTED}
    service = _service(session_factory, ProviderStub(answers))
    payment = await service.initiate("p1", 5000, "0712345678", "BOOKING_FEE")
    age_payment(payment.payment_id, 120)
    answers["/mpesa/stkpushquery/v1/query"] = (
        200,
        {"CheckoutRequestID": "ws_CO_191220191020363925", "ResultCode": "0", "Amount": "not-a-number"},
    )

    polled = await service.status(payment.payment_id)

    assert polled.status == "PROCESSING"
    assert polled.state_version == payment.state_version


@pytest.mark.asyncio
async def test_query_answer_with_bad_amount_raises():
    answer = (200, {"CheckoutRequestID": "ws_CO_1", "ResultCode": "0", "Amount": "not-a-number"})
    stub = ProviderStub({"/mpesa/stkpushquery/v1/query": answer})

    with pytest.raises(GatewayUnavailable):
        await _gateway(stub).query_status("ws_CO_1")
