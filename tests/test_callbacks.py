"""Callback handling: at-least-once, duplicated and out-of-order deliveries."""

import pytest

from conftest import callback_payload
from spacepay.common.errors import MalformedCallback


@pytest.fixture
def processing(service):
    """One BOOKING_FEE payment waiting on its callback (correlation ws_CO_0001)."""

    async def _make():
        return await service.initiate("p-42", 5000, "0712345678", "BOOKING_FEE")

    return _make


@pytest.mark.asyncio
async def test_success_callback_completes_payment(service, processing):
    payment = await processing()

    result = service.handle_callback(callback_payload("ws_CO_0001"))

    assert result.outcome == "applied"
    stored = service.store.get(payment.payment_id)
    assert stored.status == "COMPLETED"
    assert stored.gateway_receipt_number == "QAX123"
    assert stored.paid_amount == 5000


@pytest.mark.asyncio
async def test_redelivered_success_is_a_no_op(service, processing):
    payment = await processing()
    service.handle_callback(callback_payload("ws_CO_0001"))
    version = service.store.get(payment.payment_id).state_version

    again = service.handle_callback(callback_payload("ws_CO_0001"))

    assert again.outcome == "duplicate"
    assert again.acknowledged
    stored = service.store.get(payment.payment_id)
    assert stored.status == "COMPLETED"
    assert stored.state_version == version
    assert stored.conflict_count == 0
    assert [t.to_state for t in service.store.timeline(payment.payment_id)].count("COMPLETED") == 1


@pytest.mark.asyncio
async def test_user_cancelled_prompt_fails_payment(service, processing):
    payment = await processing()

    result = service.handle_callback(callback_payload("ws_CO_0001", result_code=1032))

    assert result.outcome == "applied"
    stored = service.store.get(payment.payment_id)
    assert stored.status == "FAILED"
    assert stored.failure_reason == "Request cancelled by user"
    assert stored.gateway_receipt_number is None


@pytest.mark.asyncio
async def test_late_failure_after_completion_is_recorded_only(service, processing):
    payment = await processing()
    service.handle_callback(callback_payload("ws_CO_0001"))

    result = service.handle_callback(callback_payload("ws_CO_0001", result_code=1))

    assert result.outcome == "conflict"
    assert result.acknowledged
    stored = service.store.get(payment.payment_id)
    assert stored.status == "COMPLETED"
    assert stored.gateway_receipt_number == "QAX123"
    assert stored.conflict_count == 1


@pytest.mark.asyncio
async def test_late_success_after_failure_needs_attention(service, processing):
    payment = await processing()
    service.handle_callback(callback_payload("ws_CO_0001", result_code=1032))

    result = service.handle_callback(callback_payload("ws_CO_0001", receipt="QBR777"))

    assert result.outcome == "conflict"
    assert service.store.get(payment.payment_id).status == "FAILED"
    [conflict] = service.store.list_conflicts()
    assert conflict.detail["requires_attention"] is True
    assert conflict.detail["receipt_number"] == "QBR777"


def test_unknown_correlation_id_is_acknowledged(service):
    result = service.handle_callback(callback_payload("ws_CO_unknown"))

    assert result.outcome == "unknown_correlation_id"
    assert result.acknowledged
    assert result.payment is None


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"Body": {}},
        {"Body": {"stkCallback": {"ResultCode": 0}}},
        {"Body": {"stkCallback": {"CheckoutRequestID": "", "ResultCode": 0}}},
        ["not", "an", "object"],
    ],
)
def test_unparseable_payload_raises(service, payload):
    with pytest.raises(MalformedCallback):
        service.handle_callback(payload)


@pytest.mark.asyncio
async def test_success_without_receipt_keeps_processing(service, processing):
    payment = await processing()

    result = service.handle_callback(callback_payload("ws_CO_0001", receipt=None))

    assert result.outcome == "malformed_completion"
    assert result.acknowledged
    assert service.store.get(payment.payment_id).status == "PROCESSING"

    # A corrected redelivery still settles it.
    assert service.handle_callback(callback_payload("ws_CO_0001")).outcome == "applied"
    assert service.store.get(payment.payment_id).status == "COMPLETED"


@pytest.mark.asyncio
async def test_callback_for_cancelled_payment_is_a_conflict(service, processing):
    payment = await processing()
    service.cancel(payment.payment_id)

    result = service.handle_callback(callback_payload("ws_CO_0001"))

    assert result.outcome == "conflict"
    assert service.store.get(payment.payment_id).status == "CANCELLED"
