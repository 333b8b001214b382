"""Charge initiation: persist first, then ask the provider to prompt the payer."""

from decimal import Decimal, InvalidOperation

from spacepay.common.config import settings
from spacepay.common.errors import GatewayUnavailable, ValidationError
from spacepay.common.logging import logger, payment_id_ctx
from spacepay.common.metrics import payment_requests_total
from spacepay.common.phone import normalize_phone_number
from spacepay.common.state_machine import PaymentStatus, PaymentType
from spacepay.services.payments.models import Payment
from spacepay.services.payments.store import PaymentStateStore


MAX_AMOUNT = Decimal("250000")


def validate_amount(amount) -> Decimal:
    """Coerce to a positive Decimal with at most two decimal places."""

    if isinstance(amount, bool):
        raise ValidationError(f"Invalid amount: {amount!r}")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be positive")
    if value > MAX_AMOUNT:
        raise ValidationError(f"Amount exceeds the per-transaction limit of {MAX_AMOUNT}")
    if value != value.quantize(Decimal("0.01")):
        raise ValidationError("Amount supports at most two decimal places")
    return value.quantize(Decimal("0.01"))


def validate_payment_type(payment_type) -> PaymentType:
    try:
        return PaymentType(payment_type)
    except ValueError as exc:
        raise ValidationError(f"Unknown payment type: {payment_type!r}") from exc


class PaymentRequestInitiator:
    """Creates payment records and triggers the provider's charge request."""

    def __init__(self, store: PaymentStateStore, gateway, config=None) -> None:
        self.store = store
        self.gateway = gateway
        self.config = config or settings

    async def initiate(
        self,
        property_id,
        amount,
        raw_phone: str,
        payment_type,
        user_id: str | None = None,
    ) -> Payment:
        """Validate, persist PENDING, call the provider, record the outcome.

        Validation errors propagate before any row exists. Provider failures
        are absorbed: the payment comes back FAILED with the reason stored.
        """

        value = validate_amount(amount)
        kind = validate_payment_type(payment_type)
        phone = normalize_phone_number(raw_phone, country_code=self.config.phone_country_code)
        if property_id is None or str(property_id).strip() == "":
            raise ValidationError("property_id is required")

        payment_requests_total.labels(service=self.store.service_name).inc()
        payment = self.store.create(
            property_id=str(property_id),
            amount=value,
            payment_type=kind.value,
            phone_number=phone,
            user_id=user_id,
        )
        token = payment_id_ctx.set(payment.payment_id)
        try:
            try:
                ack = await self.gateway.initiate_charge(
                    phone_number=phone,
                    amount=value,
                    reference=self.reference_for(payment),
                    description=f"Space Hub - {kind.value}",
                )
            except GatewayUnavailable as exc:
                logger.warning("charge initiation failed payment_id=%s error=%s", payment.payment_id, exc)
                return self.store.transition(
                    payment.payment_id,
                    PaymentStatus.FAILED,
                    reason="gateway_unavailable",
                    source="initiator",
                    fields={"failure_reason": str(exc)[:500]},
                ).payment

            logger.info(
                "charge acknowledged payment_id=%s correlation_id=%s", payment.payment_id, ack.correlation_id
            )
            outcome = self.store.transition(
                payment.payment_id,
                PaymentStatus.PROCESSING,
                reason="gateway_acknowledged",
                source="initiator",
                fields={
                    "gateway_correlation_id": ack.correlation_id,
                    "merchant_request_id": ack.merchant_request_id,
                },
            )
            if outcome.applied:
                return outcome.payment
            # Cancelled while the prompt was in flight; keep the id so a late result still matches.
            return self.store.attach_correlation(payment.payment_id, ack.correlation_id, ack.merchant_request_id)
        finally:
            payment_id_ctx.reset(token)

    @staticmethod
    def reference_for(payment: Payment) -> str:
        """Account reference sent with the charge; the payment id, so provider-side dedupe is per payment."""

        return payment.payment_id
