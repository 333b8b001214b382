"""Inbound provider result notifications.

Deliveries are at-least-once, possibly duplicated and possibly out of order.
Handling is idempotent per correlation id: whatever the delivery attempt, the
outcome is fed through `PaymentStateStore.apply_outcome`.
"""

from dataclasses import dataclass

from spacepay.common.errors import MalformedCallback, MalformedCompletion, UnknownCorrelationId
from spacepay.common.logging import correlation_id_ctx, logger, payment_id_ctx
from spacepay.common.metrics import callbacks_received_total
from spacepay.services.payments.models import Payment
from spacepay.services.payments.schemas import CallbackEnvelope
from spacepay.services.payments.store import PaymentStateStore


@dataclass
class CallbackResult:
    """What happened to one delivery. Every parsed delivery is acknowledged."""

    outcome: str
    payment: Payment | None = None
    acknowledged: bool = True


class GatewayCallbackReceiver:
    """Applies provider callbacks to payment state."""

    def __init__(self, store: PaymentStateStore) -> None:
        self.store = store

    def _count(self, outcome: str) -> None:
        callbacks_received_total.labels(service=self.store.service_name, outcome=outcome).inc()

    def handle_callback(self, raw_payload) -> CallbackResult:
        """Parse and apply one delivery.

        Raises `MalformedCallback` only when the payload is not structurally
        parseable; everything else is acknowledged.
        """

        try:
            envelope = CallbackEnvelope.parse(raw_payload)
        except MalformedCallback:
            self._count("malformed")
            raise
        result = envelope.to_result()

        corr_token = correlation_id_ctx.set(result.correlation_id)
        try:
            payment = self.store.find_by_correlation_id(result.correlation_id)
            if payment is None:
                # Stale or foreign deliveries are expected; acknowledge and move on.
                err = UnknownCorrelationId(f"no payment for correlation id {result.correlation_id}")
                logger.warning("callback ignored: %s result_code=%s", err, result.result_code)
                self._count("unknown_correlation_id")
                return CallbackResult(outcome="unknown_correlation_id")

            pay_token = payment_id_ctx.set(payment.payment_id)
            try:
                return self._apply(payment, result)
            finally:
                payment_id_ctx.reset(pay_token)
        finally:
            correlation_id_ctx.reset(corr_token)

    def _apply(self, payment: Payment, result) -> CallbackResult:
        if result.target_status() is None:
            logger.info("callback without decision payment_id=%s code=%s", payment.payment_id, result.result_code)
            self._count("ignored")
            return CallbackResult(outcome="ignored", payment=payment)

        try:
            transition = self.store.apply_outcome(payment.payment_id, result, source="callback")
        except MalformedCompletion as exc:
            # Left PROCESSING; the reconciler or a corrected redelivery can still settle it.
            logger.error("callback rejected: %s", exc)
            self._count("malformed_completion")
            return CallbackResult(outcome="malformed_completion", payment=payment)

        if transition.applied:
            outcome = "applied"
        elif transition.conflict:
            outcome = "conflict"
        elif transition.duplicate:
            outcome = "duplicate"
        else:
            outcome = "ignored"
        self._count(outcome)
        logger.info(
            "callback handled payment_id=%s outcome=%s status=%s",
            payment.payment_id,
            outcome,
            transition.payment.status,
        )
        return CallbackResult(outcome=outcome, payment=transition.payment)
