"""Payment service: wires initiation, callbacks and reconciliation together.

Also owns the client-facing status projection, which triggers an active status
query when a PROCESSING payment has outlived the callback grace period.
"""

import asyncio

from spacepay.common.config import settings
from spacepay.common.errors import ConflictingTerminalState
from spacepay.common.logging import logger
from spacepay.common.state_machine import PaymentStatus
from spacepay.services.payments.callbacks import CallbackResult, GatewayCallbackReceiver
from spacepay.services.payments.gateway import MpesaGateway
from spacepay.services.payments.initiation import PaymentRequestInitiator
from spacepay.services.payments.models import Payment
from spacepay.services.payments.reconciliation import PaymentStatusReconciler
from spacepay.services.payments.store import PaymentStateStore


class PaymentService:
    """Facade used by the HTTP layer and the background sweep."""

    def __init__(self, session_factory, gateway=None, config=None) -> None:
        self.config = config or settings
        self.gateway = gateway or MpesaGateway(self.config)
        self.store = PaymentStateStore(session_factory, service_name=self.config.service_name)
        self.initiator = PaymentRequestInitiator(self.store, self.gateway, self.config)
        self.callbacks = GatewayCallbackReceiver(self.store)
        self.reconciler = PaymentStatusReconciler(
            self.store, self.gateway, grace_seconds=self.config.reconcile_grace_seconds
        )

    async def initiate(self, property_id, amount, phone_number: str, payment_type, user_id: str | None = None) -> Payment:
        return await self.initiator.initiate(property_id, amount, phone_number, payment_type, user_id=user_id)

    def handle_callback(self, raw_payload) -> CallbackResult:
        return self.callbacks.handle_callback(raw_payload)

    async def status(self, payment_id: str) -> Payment:
        """Current projection; reconciles first when the callback is overdue."""

        payment = self.store.get(payment_id)
        if self.reconciler.is_stale(payment):
            logger.info("callback overdue, reconciling payment_id=%s", payment_id)
            payment = await self.reconciler.reconcile(payment_id)
        return payment

    def cancel(self, payment_id: str, reason: str = "cancel_requested") -> Payment:
        """Explicit cancel of a non-terminal payment.

        Raises `ConflictingTerminalState` when the payment already settled.
        """

        outcome = self.store.transition(payment_id, PaymentStatus.CANCELLED, reason=reason, source="client")
        if outcome.conflict:
            raise ConflictingTerminalState(
                f"payment {payment_id} is already {outcome.payment.status}", payment_id=payment_id
            )
        return outcome.payment

    async def reconcile_forever(self) -> None:
        """Periodically sweep PROCESSING payments that never got a callback."""

        while True:
            try:
                await self.reconciler.reconcile_stale()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("reconcile sweep failed: %s", exc)
            await asyncio.sleep(self.config.reconcile_sweep_interval_seconds)
