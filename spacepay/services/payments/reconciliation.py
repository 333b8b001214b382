"""Active status queries for payments whose callback is overdue."""

from datetime import datetime, timezone

from spacepay.common.config import settings
from spacepay.common.errors import GatewayUnavailable, MalformedCompletion
from spacepay.common.logging import correlation_id_ctx, logger, payment_id_ctx
from spacepay.common.metrics import reconciliations_total
from spacepay.common.state_machine import PaymentStatus, is_terminal
from spacepay.services.payments.models import Payment
from spacepay.services.payments.store import PaymentStateStore, as_utc


class PaymentStatusReconciler:
    """Queries the provider and feeds the answer through the shared transition path."""

    def __init__(self, store: PaymentStateStore, gateway, grace_seconds: int | None = None) -> None:
        self.store = store
        self.gateway = gateway
        self.grace_seconds = settings.reconcile_grace_seconds if grace_seconds is None else grace_seconds

    def _count(self, outcome: str) -> None:
        reconciliations_total.labels(service=self.store.service_name, outcome=outcome).inc()

    def is_stale(self, payment: Payment, now: datetime | None = None) -> bool:
        """True when a PROCESSING payment has waited past the grace period."""

        if payment.status != PaymentStatus.PROCESSING.value or payment.updated_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return (now - as_utc(payment.updated_at)).total_seconds() >= self.grace_seconds

    async def reconcile(self, payment_id: str) -> Payment:
        """Return the payment after at most one status query.

        A failed query, or one that reports the charge as still in progress,
        leaves the payment unchanged.
        """

        payment = self.store.get(payment_id)
        if is_terminal(payment.status) or not payment.gateway_correlation_id:
            self._count("skipped")
            return payment

        pay_token = payment_id_ctx.set(payment.payment_id)
        corr_token = correlation_id_ctx.set(payment.gateway_correlation_id)
        try:
            try:
                result = await self.gateway.query_status(payment.gateway_correlation_id)
            except GatewayUnavailable as exc:
                logger.warning("status query failed payment_id=%s error=%s", payment_id, exc)
                self._count("query_failed")
                return self.store.get(payment_id)

            if result.target_status() is None:
                self._count("still_processing")
                return self.store.get(payment_id)

            try:
                outcome = self.store.apply_outcome(payment_id, result, source="reconciler")
            except MalformedCompletion as exc:
                logger.warning("status query success without receipt, awaiting callback: %s", exc)
                self._count("awaiting_receipt")
                return self.store.get(payment_id)

            if outcome.applied:
                self._count("applied")
            elif outcome.conflict:
                self._count("conflict")
            else:
                self._count("no_op")
            return outcome.payment
        finally:
            correlation_id_ctx.reset(corr_token)
            payment_id_ctx.reset(pay_token)

    async def reconcile_stale(self, limit: int | None = None) -> list[Payment]:
        """Sweep PROCESSING payments past the grace period, oldest first."""

        stale = self.store.list_stale(self.grace_seconds, limit=limit or settings.reconcile_sweep_batch)
        results = []
        for payment in stale:
            results.append(await self.reconcile(payment.payment_id))
        if stale:
            logger.info("reconcile sweep checked=%s", len(stale))
        return results
