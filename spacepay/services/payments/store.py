"""Authoritative payment storage and the single transition path.

Every status change goes through `PaymentStateStore.transition`, which applies
a conditional update guarded by `(payment_id, status, state_version)`. A writer
that loses a race re-reads the row and re-evaluates against the fresh status,
so a terminal outcome is never clobbered by a stale read.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select, update

from spacepay.common.config import settings
from spacepay.common.errors import MalformedCompletion, PaymentError, PaymentNotFound
from spacepay.common.logging import logger
from spacepay.common.metrics import (
    duplicate_signals_total,
    payment_e2e_seconds,
    payment_failure_total,
    payment_success_total,
    terminal_conflicts_total,
)
from spacepay.common.state_machine import (
    TERMINAL_PRECEDENCE,
    PaymentStatus,
    is_terminal,
    validate_transition,
)
from spacepay.services.payments.models import Payment, PaymentConflict, PaymentTimeline
from spacepay.services.payments.schemas import GatewayResult


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class TransitionResult:
    """Outcome of one transition attempt.

    `applied` is True only for the writer whose conditional update won.
    `conflict` flags a terminal record that a different outcome tried to change.
    """

    payment: Payment
    applied: bool
    conflict: bool = False
    duplicate: bool = False


class PaymentStateStore:
    """Owns payment rows, the timeline, and the conflict review queue."""

    def __init__(self, session_factory, service_name: str | None = None, max_attempts: int = 5) -> None:
        self.session_factory = session_factory
        self.service_name = service_name or settings.service_name
        self.max_attempts = max_attempts

    def create(
        self,
        *,
        property_id: str,
        amount: Decimal,
        payment_type: str,
        phone_number: str,
        user_id: str | None = None,
    ) -> Payment:
        """Persist a new PENDING payment and its first timeline row."""

        with self.session_factory() as db:
            payment = Payment(
                user_id=user_id,
                property_id=property_id,
                amount=amount,
                payment_type=payment_type,
                phone_number=phone_number,
                status=PaymentStatus.PENDING.value,
                state_version=0,
                conflict_count=0,
            )
            db.add(payment)
            db.flush()
            db.add(
                PaymentTimeline(
                    payment_id=payment.payment_id,
                    from_state=None,
                    to_state=PaymentStatus.PENDING.value,
                    reason="payment_created",
                    source="initiator",
                )
            )
            db.commit()
            return payment

    def get(self, payment_id: str) -> Payment:
        with self.session_factory() as db:
            payment = db.get(Payment, payment_id)
            if payment is None:
                raise PaymentNotFound(f"payment {payment_id} not found", payment_id=payment_id)
            return payment

    def find_by_correlation_id(self, correlation_id: str) -> Payment | None:
        with self.session_factory() as db:
            return db.execute(
                select(Payment).where(Payment.gateway_correlation_id == correlation_id)
            ).scalar_one_or_none()

    def attach_correlation(
        self, payment_id: str, correlation_id: str, merchant_request_id: str | None = None
    ) -> Payment:
        """Record the provider's request id without touching status."""

        with self.session_factory() as db:
            db.execute(
                update(Payment)
                .where(Payment.payment_id == payment_id, Payment.gateway_correlation_id.is_(None))
                .values(gateway_correlation_id=correlation_id, merchant_request_id=merchant_request_id)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            payment = db.get(Payment, payment_id, populate_existing=True)
            if payment is None:
                raise PaymentNotFound(f"payment {payment_id} not found", payment_id=payment_id)
            return payment

    def _compare_and_set(self, db, payment_id: str, seen_status: str, seen_version: int, values: dict) -> bool:
        """Write `values` only if the row still has the status/version we read."""

        result = db.execute(
            update(Payment)
            .where(
                Payment.payment_id == payment_id,
                Payment.status == seen_status,
                Payment.state_version == seen_version,
            )
            .values(state_version=seen_version + 1, updated_at=datetime.now(timezone.utc), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def transition(
        self,
        payment_id: str,
        new_status: PaymentStatus | str,
        *,
        reason: str,
        source: str,
        fields: dict | None = None,
    ) -> TransitionResult:
        """Move a payment to `new_status` unless it is already terminal.

        Terminal records come back unchanged with `conflict` (different target)
        or `duplicate` (same target) set; this never raises for them. Illegal
        moves between non-terminal states raise `InvalidTransition`.
        """

        target = PaymentStatus(new_status).value
        for attempt in range(1, self.max_attempts + 1):
            with self.session_factory() as db:
                payment = db.get(Payment, payment_id)
                if payment is None:
                    raise PaymentNotFound(f"payment {payment_id} not found", payment_id=payment_id)
                if is_terminal(payment.status):
                    return TransitionResult(
                        payment=payment,
                        applied=False,
                        conflict=payment.status != target,
                        duplicate=payment.status == target,
                    )
                validate_transition(payment.status, target)

                from_status = payment.status
                values = {"status": target, **(fields or {})}
                if not self._compare_and_set(db, payment_id, from_status, payment.state_version, values):
                    db.rollback()
                    logger.info(
                        "optimistic concurrency retry payment_id=%s expected=%s attempt=%s",
                        payment_id,
                        from_status,
                        attempt,
                    )
                    continue

                db.add(
                    PaymentTimeline(
                        payment_id=payment_id,
                        from_state=from_status,
                        to_state=target,
                        reason=reason,
                        source=source,
                    )
                )
                db.commit()
                db.refresh(payment)
                logger.info(
                    "payment transition payment_id=%s %s->%s source=%s reason=%s",
                    payment_id,
                    from_status,
                    target,
                    source,
                    reason,
                )
                self._observe_terminal(payment, source)
                return TransitionResult(payment=payment, applied=True)

        raise PaymentError(
            f"optimistic concurrency retries exhausted for payment {payment_id}", payment_id=payment_id
        )

    def apply_outcome(self, payment_id: str, result: GatewayResult, source: str) -> TransitionResult:
        """Shared entry point for provider signals (callbacks and status queries).

        A result that carries no decision leaves the payment untouched. A
        success without receipt number or transaction date raises
        `MalformedCompletion` unless the payment is already COMPLETED.
        """

        target = result.target_status()
        if target is None:
            return TransitionResult(payment=self.get(payment_id), applied=False)

        current = self.get(payment_id)
        if target is PaymentStatus.COMPLETED and not is_terminal(current.status):
            if not result.receipt_number or not result.transaction_date:
                raise MalformedCompletion(
                    f"success signal for payment {payment_id} lacks receipt or transaction date",
                    payment_id=payment_id,
                    source=source,
                )

        outcome = self.transition(
            payment_id,
            target,
            reason=self._reason_for(result),
            source=source,
            fields=self._fields_for(target, result),
        )
        if outcome.applied:
            return outcome

        payment = outcome.payment
        receipt_mismatch = (
            outcome.duplicate
            and target is PaymentStatus.COMPLETED
            and result.receipt_number is not None
            and result.receipt_number != payment.gateway_receipt_number
        )
        if outcome.conflict or receipt_mismatch:
            payment = self.record_conflict(payment, target.value, result, source)
            return TransitionResult(payment=payment, applied=False, conflict=True)

        if outcome.duplicate:
            duplicate_signals_total.labels(service=self.service_name, source=source).inc()
            logger.info("duplicate signal ignored payment_id=%s status=%s source=%s", payment_id, payment.status, source)
        return outcome

    def record_conflict(self, payment: Payment, reported_status: str, result: GatewayResult, source: str) -> Payment:
        """Keep the terminal status, queue the disagreeing signal for review."""

        outranks = TERMINAL_PRECEDENCE.get(reported_status, 0) > TERMINAL_PRECEDENCE.get(payment.status, 0)
        with self.session_factory() as db:
            db.add(
                PaymentConflict(
                    payment_id=payment.payment_id,
                    current_status=payment.status,
                    reported_status=reported_status,
                    source=source,
                    result_code=result.result_code,
                    detail={
                        "result_description": result.result_description,
                        "receipt_number": result.receipt_number,
                        "transaction_date": result.transaction_date,
                        "amount": str(result.amount) if result.amount is not None else None,
                        "requires_attention": outranks,
                    },
                )
            )
            db.execute(
                update(Payment)
                .where(Payment.payment_id == payment.payment_id)
                .values(conflict_count=Payment.conflict_count + 1)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            refreshed = db.get(Payment, payment.payment_id, populate_existing=True)

        terminal_conflicts_total.labels(service=self.service_name, source=source).inc()
        log = logger.error if outranks else logger.warning
        log(
            "conflicting terminal signal payment_id=%s current=%s reported=%s source=%s result_code=%s",
            payment.payment_id,
            payment.status,
            reported_status,
            source,
            result.result_code,
        )
        return refreshed

    @staticmethod
    def _reason_for(result: GatewayResult) -> str:
        if result.is_success:
            return "gateway_completed"
        return f"gateway_failed:{result.result_code}"

    @staticmethod
    def _fields_for(target: PaymentStatus, result: GatewayResult) -> dict:
        fields = {"result_code": result.result_code, "result_description": result.result_description}
        if target is PaymentStatus.COMPLETED:
            fields.update(
                gateway_receipt_number=result.receipt_number,
                transaction_date=result.transaction_date,
                paid_amount=result.amount,
                completed_at=datetime.now(timezone.utc),
            )
        else:
            fields["failure_reason"] = result.result_description or f"result_code={result.result_code}"
        return fields

    def _observe_terminal(self, payment: Payment, source: str) -> None:
        if payment.status == PaymentStatus.COMPLETED.value:
            payment_success_total.labels(service=self.service_name, source=source).inc()
        elif payment.status == PaymentStatus.FAILED.value:
            payment_failure_total.labels(service=self.service_name, source=source).inc()
        if not is_terminal(payment.status) or payment.created_at is None:
            return
        elapsed = max(0.0, (datetime.now(timezone.utc) - as_utc(payment.created_at)).total_seconds())
        payment_e2e_seconds.labels(service=self.service_name, terminal_state=payment.status).observe(elapsed)

    def timeline(self, payment_id: str) -> list[PaymentTimeline]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(PaymentTimeline)
                    .where(PaymentTimeline.payment_id == payment_id)
                    .order_by(PaymentTimeline.created_at)
                ).scalars()
            )

    def list_for_user(self, user_id: str) -> list[Payment]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Payment).where(Payment.user_id == user_id).order_by(Payment.created_at.desc())
                ).scalars()
            )

    def list_for_property(self, property_id: str) -> list[Payment]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Payment).where(Payment.property_id == property_id).order_by(Payment.created_at.desc())
                ).scalars()
            )

    def list_stale(self, older_than_seconds: int, limit: int = 50) -> list[Payment]:
        """PROCESSING payments with no status change inside the grace window."""

        cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Payment)
                    .where(Payment.status == PaymentStatus.PROCESSING.value, Payment.updated_at < cutoff)
                    .order_by(Payment.updated_at)
                    .limit(limit)
                ).scalars()
            )

    def list_conflicts(self, include_resolved: bool = False) -> list[PaymentConflict]:
        query = select(PaymentConflict).order_by(PaymentConflict.created_at)
        if not include_resolved:
            query = query.where(PaymentConflict.resolved.is_(False))
        with self.session_factory() as db:
            return list(db.execute(query).scalars())

    def resolve_conflict(self, conflict_id: str) -> PaymentConflict:
        with self.session_factory() as db:
            conflict = db.get(PaymentConflict, conflict_id)
            if conflict is None:
                raise PaymentNotFound(f"conflict {conflict_id} not found", conflict_id=conflict_id)
            conflict.resolved = True
            db.commit()
            return conflict

    def summary(self) -> dict:
        """Revenue from completed payments, counts by status, open conflicts."""

        with self.session_factory() as db:
            rows = db.execute(select(Payment.status, func.count()).group_by(Payment.status)).all()
            revenue = db.execute(
                select(func.coalesce(func.sum(Payment.amount), 0)).where(
                    Payment.status == PaymentStatus.COMPLETED.value
                )
            ).scalar_one()
            open_conflicts = db.execute(
                select(func.count()).select_from(PaymentConflict).where(PaymentConflict.resolved.is_(False))
            ).scalar_one()
        counts = {status.value: 0 for status in PaymentStatus}
        counts.update({status: count for status, count in rows})
        return {
            "total_revenue": Decimal(str(revenue)),
            "counts": counts,
            "open_conflicts": open_conflicts,
        }
