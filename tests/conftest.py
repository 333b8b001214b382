"""Shared fixtures: in-memory database, fake provider, callback payloads."""

import os

os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import update  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from spacepay.common.db import Base, make_engine, make_session_factory  # noqa: E402
from spacepay.common.errors import GatewayUnavailable  # noqa: E402
from spacepay.services.payments import models  # noqa: E402,F401
from spacepay.services.payments.models import Payment  # noqa: E402
from spacepay.services.payments.schemas import ChargeAck, GatewayResult  # noqa: E402
from spacepay.services.payments.service import PaymentService  # noqa: E402
from spacepay.services.payments.store import PaymentStateStore  # noqa: E402


class FakeGateway:
    """Stands in for the provider; scripted acks and query answers."""

    def __init__(self) -> None:
        self.charges: list[dict] = []
        self.queries: list[str] = []
        self.charge_error: Exception | None = None
        self.query_results: list = []
        self.before_query_returns = None
        self._counter = 0

    async def initiate_charge(self, *, phone_number, amount, reference, description) -> ChargeAck:
        self.charges.append(
            {"phone_number": phone_number, "amount": amount, "reference": reference, "description": description}
        )
        if self.charge_error is not None:
            raise self.charge_error
        self._counter += 1
        return ChargeAck(
            correlation_id=f"ws_CO_{self._counter:04d}",
            merchant_request_id=f"mr-{self._counter:04d}",
            response_description="Success. Request accepted for processing",
        )

    async def query_status(self, correlation_id: str) -> GatewayResult:
        self.queries.append(correlation_id)
        if self.before_query_returns is not None:
            await self.before_query_returns()
        if not self.query_results:
            raise GatewayUnavailable("no scripted answer")
        answer = self.query_results.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


def callback_payload(
    correlation_id: str,
    result_code: int = 0,
    receipt: str | None = "QAX123",
    amount=5000,
    transaction_date: int | None = 20261019101530,
    description: str | None = None,
) -> dict:
    callback = {
        "MerchantRequestID": "mr-0001",
        "CheckoutRequestID": correlation_id,
        "ResultCode": result_code,
        "ResultDesc": description
        or ("The service request is processed successfully." if result_code == 0 else "Request cancelled by user"),
    }
    if result_code == 0:
        items = [{"Name": "Amount", "Value": amount}, {"Name": "PhoneNumber", "Value": 254712345678}]
        if receipt is not None:
            items.append({"Name": "MpesaReceiptNumber", "Value": receipt})
        if transaction_date is not None:
            items.append({"Name": "TransactionDate", "Value": transaction_date})
        callback["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": callback}}


def success_result(correlation_id: str, receipt: str | None = "QAX123") -> GatewayResult:
    return GatewayResult(
        correlation_id=correlation_id,
        result_code="0",
        result_description="The service request is processed successfully.",
        receipt_number=receipt,
        transaction_date="20261019101530" if receipt else None,
    )


def failure_result(correlation_id: str, code: str = "1032") -> GatewayResult:
    return GatewayResult(correlation_id=correlation_id, result_code=code, result_description="Request cancelled by user")


@pytest.fixture
def engine():
    engine = make_engine("sqlite+pysqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return PaymentStateStore(session_factory, service_name="test")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def service(session_factory, gateway):
    return PaymentService(session_factory, gateway=gateway)


@pytest.fixture
def age_payment(session_factory):
    """Push a payment's last status change into the past."""

    def _age(payment_id: str, seconds: int) -> None:
        with session_factory() as db:
            db.execute(
                update(Payment)
                .where(Payment.payment_id == payment_id)
                .values(updated_at=datetime.now(timezone.utc) - timedelta(seconds=seconds))
            )
            db.commit()

    return _age
