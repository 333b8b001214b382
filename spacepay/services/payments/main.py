"""HTTP surface for payment initiation, provider callbacks, and status polling."""

import asyncio
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse

from spacepay.common.config import settings
from spacepay.common.db import Base, SessionLocal, engine
from spacepay.common.errors import MalformedCallback, PaymentError
from spacepay.common.logging import configure_logging, logger, trace_id_ctx
from spacepay.common.metrics import metrics_response, payment_latency_seconds
from spacepay.common.startup import log_startup_config
from spacepay.common.tracing import instrument_app, setup_tracing
from spacepay.services.payments.schemas import (
    CallbackAck,
    ConflictResponse,
    PaymentDetailResponse,
    PaymentInitiateRequest,
    PaymentStatusResponse,
    PaymentSummaryResponse,
    TimelineEntry,
)
from spacepay.services.payments.service import PaymentService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "database_url",
        "mpesa_environment",
        "mpesa_shortcode",
        "mpesa_consumer_key",
        "mpesa_passkey",
        "mpesa_callback_url",
        "gateway_timeout_seconds",
        "reconcile_grace_seconds",
    ],
)
service = PaymentService(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the stale-payment reconcile sweep with app lifecycle."""

    if settings.auto_create_schema:
        Base.metadata.create_all(engine)
    sweep_task = asyncio.create_task(service.reconcile_forever())
    yield
    sweep_task.cancel()


app = FastAPI(title="SpacePay Payments", lifespan=lifespan)
instrument_app(app)


@app.exception_handler(PaymentError)
async def payment_error_handler(_: Request, exc: PaymentError):
    """Render domain errors as `{"error": {"code", "message"}}`."""

    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def _bind_trace(x_trace_id: str | None) -> str:
    trace_id = x_trace_id or str(uuid4())
    trace_id_ctx.set(trace_id)
    return trace_id


@app.post("/payments", response_model=PaymentStatusResponse, status_code=201)
async def initiate_payment(
    req: PaymentInitiateRequest,
    x_user_id: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Create a payment and send the charge prompt to the payer's phone."""

    _bind_trace(x_trace_id)
    with payment_latency_seconds.labels(service=settings.service_name).time():
        payment = await service.initiate(
            req.property_id, req.amount, req.phone_number, req.payment_type, user_id=x_user_id
        )
    return PaymentStatusResponse.model_validate(payment)


@app.post("/payments/mpesa/callback")
async def mpesa_callback(request: Request):
    """Provider result notification; acknowledged for every parseable payload."""

    try:
        payload = await request.json()
    except ValueError as exc:
        raise MalformedCallback("callback body is not JSON") from exc
    result = service.handle_callback(payload)
    logger.info("callback acknowledged outcome=%s", result.outcome)
    return CallbackAck().model_dump(by_alias=True)


@app.get("/payments/history", response_model=list[PaymentStatusResponse])
def payment_history(x_user_id: str = Header()):
    """Payments made by the calling user, newest first."""

    return [PaymentStatusResponse.model_validate(p) for p in service.store.list_for_user(x_user_id)]


@app.get("/payments/summary", response_model=PaymentSummaryResponse)
def payment_summary():
    """Completed revenue, counts per status, and open conflicts."""

    return PaymentSummaryResponse(**service.store.summary())


@app.get("/payments/conflicts", response_model=list[ConflictResponse])
def list_conflicts(include_resolved: bool = False):
    """Manual-review queue of signals that contradicted a terminal outcome."""

    return [ConflictResponse.model_validate(c) for c in service.store.list_conflicts(include_resolved)]


@app.post("/payments/conflicts/{conflict_id}/resolve", response_model=ConflictResponse)
def resolve_conflict(conflict_id: str):
    return ConflictResponse.model_validate(service.store.resolve_conflict(conflict_id))


@app.get("/payments/{payment_id}/status", response_model=PaymentStatusResponse)
async def payment_status(payment_id: str, x_trace_id: str | None = Header(default=None)):
    """Polled by clients; may trigger an active status query when the callback is overdue."""

    _bind_trace(x_trace_id)
    return PaymentStatusResponse.model_validate(await service.status(payment_id))


@app.get("/payments/{payment_id}", response_model=PaymentDetailResponse)
def get_payment(payment_id: str):
    """Full record with its transition timeline."""

    detail = PaymentDetailResponse.model_validate(service.store.get(payment_id))
    detail.timeline = [TimelineEntry.model_validate(t) for t in service.store.timeline(payment_id)]
    return detail


@app.post("/payments/{payment_id}/cancel", response_model=PaymentStatusResponse)
def cancel_payment(payment_id: str):
    """Cancel a payment that has not reached a terminal state."""

    return PaymentStatusResponse.model_validate(service.cancel(payment_id))


@app.get("/properties/{property_id}/payments", response_model=list[PaymentStatusResponse])
def property_payments(property_id: str):
    return [PaymentStatusResponse.model_validate(p) for p in service.store.list_for_property(property_id)]


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
