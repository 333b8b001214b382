"""Client-side polling of a payment's status with a hard timeout.

The session owns its poll task and its timeout; both are released when the
session finishes, times out, is cancelled, or leaves its `async with` block.
A timeout is a local outcome only: the server record keeps tracking the
payment and may still settle later through a callback.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

from spacepay.common.config import settings
from spacepay.common.errors import ClientTimeout, PaymentError
from spacepay.common.logging import logger


class PollPhase(str, Enum):
    AWAITING_FIRST_RESPONSE = "AWAITING_FIRST_RESPONSE"
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


STOP_PHASES = frozenset({PollPhase.COMPLETED, PollPhase.FAILED, PollPhase.CANCELLED})


@dataclass
class PollOutcome:
    """Where the session ended and the last projection it saw."""

    phase: PollPhase
    payment: dict | None
    timed_out: bool = False
    cancelled: bool = False
    polls: int = 0

    @property
    def user_message(self) -> str:
        if self.phase is PollPhase.COMPLETED:
            receipt = (self.payment or {}).get("gateway_receipt_number")
            return f"Payment received. Receipt {receipt}." if receipt else "Payment received."
        if self.phase is PollPhase.FAILED:
            return "Payment failed. Please try again."
        if self.timed_out:
            return "We have not received confirmation yet. Keep waiting or retry."
        return "Payment is still being processed."

    def raise_for_timeout(self) -> None:
        if self.timed_out:
            raise ClientTimeout("no final payment status before the client timeout")


class ClientPollingSession:
    """Polls `fetch_status` every `poll_interval` seconds until a final status or `timeout`."""

    def __init__(
        self,
        fetch_status: Callable[[], Awaitable[dict]],
        poll_interval: float | None = None,
        timeout: float | None = None,
        on_change: Callable[[PollPhase, dict | None], Any] | None = None,
    ) -> None:
        self.fetch_status = fetch_status
        self.poll_interval = settings.client_poll_interval_seconds if poll_interval is None else poll_interval
        self.timeout = settings.client_timeout_seconds if timeout is None else timeout
        self.on_change = on_change
        self.phase = PollPhase.AWAITING_FIRST_RESPONSE
        self.last_payment: dict | None = None
        self.polls = 0
        self._task: asyncio.Task | None = None
        self._cancel_requested = False

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def _set_phase(self, phase: PollPhase) -> None:
        if phase is self.phase:
            return
        logger.info("poll phase %s -> %s", self.phase.value, phase.value)
        self.phase = phase
        if self.on_change is not None:
            self.on_change(phase, self.last_payment)

    def _observe(self, payment: dict) -> None:
        self.last_payment = payment
        try:
            phase = PollPhase(payment.get("status"))
        except ValueError:
            logger.warning("unexpected status in poll response: %r", payment.get("status"))
            return
        self._set_phase(phase)

    async def _poll_loop(self) -> None:
        while True:
            try:
                payment = await self.fetch_status()
            except (httpx.HTTPError, PaymentError, ValueError) as exc:
                logger.warning("status poll failed, retrying: %s", exc)
            else:
                self.polls += 1
                self._observe(payment)
                if self.phase in STOP_PHASES:
                    return
            await asyncio.sleep(self.poll_interval)

    async def run(self) -> PollOutcome:
        """Poll until COMPLETED/FAILED, the hard timeout, or `cancel()`."""

        if self._task is not None:
            raise RuntimeError("polling session already started")
        if self._cancel_requested:
            logger.info("polling session cancelled before start")
            return self._outcome(cancelled=True)
        self._task = asyncio.ensure_future(self._poll_loop())
        try:
            await asyncio.wait_for(self._task, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.info("client timeout after %ss in phase %s", self.timeout, self.phase.value)
            self._set_phase(PollPhase.CANCELLED)
            return self._outcome(timed_out=True)
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            return self._outcome(cancelled=True)
        return self._outcome()

    def _outcome(self, timed_out: bool = False, cancelled: bool = False) -> PollOutcome:
        return PollOutcome(
            phase=self.phase,
            payment=self.last_payment,
            timed_out=timed_out,
            cancelled=cancelled,
            polls=self.polls,
        )

    def cancel(self) -> None:
        """Stop polling now (dialog closed); the running `run()` returns a cancelled outcome."""

        self._cancel_requested = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def close(self) -> None:
        """Cancel and wait until the poll task is gone."""

        self.cancel()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def __aenter__(self) -> "ClientPollingSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class HttpStatusFetcher:
    """Reads `GET /payments/{id}/status` with its own per-request timeout."""

    def __init__(
        self,
        payment_id: str,
        base_url: str | None = None,
        request_timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.payment_id = payment_id
        self.client = httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            timeout=httpx.Timeout(request_timeout or settings.client_request_timeout_seconds),
            transport=transport,
        )

    async def __call__(self) -> dict:
        resp = await self.client.get(f"/payments/{self.payment_id}/status")
        resp.raise_for_status()
        body = resp.json()
        if not isinstance(body, dict):
            raise ValueError(f"unexpected status body: {body!r}")
        return body

    async def aclose(self) -> None:
        await self.client.aclose()
