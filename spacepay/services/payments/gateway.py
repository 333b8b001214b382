"""M-Pesa Daraja adapter: OAuth token, STK push, and STK push query.

Only `ChargeAck` and `GatewayResult` leave this module; every transport or
protocol problem is raised as `GatewayUnavailable`.
"""

import base64
import time
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

import httpx
import pydantic

from spacepay.common.config import CommonSettings, settings
from spacepay.common.errors import GatewayUnavailable
from spacepay.common.logging import logger
from spacepay.common.metrics import gateway_errors_total, gateway_request_seconds
from spacepay.common.tracing import tracer
from spacepay.services.payments.schemas import SUCCESS_CODE, ChargeAck, GatewayResult


TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"
# Refresh the access token this many seconds before the provider expires it.
TOKEN_EXPIRY_MARGIN = 60


def make_password(short_code: str, pass_key: str, timestamp: str) -> str:
    """Base64 of ShortCode + PassKey + Timestamp, as the STK endpoints expect."""

    return base64.b64encode(f"{short_code}{pass_key}{timestamp}".encode()).decode("utf-8")


def make_timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


class MpesaGateway:
    """Outbound provider calls with bounded per-request timeouts."""

    def __init__(
        self,
        config: CommonSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or settings
        self.transport = transport
        self._token: str | None = None
        self._token_expires_at = 0.0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.mpesa_base_url,
            timeout=httpx.Timeout(self.config.gateway_timeout_seconds),
            transport=self.transport,
        )

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        resp = await client.get(
            TOKEN_PATH,
            auth=(self.config.mpesa_consumer_key, self.config.mpesa_consumer_secret),
        )
        if resp.status_code != 200:
            raise GatewayUnavailable(f"token request rejected status={resp.status_code}")
        body = _json_or_raise(resp, "token")
        token = body.get("access_token")
        if not token or not isinstance(token, str):
            raise GatewayUnavailable("token response without access_token")
        try:
            expires_in = int(body.get("expires_in", 3599))
        except (TypeError, ValueError) as exc:
            raise GatewayUnavailable(f"token response with bad expires_in={body.get('expires_in')!r}") from exc
        self._token = token
        self._token_expires_at = time.monotonic() + max(0, expires_in - TOKEN_EXPIRY_MARGIN)
        return token

    async def _post(self, operation: str, path: str, payload: dict) -> httpx.Response:
        started = time.perf_counter()
        with tracer.start_as_current_span(f"mpesa.{operation}"):
            try:
                async with self._client() as client:
                    token = await self._access_token(client)
                    return await client.post(path, json=payload, headers={"Authorization": f"Bearer {token}"})
            except httpx.HTTPError as exc:
                gateway_errors_total.labels(service=self.config.service_name, operation=operation).inc()
                raise GatewayUnavailable(f"{operation} transport error: {exc!r}") from exc
            except GatewayUnavailable:
                gateway_errors_total.labels(service=self.config.service_name, operation=operation).inc()
                raise
            finally:
                gateway_request_seconds.labels(service=self.config.service_name, operation=operation).observe(
                    time.perf_counter() - started
                )

    def _credentials(self) -> dict:
        timestamp = make_timestamp()
        return {
            "BusinessShortCode": self.config.mpesa_shortcode,
            "Password": make_password(self.config.mpesa_shortcode, self.config.mpesa_passkey, timestamp),
            "Timestamp": timestamp,
        }

    async def initiate_charge(
        self, *, phone_number: str, amount: Decimal, reference: str, description: str
    ) -> ChargeAck:
        """Send the STK push prompt; returns the provider's immediate acknowledgement."""

        payload = {
            **self._credentials(),
            "TransactionType": "CustomerPayBillOnline",
            # The provider accepts whole shillings only.
            "Amount": int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)),
            "PartyA": phone_number,
            "PartyB": self.config.mpesa_shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": self.config.mpesa_callback_url,
            "AccountReference": reference,
            "TransactionDesc": description,
        }
        resp = await self._post("stk_push", STK_PUSH_PATH, payload)
        body = _json_or_raise(resp, "stk_push")
        response_code = str(body.get("ResponseCode", ""))
        if resp.status_code != 200 or response_code != SUCCESS_CODE:
            gateway_errors_total.labels(service=self.config.service_name, operation="stk_push").inc()
            raise GatewayUnavailable(
                f"stk_push rejected status={resp.status_code} code={response_code or body.get('errorCode')} "
                f"desc={body.get('ResponseDescription') or body.get('errorMessage')}"
            )
        correlation_id = body.get("CheckoutRequestID")
        if not correlation_id or not isinstance(correlation_id, str):
            raise GatewayUnavailable(f"stk_push acknowledgement with bad CheckoutRequestID={correlation_id!r}")
        try:
            return ChargeAck(
                correlation_id=correlation_id,
                merchant_request_id=body.get("MerchantRequestID"),
                response_code=response_code,
                response_description=body.get("ResponseDescription"),
                customer_message=body.get("CustomerMessage"),
            )
        except pydantic.ValidationError as exc:
            raise GatewayUnavailable(f"stk_push acknowledgement unusable: {exc.error_count()} error(s)") from exc

    async def query_status(self, correlation_id: str) -> GatewayResult:
        """Ask the provider what happened to one STK push request."""

        payload = {**self._credentials(), "CheckoutRequestID": correlation_id}
        resp = await self._post("stk_query", STK_QUERY_PATH, payload)
        body = _json_or_raise(resp, "stk_query")

        # While the payer has not answered, the query endpoint answers with an error body.
        error_code = body.get("errorCode")
        if error_code is not None:
            result = GatewayResult(
                correlation_id=correlation_id,
                result_code=str(error_code),
                result_description=_str_or_none(body.get("errorMessage")),
            )
            if not result.is_still_processing:
                raise GatewayUnavailable(f"stk_query error code={error_code} desc={body.get('errorMessage')}")
            logger.info("stk_query pending correlation_id=%s code=%s", correlation_id, error_code)
            return result
        if resp.status_code != 200 or "ResultCode" not in body:
            raise GatewayUnavailable(f"stk_query unusable answer status={resp.status_code}")
        try:
            return GatewayResult(
                correlation_id=_str_or_none(body.get("CheckoutRequestID")) or correlation_id,
                result_code=str(body["ResultCode"]),
                result_description=_str_or_none(body.get("ResultDesc")),
                receipt_number=_str_or_none(body.get("MpesaReceiptNumber")),
                transaction_date=_str_or_none(body.get("TransactionDate")),
                amount=Decimal(str(body["Amount"])) if body.get("Amount") is not None else None,
            )
        except (InvalidOperation, pydantic.ValidationError) as exc:
            raise GatewayUnavailable(f"stk_query answer unparseable: {exc!r}") from exc


def _json_or_raise(resp: httpx.Response, operation: str) -> dict:
    try:
        body = resp.json()
    except ValueError as exc:
        raise GatewayUnavailable(f"{operation} returned non-JSON body status={resp.status_code}") from exc
    if not isinstance(body, dict):
        raise GatewayUnavailable(f"{operation} returned unexpected body type")
    return body


def _str_or_none(value) -> str | None:
    return None if value is None else str(value)
