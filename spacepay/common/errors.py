"""Error taxonomy for the payment lifecycle.

Only validation errors reach the caller of an initiation request. Gateway and
webhook errors are absorbed by the services and show up as Payment status.
"""


class PaymentError(Exception):
    """Base error with a stable code for API responses."""

    error_code = "payment_error"
    http_status = 500

    def __init__(self, message: str, **context) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"error": {"code": self.error_code, "message": self.message}}


class ValidationError(PaymentError):
    """Bad initiation input; raised before any record exists."""

    error_code = "validation_error"
    http_status = 422


class InvalidPhoneNumber(ValidationError):
    error_code = "invalid_phone_number"


class PaymentNotFound(PaymentError):
    error_code = "payment_not_found"
    http_status = 404


class GatewayUnavailable(PaymentError):
    """Charge-initiation or status-query call failed or returned an unusable answer."""

    error_code = "gateway_unavailable"
    http_status = 502


class UnknownCorrelationId(PaymentError):
    """Callback for a request id we never issued or no longer track."""

    error_code = "unknown_correlation_id"
    http_status = 200


class ConflictingTerminalState(PaymentError):
    """Signal contradicts a terminal outcome already recorded."""

    error_code = "conflicting_terminal_state"
    http_status = 409


class MalformedCompletion(PaymentError):
    """Success signal without receipt number or transaction date."""

    error_code = "malformed_completion"
    http_status = 400


class MalformedCallback(PaymentError):
    """Callback payload is not structurally parseable."""

    error_code = "malformed_callback"
    http_status = 400


class InvalidTransition(PaymentError):
    """Transition not allowed between two non-terminal states."""

    error_code = "invalid_transition"
    http_status = 409


class ClientTimeout(PaymentError):
    """Client-side hard timeout elapsed; the server record is untouched."""

    error_code = "client_timeout"
    http_status = 408
