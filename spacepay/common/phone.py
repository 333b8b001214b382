"""Payer phone number validation and canonical formatting."""

import re

from spacepay.common.errors import InvalidPhoneNumber


NON_DIGITS = re.compile(r"\D")
SUBSCRIBER_NUMBER = re.compile(r"^[17]\d{8}$")


def normalize_phone_number(raw: str, country_code: str = "254") -> str:
    """Return the 12-digit country-code form of a mobile number.

    Separators, spaces and a leading ``+`` are ignored. Accepted shapes are
    ``2547XXXXXXXX``, ``07XXXXXXXX`` and ``7XXXXXXXX`` (``1`` prefixes too).
    """

    if not isinstance(raw, str):
        raise InvalidPhoneNumber(f"Invalid phone number: {raw!r}")
    digits = NON_DIGITS.sub("", raw)

    if len(digits) == 9 + len(country_code) and digits.startswith(country_code):
        subscriber = digits[len(country_code):]
    elif len(digits) == 10 and digits.startswith("0"):
        subscriber = digits[1:]
    elif len(digits) == 9:
        subscriber = digits
    else:
        raise InvalidPhoneNumber(f"Invalid phone number: {raw!r}")

    if not SUBSCRIBER_NUMBER.match(subscriber):
        raise InvalidPhoneNumber(f"Invalid phone number: {raw!r}")
    return f"{country_code}{subscriber}"
