"""Post a provider-style result callback to the payments service.

Useful for manual duplicate and out-of-order delivery testing.
"""

import argparse
import json
from datetime import datetime
from pathlib import Path

import httpx


def build_payload(correlation_id: str, result_code: int, receipt: str | None, amount: float | None) -> dict:
    """Callback envelope in the provider's shape; metadata only on success."""

    callback = {
        "MerchantRequestID": f"manual-{correlation_id}",
        "CheckoutRequestID": correlation_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": int(datetime.now().strftime("%Y%m%d%H%M%S"))},
                {"Name": "PhoneNumber", "Value": 254700000000},
            ]
        }
    return {"Body": {"stkCallback": callback}}


def main() -> None:
    parser = argparse.ArgumentParser(description="Send a payment result callback.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--correlation-id", default=None)
    parser.add_argument("--result-code", type=int, default=0)
    parser.add_argument("--receipt", default="QAX123")
    parser.add_argument("--amount", type=float, default=1.0)
    parser.add_argument("--file", dest="json_file", default=None, help="Send this JSON file verbatim")
    parser.add_argument("--repeat", type=int, default=1, help="Deliver the same payload N times")
    args = parser.parse_args()

    if bool(args.correlation_id) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --correlation-id or --file")

    if args.json_file:
        payload = json.loads(Path(args.json_file).read_text())
    else:
        payload = build_payload(args.correlation_id, args.result_code, args.receipt, args.amount)

    for attempt in range(1, args.repeat + 1):
        resp = httpx.post(f"{args.base_url}/payments/mpesa/callback", json=payload, timeout=10.0)
        print(f"attempt={attempt} status={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()
