"""Initiate a payment and follow it the way the web client does.

Polls the status endpoint until a final status or the client timeout.
"""

import argparse
import asyncio
import json

import httpx

from spacepay.client.polling import ClientPollingSession, HttpStatusFetcher


async def run(args) -> int:
    """Create the payment, then poll it; returns a process exit code."""

    async with httpx.AsyncClient(base_url=args.base_url, timeout=10.0) as client:
        resp = await client.post(
            "/payments",
            json={
                "property_id": args.property_id,
                "amount": args.amount,
                "phone_number": args.phone,
                "payment_type": args.payment_type,
            },
            headers={"x-user-id": args.user_id} if args.user_id else {},
        )
    if resp.status_code >= 400:
        print(f"initiation rejected status={resp.status_code} body={resp.text}")
        return 2
    payment = resp.json()
    print(f"payment_id={payment['payment_id']} status={payment['status']}")
    if payment["status"] == "FAILED":
        return 1

    fetcher = HttpStatusFetcher(payment["payment_id"], base_url=args.base_url)
    try:
        async with ClientPollingSession(
            fetcher,
            poll_interval=args.interval,
            timeout=args.timeout,
            on_change=lambda phase, _: print(f"phase={phase.value}"),
        ) as session:
            outcome = await session.run()
    finally:
        await fetcher.aclose()

    print(json.dumps(outcome.payment, indent=2, default=str))
    print(outcome.user_message)
    return 0 if outcome.phase.value == "COMPLETED" else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Initiate an M-Pesa payment and poll it to completion.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--property-id", required=True)
    parser.add_argument("--amount", required=True)
    parser.add_argument("--phone", required=True)
    parser.add_argument("--payment-type", default="BOOKING_FEE", choices=["DEPOSIT", "BOOKING_FEE", "RENT"])
    parser.add_argument("--user-id", default=None)
    parser.add_argument("--interval", type=float, default=3.0)
    parser.add_argument("--timeout", type=float, default=120.0)
    args = parser.parse_args()
    raise SystemExit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
