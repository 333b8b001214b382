"""Fetch and print the payment summary and the open conflict queue."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for manual review of payment outcomes."""

    parser = argparse.ArgumentParser(description="Print payment summary and unresolved conflicts.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--include-resolved", action="store_true")
    args = parser.parse_args()

    summary = httpx.get(f"{args.base_url}/payments/summary", timeout=10.0)
    summary.raise_for_status()
    conflicts = httpx.get(
        f"{args.base_url}/payments/conflicts",
        params={"include_resolved": args.include_resolved},
        timeout=10.0,
    )
    conflicts.raise_for_status()
    print(json.dumps({"summary": summary.json(), "conflicts": conflicts.json()}, indent=2))


if __name__ == "__main__":
    main()
