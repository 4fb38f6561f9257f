"""Trigger an out-of-band status sweep of in-flight orders and print the report JSON."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for order reconciliation sweeps."""

    parser = argparse.ArgumentParser(description="Re-check in-flight orders against the payment gateway.")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--timeout", type=float, default=120.0)
    args = parser.parse_args()

    resp = httpx.post(
        f"{args.api_url}/reconciliation/sweep",
        params={"limit": args.limit},
        timeout=args.timeout,
    )
    resp.raise_for_status()
    report = resp.json()
    print(json.dumps(report, indent=2))
    if report.get("failures"):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
