"""Trigger one Telegram delivery retry sweep and print its summary JSON.

Meant for a crontab or platform scheduler, e.g. every 5 minutes.
"""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for the retry sweep trigger."""

    parser = argparse.ArgumentParser(description="Call the delivery service retry sweep endpoint.")
    parser.add_argument("--delivery-url", default="http://localhost:8001")
    parser.add_argument("--limit", type=int, default=50)
    parser.add_argument("--include-pending", action="store_true", help="Also retry PENDING rows never attempted")
    parser.add_argument("--cron-secret", default=os.environ.get("CRON_SECRET", ""))
    parser.add_argument("--timeout-seconds", type=float, default=60.0)
    args = parser.parse_args()

    if not args.cron_secret:
        parser.error("--cron-secret or CRON_SECRET is required")

    params = {"limit": args.limit}
    if args.include_pending:
        params["includePending"] = "1"
    resp = httpx.post(
        f"{args.delivery_url}/cron/telegram-deliveries",
        params=params,
        headers={"Authorization": f"Bearer {args.cron_secret}"},
        timeout=args.timeout_seconds,
    )
    resp.raise_for_status()
    summary = resp.json()
    print(json.dumps(summary, indent=2))
    raise SystemExit(0 if summary.get("failed", 0) == 0 else 1)


if __name__ == "__main__":
    main()
