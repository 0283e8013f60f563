"""Register (or inspect) the bot webhook pointing at the linking service."""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for webhook registration."""

    parser = argparse.ArgumentParser(description="Call Telegram setWebhook / getWebhookInfo.")
    parser.add_argument("--token", default=os.environ.get("TELEGRAM_BOT_TOKEN", ""))
    parser.add_argument("--api-base", default=os.environ.get("TELEGRAM_API_BASE", "https://api.telegram.org"))
    parser.add_argument("--url", default=None, help="Public HTTPS URL of POST /telegram/webhook")
    parser.add_argument("--secret", default=os.environ.get("TELEGRAM_WEBHOOK_SECRET", ""))
    parser.add_argument("--drop-pending-updates", action="store_true")
    parser.add_argument("--info", action="store_true", help="Only print getWebhookInfo")
    args = parser.parse_args()

    if not args.token:
        parser.error("--token or TELEGRAM_BOT_TOKEN is required")
    base = f"{args.api_base.rstrip('/')}/bot{args.token}"

    if args.info:
        resp = httpx.get(f"{base}/getWebhookInfo", timeout=10.0)
    else:
        if not args.url or not args.secret:
            parser.error("--url and --secret (or TELEGRAM_WEBHOOK_SECRET) are required")
        resp = httpx.post(
            f"{base}/setWebhook",
            json={
                "url": args.url,
                "secret_token": args.secret,
                "allowed_updates": ["message", "callback_query"],
                "drop_pending_updates": args.drop_pending_updates,
            },
            timeout=10.0,
        )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
