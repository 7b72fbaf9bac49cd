from __future__ import annotations

import argparse
import json
import sys
import time
from uuid import uuid4

import httpx


def build_payload(provider: str, *, channel_phone: str, from_phone: str, text: str, message_id: str) -> dict:
    # Both formats share the message object; the Cloud API wraps it with channel metadata.
    message = {
        "from": from_phone.lstrip("+"),
        "id": message_id,
        "timestamp": str(int(time.time())),
        "type": "text",
        "text": {"body": text},
    }
    if provider == "360dialog":
        return {"messages": [{**message, "to": channel_phone.lstrip("+")}]}
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "simulated",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"display_phone_number": channel_phone.lstrip("+")},
                            "messages": [message],
                        },
                    }
                ],
            }
        ],
    }


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Post a sample WhatsApp webhook to a running API")
    parser.add_argument("--url", default="http://localhost:8000", help="API base URL")
    parser.add_argument("--provider", default="360dialog", choices=["360dialog", "cloud_api"])
    parser.add_argument("--channel-phone", required=True, help="Tenant channel number")
    parser.add_argument("--from-phone", default="+212611111111", help="Customer number")
    parser.add_argument("--text", default="What are your opening hours?")
    parser.add_argument("--message-id", default=None, help="Reuse an id to exercise deduplication")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    payload = build_payload(
        args.provider,
        channel_phone=args.channel_phone,
        from_phone=args.from_phone,
        text=args.text,
        message_id=args.message_id or f"wamid.{uuid4().hex}",
    )
    try:
        response = httpx.post(f"{args.url}/webhooks/whatsapp/{args.provider}", json=payload, timeout=10.0)
    except httpx.HTTPError as exc:
        print(f"simulate_webhook failed: {exc}", file=sys.stderr)
        return 1
    print(json.dumps({"status_code": response.status_code, "body": response.json()}, indent=2))
    return 0 if response.status_code == 200 else 1


if __name__ == "__main__":
    raise SystemExit(main())
