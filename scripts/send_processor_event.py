"""Post a processor webhook event to the billing service.

Meant for local runs with the simulated processor backend, where the webhook
endpoint accepts unsigned events. Handy for exercising paid/failed invoices
and payout enablement by hand.
"""

import argparse
import json
from pathlib import Path
from uuid import uuid4

import httpx

SHORTCUTS = {
    "invoice-paid": ("invoice.paid", "statement_id"),
    "invoice-failed": ("invoice.payment_failed", "statement_id"),
    "payouts-enabled": ("account.updated", "account_id"),
}


def build_event(kind: str, target_id: str) -> dict:
    """Build a minimal event for one of the shortcut kinds."""

    event_type, metadata_key = SHORTCUTS[kind]
    obj = {"id": f"obj_{uuid4().hex[:12]}", "metadata": {metadata_key: target_id}}
    data = {"object": obj}
    if event_type == "account.updated":
        obj["payouts_enabled"] = True
        data["previous_attributes"] = {"payouts_enabled": False}
    return {"id": f"evt_{uuid4().hex}", "type": event_type, "data": data}


def main() -> None:
    """Parse CLI args and post one event."""

    parser = argparse.ArgumentParser(description="Send one processor webhook event.")
    parser.add_argument("--base-url", default="http://localhost:8020")
    parser.add_argument("--kind", choices=sorted(SHORTCUTS), default=None)
    parser.add_argument("--id", dest="target_id", default=None, help="statement_id or account_id for --kind")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to a full event JSON")
    args = parser.parse_args()

    if bool(args.kind) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --kind or --file")
    if args.kind:
        if not args.target_id:
            raise SystemExit("--id is required with --kind")
        event = build_event(args.kind, args.target_id)
    else:
        event = json.loads(Path(args.json_file).read_text())

    with httpx.Client(timeout=10.0) as client:
        resp = client.post(f"{args.base_url}/webhooks/processor", json=event)
    print(f"HTTP {resp.status_code}: {resp.text}")


if __name__ == "__main__":
    main()
