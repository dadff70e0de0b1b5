"""Envoie un webhook de changement signé au service (test manuel d'intégration)."""

from __future__ import annotations

import argparse
import sys
from datetime import UTC, datetime

import httpx

from contentsync.domain.events import ChangeEvent
from contentsync.services.webhook_processor import compute_signature


def build_payload(action: str, content_type: str, content_id: str, status: str | None) -> dict:
    """Charge utile webhook au format CMS."""
    payload = {
        "action": action,
        "contentType": content_type,
        "contentId": content_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }
    if status:
        payload["data"] = {"status": status}
    return payload


def main() -> int:
    """Signe et envoie la notification; code de sortie non nul si le service la refuse."""
    parser = argparse.ArgumentParser(description="Send a signed content-sync webhook")
    parser.add_argument("action", choices=["create", "update", "delete", "publish", "unpublish"])
    parser.add_argument("content_type", choices=["article", "case-study"])
    parser.add_argument("content_id")
    parser.add_argument("--status", default=None)
    parser.add_argument("--url", default="http://localhost:8000/webhooks/content-sync")
    parser.add_argument("--secret", default="dev-webhook-secret-change-me")
    args = parser.parse_args()

    payload = build_payload(args.action, args.content_type, args.content_id, args.status)
    signature = compute_signature(args.secret, ChangeEvent.from_payload(payload))
    r = httpx.post(args.url, json=payload, headers={"X-Webhook-Signature": signature}, timeout=10)
    print(r.status_code, r.text)
    return 0 if r.status_code == 200 else 1


if __name__ == "__main__":
    sys.exit(main())
