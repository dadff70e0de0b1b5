"""Tests de la surface HTTP de réception des webhooks."""

from __future__ import annotations

from contentsync.core.http_constants import (
    HTTP_BAD_REQUEST,
    HTTP_NOT_FOUND,
    HTTP_OK,
    HTTP_PAYLOAD_TOO_LARGE,
    HTTP_UNAUTHORIZED,
    HTTP_UNPROCESSABLE_ENTITY,
    HTTP_UNSUPPORTED_MEDIA_TYPE,
)
from contentsync.domain.events import ChangeEvent, ContentType
from contentsync.infra.monitoring.recorder import SECURITY
from contentsync.services.webhook_processor import compute_signature
from tests.fakes import TEST_SECRET, UpdateCollector, make_payload

WEBHOOK_URL = "/webhooks/content-sync"
REQUEST_ID = "req-test-1"


def _signed_headers(payload: dict) -> dict[str, str]:
    signature = compute_signature(TEST_SECRET, ChangeEvent.from_payload(payload))
    return {"X-Webhook-Signature": signature, "X-Request-ID": REQUEST_ID}


def test_publish_webhook_invalidates_and_broadcasts(client, container) -> None:
    """publish article A1 signé: invalidation immédiate, une diffusion, succès enregistré."""
    collector = UpdateCollector()
    container.core.on_cache_update(collector)
    payload = make_payload("publish", "article", "A1")

    r = client.post(WEBHOOK_URL, json=payload, headers=_signed_headers(payload))

    assert r.status_code == HTTP_OK
    body = r.json()
    assert body["success"] is True
    assert body["cacheInvalidated"] is True
    assert body["requestId"] == REQUEST_ID
    assert body["webhookId"].startswith("wh_article_A1_publish_")
    assert r.headers["X-Request-ID"] == REQUEST_ID
    assert [e.keys for e in collector.events] == [("article:A1", "article:all")]
    assert container.monitor.collect().webhooks.success_rate == 100.0


def test_duplicate_delivery_returns_ok(client) -> None:
    """La re-livraison d'un webhook traité répond 200 avec `duplicate`."""
    payload = make_payload("delete", "case-study", "acme")
    first = client.post(WEBHOOK_URL, json=payload)
    second = client.post(WEBHOOK_URL, json=payload)
    assert first.status_code == second.status_code == HTTP_OK
    assert second.json()["duplicate"] is True


def test_unsupported_media_type(client) -> None:
    """Un corps non JSON est refusé avant tout traitement."""
    r = client.post(WEBHOOK_URL, content=b"action=publish", headers={"Content-Type": "text/plain"})
    assert r.status_code == HTTP_UNSUPPORTED_MEDIA_TYPE
    assert r.json()["code"] == "UNSUPPORTED_MEDIA_TYPE"


def test_payload_too_large(client, container) -> None:
    """Une charge utile au-delà de la limite est refusée (413)."""
    limit = container.settings.WEBHOOK_MAX_PAYLOAD_BYTES
    payload = make_payload(data={"body": "x" * (limit + 1)})
    r = client.post(WEBHOOK_URL, json=payload)
    assert r.status_code == HTTP_PAYLOAD_TOO_LARGE
    assert r.json()["code"] == "PAYLOAD_TOO_LARGE"


def test_invalid_json_is_a_security_event(client, container) -> None:
    """JSON invalide: 400 et évènement de sécurité de faible gravité."""
    r = client.post(
        WEBHOOK_URL, content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert r.status_code == HTTP_BAD_REQUEST
    assert r.json()["errorCode"] == "validation_error"
    events = container.recorder.recent(SECURITY)
    assert [(e.data["event"], e.data["severity"]) for e in events] == [("invalid_json", "low")]


def test_missing_field_is_rejected(client) -> None:
    """Champ requis manquant: 400 avec le nom du champ."""
    payload = make_payload()
    del payload["contentId"]
    r = client.post(WEBHOOK_URL, json=payload)
    assert r.status_code == HTTP_BAD_REQUEST
    assert "contentId" in r.json()["errors"][0]
    assert r.json()["webhookId"].startswith("wh_rejected_")


def test_bad_signature_is_unauthorized(client, container) -> None:
    """Signature invalide: 401, aucune tentative armée."""
    payload = make_payload("publish", "article", "A1")
    r = client.post(WEBHOOK_URL, json=payload, headers={"X-Webhook-Signature": "sha256=00"})
    assert r.status_code == HTTP_UNAUTHORIZED
    assert r.json()["errorCode"] == "authenticity_error"
    assert container.processor.pending_retries() == 0


def test_stale_event_is_rejected(client) -> None:
    """Évènement trop ancien: 400 `stale_event`."""
    payload = make_payload(timestamp="2020-01-01T00:00:00Z")
    r = client.post(WEBHOOK_URL, json=payload)
    assert r.status_code == HTTP_BAD_REQUEST
    assert r.json()["errorCode"] == "stale_event"


def test_processing_failure_schedules_retry(client, container, source) -> None:
    """Échec de rechargement: 422 et nouvelle tentative armée."""
    source.fail_next = 100
    payload = make_payload("publish", "article", "A1")
    r = client.post(WEBHOOK_URL, json=payload)
    assert r.status_code == HTTP_UNPROCESSABLE_ENTITY
    body = r.json()
    assert body["errorCode"] == "processing_error"
    assert body["retryScheduled"] is True


def test_unpublish_removes_content_from_reads(client, source) -> None:
    """Un élément dépublié disparaît immédiatement des lectures consommateur."""
    source.upsert(ContentType.ARTICLE, "A1", title="Hello")
    assert client.get("/content/article/A1").status_code == HTTP_OK
    assert [row["id"] for row in client.get("/content/article").json()["results"]] == ["A1"]

    source.set_status(ContentType.ARTICLE, "A1", "draft")
    payload = make_payload("unpublish", "article", "A1")
    assert client.post(WEBHOOK_URL, json=payload).status_code == HTTP_OK

    assert client.get("/content/article/A1").status_code == HTTP_NOT_FOUND
    assert client.get("/content/article").json()["results"] == []


def test_webhook_health(client) -> None:
    """La santé de la surface webhook expose les tentatives armées."""
    r = client.get(f"{WEBHOOK_URL}/health")
    assert r.status_code == HTTP_OK
    assert r.json() == {"status": "ok", "pendingRetries": 0, "signatureRequired": False}
