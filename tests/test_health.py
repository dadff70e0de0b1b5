"""Tests des endpoints d'exploitation (santé, monitoring, polling, contenu, métriques)."""

from __future__ import annotations

from contentsync.core.http_constants import HTTP_NOT_FOUND, HTTP_OK
from contentsync.domain.events import ContentType
from tests.fakes import make_payload

FLOOR_MS = 1000


def test_health(client) -> None:
    """Teste que l'endpoint de santé retourne un statut sain et l'état des composants."""
    r = client.get("/health")
    assert r.status_code == HTTP_OK
    body = r.json()
    assert body["status"] == "healthy"
    assert body["storage"] == "memory"
    assert body["activeAlerts"] == []
    assert body["poller"]["isPolling"] is False
    assert body["cache"]["entries"] == 0
    assert "webhooks" in body["metrics"]


def test_monitoring_alert_lifecycle(client) -> None:
    """Ouverture par seuils, listage puis résolution unique d'une alerte."""
    for i in range(3):
        client.post("/webhooks/content-sync", json=make_payload(timestamp="2020-01-01T00:00:0%dZ" % i))

    created = client.post("/monitoring/alerts/check").json()["created"]
    assert {a["type"] for a in created} >= {"webhook_failure"}
    active = client.get("/monitoring/alerts").json()["alerts"]
    assert len(active) == len(created)

    alert_id = created[0]["id"]
    r = client.post(f"/monitoring/alerts/{alert_id}/resolve")
    assert r.status_code == HTTP_OK
    assert r.json() == {"id": alert_id, "resolved": True}

    again = client.post(f"/monitoring/alerts/{alert_id}/resolve")
    assert again.status_code == HTTP_NOT_FOUND
    assert again.json()["code"] == "NOT_FOUND"
    everything = client.get("/monitoring/alerts", params={"include_resolved": True}).json()
    assert len(everything["alerts"]) == len(created)


def test_monitoring_export_and_realtime(client) -> None:
    """Export JSON des agrégats et vue temps réel."""
    client.post("/webhooks/content-sync", json=make_payload())
    export = client.get("/monitoring/export")
    assert export.status_code == HTTP_OK
    assert export.headers["content-type"].startswith("application/json")
    assert export.json()["metrics"]["webhooks"]["total_processed"] == 1
    assert client.get("/monitoring/realtime").json()["webhooks"]["count"] == 1


def test_poller_routes(client, source) -> None:
    """Statut, vérification forcée et changement de fréquence du polling."""
    status = client.get("/poller/status").json()
    assert status["isPolling"] is False

    first = client.post("/poller/force-check").json()
    assert first["checked"] is False
    source.upsert(ContentType.ARTICLE, "new-post")
    second = client.post("/poller/force-check").json()
    assert second["checked"] is True
    assert second["changes"] == {"article": [{"id": "new-post", "action": "created"}]}

    r = client.put("/poller/frequency", json={"intervalMs": 10})
    assert r.status_code == HTTP_OK
    assert r.json() == {"pollingFrequencyMs": FLOOR_MS}


def test_content_routes(client, source) -> None:
    """Lectures consommateur: liste publiée, élément, 404 pour l'inconnu."""
    source.upsert(ContentType.CASE_STUDY, "acme", title="Acme")
    source.upsert(ContentType.CASE_STUDY, "beta", status="draft")

    rows = client.get("/content/case-study").json()["results"]
    assert [row["id"] for row in rows] == ["acme"]
    assert client.get("/content/case-study/acme").json()["data"]["title"] == "Acme"
    assert client.get("/content/case-study/beta").status_code == HTTP_NOT_FOUND
    assert client.get("/content/podcast").status_code == HTTP_NOT_FOUND


def test_metrics_endpoint(client) -> None:
    """Les métriques Prometheus sont exposées au format texte."""
    client.post("/webhooks/content-sync", json=make_payload())
    r = client.get("/metrics")
    assert r.status_code == HTTP_OK
    assert "sync_webhooks_total" in r.text
    assert "http_requests_total" in r.text
