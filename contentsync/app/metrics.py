"""
Métriques Prometheus pour le cœur de synchronisation.

Ce module définit toutes les métriques Prometheus utilisées pour le monitoring des webhooks, du
détecteur de dérive, de l'invalidation de cache et du bus de diffusion.
"""

import time

from fastapi import APIRouter, Request
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

metrics_router = APIRouter()

REQUEST_COUNT = Counter(
    "http_requests_total", "Total HTTP requests", ["method", "route", "status"]
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds", "Latency of HTTP requests", ["route"]
)

# Webhook processing
SYNC_WEBHOOKS_TOTAL = Counter(
    "sync_webhooks_total",
    "Change events processed",
    ["source", "result"],
)
SYNC_WEBHOOK_LATENCY = Histogram(
    "sync_webhook_processing_seconds",
    "Processing time of change events",
    ["action"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)
SYNC_WEBHOOK_REJECTIONS = Counter(
    "sync_webhook_rejections_total",
    "Change events rejected without retry",
    ["reason"],
)
SYNC_WEBHOOK_RETRIES = Counter(
    "sync_webhook_retries_total",
    "Retries scheduled for failed change events",
    ["content_type"],
)
SYNC_WEBHOOK_TERMINAL_FAILURES = Counter(
    "sync_webhook_terminal_failures_total",
    "Change events that exhausted their retries",
    ["content_type"],
)
SYNC_PENDING_RETRIES = Gauge(
    "sync_pending_retries",
    "Retries currently armed",
)
SYNC_SECURITY_EVENTS = Counter(
    "sync_security_events_total",
    "Security events (bad signatures, replays, malformed payloads)",
    ["severity"],
)

# Cache invalidation
CACHE_INVALIDATIONS = Counter(
    "sync_cache_invalidations_total",
    "Cache invalidations",
    ["content_type", "strength", "result"],
)
CACHE_INVALIDATION_LATENCY = Histogram(
    "sync_cache_invalidation_seconds",
    "Latency of cache invalidations",
    ["strength"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
)
CACHE_READS = Counter(
    "sync_cache_reads_total",
    "Consumer reads served by the local cache",
    ["content_type", "status"],
)
CACHE_REFETCH_COLLAPSED = Counter(
    "sync_cache_refetch_collapsed_total",
    "Refetches joined instead of started",
)

# Drift detection
POLL_TICKS = Counter(
    "sync_poll_ticks_total",
    "Drift detector ticks",
    ["result"],
)
POLL_FETCH_LATENCY = Histogram(
    "sync_poll_fetch_seconds",
    "Latency of snapshot fetches",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
)
POLL_DRIFT_CHANGES = Counter(
    "sync_poll_drift_changes_total",
    "Changes detected by snapshot diff",
    ["content_type", "kind"],
)
POLL_SUSPENDED = Gauge(
    "sync_poll_suspended",
    "1 while the drift detector is suspended after repeated failures",
)

# Broadcast
BROADCAST_DELIVERIES = Counter(
    "sync_broadcast_deliveries_total",
    "Broadcast messages delivered",
    ["direction", "result"],
)
BROADCAST_LISTENER_ERRORS = Counter(
    "sync_broadcast_listener_errors_total",
    "Listener exceptions swallowed during fan-out",
)

# Monitoring
ALERTS_OPEN = Gauge(
    "sync_alerts_open",
    "Open alerts by type",
    ["type"],
)
SYNC_HEALTH_STATUS = Gauge(
    "sync_health_status",
    "1 for the current health status, 0 otherwise",
    ["status"],
)


def set_health_status(status: str) -> None:
    """Positionne la jauge de santé (une seule valeur à 1)."""
    for s in ("healthy", "degraded", "unhealthy"):
        SYNC_HEALTH_STATUS.labels(status=s).set(1 if s == status else 0)


@metrics_router.get("/metrics")
def metrics():
    """
    Expose les métriques Prometheus au format texte.

    Returns:
        Response: Réponse HTTP contenant les métriques au format Prometheus.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Middleware Prometheus pour mesurer les métriques HTTP.

    Collecte les métriques de comptage des requêtes et de latence par route pour l'exposition
    Prometheus.
    """

    async def dispatch(self, request: Request, call_next):
        """
        Traite une requête HTTP et collecte les métriques.

        Args:
            request: Requête HTTP entrante.
            call_next: Fonction pour appeler le middleware suivant.

        Returns:
            Response: Réponse HTTP avec métriques collectées.
        """
        start = time.perf_counter()
        response: Response = await call_next(request)
        route = request.scope.get("route")
        route_label = getattr(route, "path", None) or "unmatched"
        REQUEST_COUNT.labels(request.method, route_label, str(response.status_code)).inc()
        REQUEST_LATENCY.labels(route_label).observe(time.perf_counter() - start)
        return response
