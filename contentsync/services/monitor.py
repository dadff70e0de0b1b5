# ============================================================
# Module : contentsync/services/monitor.py
# Objet  : Agrégats périodiques, alertes à seuil et santé du cœur.
# Invariants :
#  - une alerte ouverte est unique par (type, message);
#  - une alerte passe de ouverte à résolue une seule fois, jamais automatiquement.
# ============================================================
"""Monitor du cœur de synchronisation.

Le Monitor observe passivement le journal des opérations (`OperationRecorder`) et calcule:

- webhooks: taux de succès, échecs, temps moyen, tentatives armées, échecs terminaux;
- cache: taux de hit/miss des lectures, invalidations, temps moyen d'invalidation;
- opérations: taux d'erreur global, temps de réponse moyen du store, évènements de sécurité.

Les messages d'alerte sont stables par condition (la valeur mesurée va dans `data`), ce qui permet
la déduplication par (type, message) d'une collecte à l'autre.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog

from contentsync.app.metrics import ALERTS_OPEN, set_health_status
from contentsync.core.settings import AlertThresholds
from contentsync.infra.monitoring.recorder import (
    CACHE,
    FETCH,
    READ,
    SECURITY,
    WEBHOOK,
    OperationRecorder,
    SyncRecord,
)

REALTIME_WINDOW_S = 60
DEGRADED_MAX_BREACHES = 2

log = structlog.get_logger(__name__)


class AlertType(str, Enum):
    """Catégories d'alerte."""

    WEBHOOK_FAILURE = "webhook_failure"
    CACHE_PERFORMANCE = "cache_performance"
    API_ERROR = "api_error"
    SLOW_RESPONSE = "slow_response"
    SECURITY_EVENT = "security_event"
    SYSTEM_HEALTH = "system_health"


class Severity(str, Enum):
    """Gravité d'une alerte."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class HealthStatus(str, Enum):
    """Santé dérivée du nombre de seuils franchis."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class Alert:
    """Alerte ouverte ou résolue."""

    type: AlertType
    severity: Severity
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"alert_{uuid.uuid4().hex[:12]}")
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    resolved: bool = False
    resolved_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Représentation JSON."""
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
            "resolved": self.resolved,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass
class Breach:
    """Seuil franchi lors d'une évaluation."""

    type: AlertType
    severity: Severity
    message: str
    data: dict[str, Any]


@dataclass
class WebhookMetrics:
    total_processed: int = 0
    success_rate: float = 100.0
    failure_count: int = 0
    average_processing_time: float = 0.0
    pending_retries: int = 0
    terminal_failures: int = 0


@dataclass
class CacheMetrics:
    hit_rate: float = 0.0
    miss_rate: float = 0.0
    reads: int = 0
    invalidation_count: int = 0
    last_invalidation: str | None = None
    average_invalidation_time: float = 0.0


@dataclass
class OperationMetrics:
    total_operations: int = 0
    error_rate: float = 0.0
    average_response_time: float = 0.0
    security_events: int = 0


@dataclass
class SystemMetrics:
    uptime_s: float = 0.0
    last_health_check: str | None = None
    status: HealthStatus = HealthStatus.HEALTHY


@dataclass
class MonitoringMetrics:
    """Agrégats calculés par `collect()`."""

    webhooks: WebhookMetrics = field(default_factory=WebhookMetrics)
    cache: CacheMetrics = field(default_factory=CacheMetrics)
    operations: OperationMetrics = field(default_factory=OperationMetrics)
    system: SystemMetrics = field(default_factory=SystemMetrics)

    def to_dict(self) -> dict[str, Any]:
        """Représentation JSON."""
        out = asdict(self)
        out["system"]["status"] = self.system.status.value
        return out


def _pct(part: int, total: int) -> float:
    return round(100.0 * part / total, 2) if total else 0.0


def _avg(values: list[float]) -> float:
    return round(sum(values) / len(values), 3) if values else 0.0


def _timings(records: list[SyncRecord], key: str) -> list[float]:
    return [float(r.data[key]) for r in records if r.data.get(key) is not None]


class Monitor:
    """Agrégation périodique, alertes dédupliquées et santé."""

    def __init__(
        self,
        recorder: OperationRecorder,
        thresholds: AlertThresholds | None = None,
        interval_ms: int = 30_000,
        pending_retries: Callable[[], int] | None = None,
    ) -> None:
        """Initialise le Monitor (la collecte périodique démarre avec `start()`)."""
        self.recorder = recorder
        self.thresholds = thresholds or AlertThresholds()
        self.interval_ms = interval_ms
        self._pending_retries = pending_retries or (lambda: 0)
        self._alerts: list[Alert] = []
        self._listeners: list[Callable[[Alert], Any]] = []
        self._started_at = time.time()
        self._task: asyncio.Task | None = None
        self.metrics = MonitoringMetrics()

    # ---------------------------------------------------------------- collect
    def collect(self) -> MonitoringMetrics:
        """Calcule les agrégats à partir des enregistrements récents."""
        webhooks = self.recorder.recent(WEBHOOK)
        caches = self.recorder.recent(CACHE)
        reads = self.recorder.recent(READ)
        fetches = self.recorder.recent(FETCH)
        security = self.recorder.recent(SECURITY, window_s=self.thresholds.security_window_s)

        ok = sum(1 for r in webhooks if r.success)
        wh = WebhookMetrics(
            total_processed=len(webhooks),
            success_rate=_pct(ok, len(webhooks)) if webhooks else 100.0,
            failure_count=len(webhooks) - ok,
            average_processing_time=_avg(_timings(webhooks, "processingTime")),
            pending_retries=int(self._pending_retries()),
            terminal_failures=sum(1 for r in webhooks if r.data.get("terminal")),
        )

        hits = sum(1 for r in reads if r.data.get("cacheStatus") == "hit")
        cache = CacheMetrics(
            hit_rate=_pct(hits, len(reads)),
            miss_rate=_pct(len(reads) - hits, len(reads)),
            reads=len(reads),
            invalidation_count=len(caches),
            last_invalidation=(
                datetime.fromtimestamp(caches[-1].ts, UTC).isoformat() if caches else None
            ),
            average_invalidation_time=_avg(_timings(caches, "processingTime")),
        )

        operations = [*webhooks, *caches, *reads, *fetches]
        failed = sum(1 for r in operations if not r.success)
        source_timings = _timings(fetches, "responseTime") + [
            float(r.data["responseTime"])
            for r in reads
            if r.data.get("cacheStatus") == "miss" and r.data.get("responseTime") is not None
        ]
        ops = OperationMetrics(
            total_operations=len(operations),
            error_rate=_pct(failed, len(operations)),
            average_response_time=_avg(source_timings),
            security_events=len(security),
        )

        metrics = MonitoringMetrics(webhooks=wh, cache=cache, operations=ops)
        metrics.system = SystemMetrics(
            uptime_s=round(time.time() - self._started_at, 3),
            last_health_check=datetime.now(UTC).isoformat(),
            status=self._status_for(len(self.evaluate(metrics))),
        )
        self.metrics = metrics
        set_health_status(metrics.system.status.value)
        return metrics

    def evaluate(self, metrics: MonitoringMetrics) -> list[Breach]:
        """Liste des seuils franchis pour des agrégats donnés."""
        t = self.thresholds
        breaches: list[Breach] = []
        wh = metrics.webhooks
        if wh.total_processed and (100.0 - wh.success_rate) > t.webhook_failure_pct:
            breaches.append(
                Breach(
                    AlertType.WEBHOOK_FAILURE,
                    Severity.HIGH,
                    "Webhook failure rate above threshold",
                    {"failureRate": round(100.0 - wh.success_rate, 2),
                     "threshold": t.webhook_failure_pct},
                )
            )
        if metrics.cache.reads and metrics.cache.hit_rate < t.cache_hit_rate_floor_pct:
            breaches.append(
                Breach(
                    AlertType.CACHE_PERFORMANCE,
                    Severity.MEDIUM,
                    "Cache hit rate below threshold",
                    {"hitRate": metrics.cache.hit_rate, "threshold": t.cache_hit_rate_floor_pct},
                )
            )
        ops = metrics.operations
        if ops.total_operations and ops.error_rate > t.error_rate_ceiling_pct:
            breaches.append(
                Breach(
                    AlertType.API_ERROR,
                    Severity.HIGH,
                    "Operation error rate above threshold",
                    {"errorRate": ops.error_rate, "threshold": t.error_rate_ceiling_pct},
                )
            )
        if ops.average_response_time > t.response_time_ceiling_ms:
            breaches.append(
                Breach(
                    AlertType.SLOW_RESPONSE,
                    Severity.MEDIUM,
                    "Average response time above threshold",
                    {"responseTime": ops.average_response_time,
                     "threshold": t.response_time_ceiling_ms},
                )
            )
        if ops.security_events > t.security_events_ceiling:
            breaches.append(
                Breach(
                    AlertType.SECURITY_EVENT,
                    Severity.CRITICAL,
                    "Security events above threshold",
                    {"eventCount": ops.security_events,
                     "threshold": t.security_events_ceiling,
                     "windowS": t.security_window_s},
                )
            )
        return breaches

    @staticmethod
    def _status_for(breach_count: int) -> HealthStatus:
        if breach_count == 0:
            return HealthStatus.HEALTHY
        if breach_count <= DEGRADED_MAX_BREACHES:
            return HealthStatus.DEGRADED
        return HealthStatus.UNHEALTHY

    # ----------------------------------------------------------------- alerts
    def check_alerts(self) -> list[Alert]:
        """Collecte, compare aux seuils et ouvre les alertes nouvelles; retourne ces dernières."""
        metrics = self.collect()
        created: list[Alert] = []
        for breach in self.evaluate(metrics):
            alert = self._create_alert(breach.type, breach.severity, breach.message, breach.data)
            if alert is not None:
                created.append(alert)
        if metrics.system.status is HealthStatus.UNHEALTHY:
            alert = self._create_alert(
                AlertType.SYSTEM_HEALTH,
                Severity.CRITICAL,
                "System health is unhealthy",
                {"breaches": len(self.evaluate(metrics))},
            )
            if alert is not None:
                created.append(alert)
        return created

    def _create_alert(
        self, type_: AlertType, severity: Severity, message: str, data: dict[str, Any]
    ) -> Alert | None:
        for alert in self._alerts:
            if not alert.resolved and alert.type is type_ and alert.message == message:
                return None
        alert = Alert(type=type_, severity=severity, message=message, data=data)
        self._alerts.append(alert)
        ALERTS_OPEN.labels(type=type_.value).inc()
        logger = log.bind(alert_id=alert.id, alert_type=type_.value, severity=severity.value)
        if severity in (Severity.HIGH, Severity.CRITICAL):
            logger.error("alert_created", message=message, data=data)
        else:
            logger.warning("alert_created", message=message, data=data)
        for listener in list(self._listeners):
            try:
                listener(alert)
            except Exception:
                log.exception("alert_listener_error", alert_id=alert.id)
        return alert

    def resolve_alert(self, alert_id: str) -> bool:
        """Résout une alerte ouverte; False si inconnue ou déjà résolue."""
        for alert in self._alerts:
            if alert.id == alert_id:
                if alert.resolved:
                    return False
                alert.resolved = True
                alert.resolved_at = datetime.now(UTC)
                ALERTS_OPEN.labels(type=alert.type.value).dec()
                log.info("alert_resolved", alert_id=alert_id, message=alert.message)
                return True
        return False

    def get_active_alerts(self) -> list[Alert]:
        """Alertes ouvertes."""
        return [a for a in self._alerts if not a.resolved]

    def get_all_alerts(self) -> list[Alert]:
        """Toutes les alertes, ouvertes et résolues."""
        return list(self._alerts)

    def on_alert(self, listener: Callable[[Alert], Any]) -> Callable[[], None]:
        """Abonne un listener aux nouvelles alertes; retourne le désabonnement."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    def update_thresholds(self, **changes: Any) -> AlertThresholds:
        """Met à jour les seuils (noms de champs de `AlertThresholds`)."""
        known = {f.name for f in fields(AlertThresholds)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"unknown thresholds: {sorted(unknown)}")
        for name, value in changes.items():
            setattr(self.thresholds, name, value)
        log.info("alert_thresholds_updated", **changes)
        return self.thresholds

    # ---------------------------------------------------------------- exports
    def get_health_status(self) -> dict[str, Any]:
        """Santé courante: statut, agrégats et alertes ouvertes."""
        metrics = self.collect()
        return {
            "status": metrics.system.status.value,
            "metrics": metrics.to_dict(),
            "activeAlerts": [a.to_dict() for a in self.get_active_alerts()],
        }

    def get_realtime_metrics(self) -> dict[str, Any]:
        """Activité de la dernière minute (webhooks, invalidations)."""
        webhooks = self.recorder.recent(WEBHOOK, window_s=REALTIME_WINDOW_S)
        caches = self.recorder.recent(CACHE, window_s=REALTIME_WINDOW_S)
        ok = sum(1 for r in webhooks if r.success)
        return {
            "windowS": REALTIME_WINDOW_S,
            "webhooks": {
                "count": len(webhooks),
                "successRate": _pct(ok, len(webhooks)) if webhooks else 100.0,
                "averageProcessingTime": _avg(_timings(webhooks, "processingTime")),
            },
            "invalidations": {
                "count": len(caches),
                "averageProcessingTime": _avg(_timings(caches, "processingTime")),
            },
        }

    def export_metrics(self) -> str:
        """Instantané JSON des agrégats, alertes et seuils."""
        metrics = self.collect()
        payload = {
            "timestamp": datetime.now(UTC).isoformat(),
            "metrics": metrics.to_dict(),
            "alerts": [a.to_dict() for a in self._alerts],
            "thresholds": asdict(self.thresholds),
            "realtime": self.get_realtime_metrics(),
        }
        return json.dumps(payload, default=str)

    # ------------------------------------------------------------------ cycle
    async def start(self) -> None:
        """Lance la collecte périodique."""
        if self._task is None:
            self._task = asyncio.create_task(self._loop())
            log.info("monitor_started", interval_ms=self.interval_ms)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_ms / 1000.0)
            try:
                self.check_alerts()
            except Exception:
                log.exception("monitor_collect_failed")

    async def stop(self) -> None:
        """Arrête la collecte périodique."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            log.info("monitor_stopped")
