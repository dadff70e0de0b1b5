"""Journal structuré des opérations observé par le Monitor.

Chaque composant du cœur (processeur de webhooks, moteur d'invalidation, détecteur de dérive,
lecteurs) émet ses enregistrements ici. Le journal:

- conserve les N derniers enregistrements dans un buffer circulaire (agrégats du Monitor);
- journalise chaque enregistrement via structlog;
- alimente les compteurs Prometheus correspondants.

Catégories: `webhook`, `cache`, `read`, `fetch`, `security`.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog

from contentsync.app.metrics import (
    CACHE_INVALIDATION_LATENCY,
    CACHE_INVALIDATIONS,
    CACHE_READS,
    POLL_FETCH_LATENCY,
    SYNC_SECURITY_EVENTS,
    SYNC_WEBHOOK_LATENCY,
    SYNC_WEBHOOK_REJECTIONS,
    SYNC_WEBHOOKS_TOTAL,
)
from contentsync.domain.events import ProcessingResult

WEBHOOK = "webhook"
CACHE = "cache"
READ = "read"
FETCH = "fetch"
SECURITY = "security"
CATEGORIES = (WEBHOOK, CACHE, READ, FETCH, SECURITY)

log = structlog.get_logger(__name__)


@dataclass
class SyncRecord:
    """Enregistrement d'opération horodaté."""

    category: str
    data: dict[str, Any]
    ts: float = field(default_factory=time.time)

    @property
    def success(self) -> bool:
        """Succès de l'opération (True par défaut pour les catégories sans échec)."""
        return bool(self.data.get("success", True))


class OperationRecorder:
    """Buffers circulaires d'enregistrements structurés, un par catégorie.

    Chaque catégorie a sa propre capacité: un trafic de lecture soutenu n'évince pas les
    évènements de sécurité comptés sur une fenêtre longue.
    """

    def __init__(self, max_entries: int = 1000) -> None:
        """Initialise les buffers avec une capacité bornée par catégorie."""
        self.max_entries = max(1, int(max_entries))
        self._records: dict[str, deque[SyncRecord]] = {
            category: deque(maxlen=self.max_entries) for category in CATEGORIES
        }

    def _append(self, category: str, data: dict[str, Any]) -> SyncRecord:
        record = SyncRecord(category=category, data=data)
        self._records[category].append(record)
        return record

    def record_webhook(
        self,
        result: ProcessingResult,
        event: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> SyncRecord:
        """Enregistre le résultat d'une invocation du processeur."""
        data = result.to_dict()
        data["action"] = (event or {}).get("action")
        data["contentType"] = (event or {}).get("contentType")
        data["source"] = (event or {}).get("source", "webhook")
        record = self._append(WEBHOOK, data)

        if result.duplicate:
            outcome = "duplicate"
        elif result.success:
            outcome = "success"
        elif result.error_code and result.error_code != "processing_error":
            outcome = "rejected"
            SYNC_WEBHOOK_REJECTIONS.labels(reason=result.error_code).inc()
        else:
            outcome = "failed"
        SYNC_WEBHOOKS_TOTAL.labels(source=str(data["source"]), result=outcome).inc()
        SYNC_WEBHOOK_LATENCY.labels(action=str(data["action"] or "unknown")).observe(
            result.processing_time_ms / 1000.0
        )

        logger = log.bind(webhook_id=result.webhook_id, request_id=request_id)
        if result.success:
            logger.info("webhook_processed", result=outcome, **_compact(data))
        else:
            logger.error("webhook_failed", result=outcome, **_compact(data))
        return record

    def record_cache(
        self,
        keys: list[str],
        trigger: str,
        success: bool,
        strength: str,
        content_type: str,
        processing_time_ms: float = 0.0,
    ) -> SyncRecord:
        """Enregistre une opération d'invalidation de cache."""
        data = {
            "operation": "invalidate",
            "keys": list(keys),
            "trigger": trigger,
            "success": success,
            "strength": strength,
            "contentType": content_type,
            "processingTime": processing_time_ms,
        }
        record = self._append(CACHE, data)
        CACHE_INVALIDATIONS.labels(
            content_type=content_type,
            strength=strength,
            result="success" if success else "failed",
        ).inc()
        CACHE_INVALIDATION_LATENCY.labels(strength=strength).observe(processing_time_ms / 1000.0)
        if success:
            log.info("cache_invalidated", **data)
        else:
            log.error("cache_invalidation_failed", **data)
        return record

    def record_read(
        self,
        content_type: str,
        key: str,
        status: str,
        latency_ms: float | None = None,
        success: bool = True,
    ) -> SyncRecord:
        """Enregistre une lecture consommateur (hit/miss et latence source)."""
        data = {
            "key": key,
            "cacheStatus": status,
            "contentType": content_type,
            "responseTime": latency_ms,
            "success": success,
        }
        record = self._append(READ, data)
        CACHE_READS.labels(content_type=content_type, status=status).inc()
        log.debug("cache_read", **data)
        return record

    def record_fetch(
        self, success: bool, duration_ms: float, error: str | None = None, **extra: Any
    ) -> SyncRecord:
        """Enregistre une lecture d'instantané du store faisant autorité."""
        data: dict[str, Any] = {"success": success, "responseTime": duration_ms, **extra}
        if error:
            data["error"] = error
        record = self._append(FETCH, data)
        POLL_FETCH_LATENCY.observe(duration_ms / 1000.0)
        if success:
            log.debug("snapshot_fetched", **data)
        else:
            log.warning("snapshot_fetch_failed", **data)
        return record

    def record_security(
        self,
        event: str,
        severity: str = "medium",
        details: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> SyncRecord:
        """Enregistre un évènement de sécurité (signature invalide, rejeu, JSON invalide)."""
        data = {"event": event, "severity": severity, "details": details or {}}
        record = self._append(SECURITY, data)
        SYNC_SECURITY_EVENTS.labels(severity=severity).inc()
        # `event` est le nom réservé du message structlog
        logger = log.bind(request_id=request_id, kind=event, severity=severity)
        if severity == "high":
            logger.error("security_event", details=data["details"])
        else:
            logger.warning("security_event", details=data["details"])
        return record

    def recent(
        self,
        category: str | None = None,
        window_s: float | None = None,
        limit: int | None = None,
    ) -> list[SyncRecord]:
        """Retourne les enregistrements récents, filtrés par catégorie et fenêtre."""
        records: Iterable[SyncRecord]
        if category:
            records = self._records[category]
        else:
            records = sorted(
                (r for bucket in self._records.values() for r in bucket), key=lambda r: r.ts
            )
        if window_s is not None:
            cutoff = time.time() - window_s
            records = (r for r in records if r.ts >= cutoff)
        out = list(records)
        if limit is not None:
            out = out[-limit:] if limit > 0 else []
        return out

    def clear(self) -> None:
        """Vide les buffers (tests, maintenance)."""
        for bucket in self._records.values():
            bucket.clear()

    def __len__(self) -> int:
        """Nombre d'enregistrements conservés."""
        return sum(len(bucket) for bucket in self._records.values())


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None and k != "webhookId"}
