"""Façade du cœur de synchronisation.

Assemble le processeur de webhooks, le détecteur de dérive, le moteur d'invalidation, le bus de
diffusion et le Monitor par injection explicite, et porte leur cycle de vie (`start`/`stop`).
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog

from contentsync.domain.events import ChangeEvent, ContentType, ProcessingResult
from contentsync.infra.broadcast import BroadcastBus, UpdateEvent
from contentsync.infra.monitoring.recorder import OperationRecorder
from contentsync.services.drift_detector import DriftDetector
from contentsync.services.invalidation import InvalidationEngine
from contentsync.services.monitor import Monitor
from contentsync.services.webhook_processor import WebhookProcessor

log = structlog.get_logger(__name__)


class ContentSyncCore:
    """Point d'entrée unique des collaborateurs externes."""

    def __init__(
        self,
        processor: WebhookProcessor,
        detector: DriftDetector,
        engine: InvalidationEngine,
        bus: BroadcastBus,
        monitor: Monitor,
        recorder: OperationRecorder,
        polling_enabled: bool = True,
    ) -> None:
        """Assemble des composants déjà construits (voir `Container`)."""
        self.processor = processor
        self.detector = detector
        self.engine = engine
        self.bus = bus
        self.monitor = monitor
        self.recorder = recorder
        self.polling_enabled = polling_enabled
        self.started = False

    async def start(self) -> None:
        """Démarre le bus, le Monitor puis le détecteur de dérive."""
        if self.started:
            return
        await self.bus.start()
        await self.monitor.start()
        if self.polling_enabled:
            await self.detector.start()
        self.started = True
        log.info("content_sync_started", polling=self.polling_enabled)

    async def stop(self) -> None:
        """Arrête les boucles, annule les tentatives armées et ferme le bus."""
        if not self.started:
            return
        await self.detector.stop()
        await self.monitor.stop()
        self.processor.cancel_all_retries()
        await self.engine.close()
        await self.bus.stop()
        self.started = False
        log.info("content_sync_stopped")

    async def notify_change(
        self,
        event: ChangeEvent,
        signature: str | None = None,
        request_id: str | None = None,
    ) -> ProcessingResult:
        """Notification de changement venant d'un récepteur webhook externe."""
        return await self.processor.process(event, signature, request_id=request_id)

    def on_cache_update(self, listener: Callable[[UpdateEvent], Any]) -> Callable[[], None]:
        """Abonnement aux invalidations; retourne le désabonnement."""
        return self.bus.subscribe(listener)

    def get_health_status(self) -> dict[str, Any]:
        """Santé opérationnelle: statut, agrégats, alertes ouvertes, état du polling."""
        health = self.monitor.get_health_status()
        health["poller"] = self.detector.status()
        health["cache"] = self.engine.stats()
        return health

    def export_metrics(self) -> str:
        """Instantané JSON des agrégats pour une ingestion externe."""
        return self.monitor.export_metrics()

    async def read_list(self, content_type: ContentType) -> list[dict[str, Any]]:
        """Liste publiée d'un type (lecture consommateur via le cache)."""
        return await self.engine.read_list(content_type)

    async def read_item(self, content_type: ContentType, content_id: str) -> dict[str, Any] | None:
        """Élément publié (lecture consommateur via le cache)."""
        return await self.engine.read_item(content_type, content_id)
