"""
Conteneur d'injection de dépendances du cœur de synchronisation.

Instancie les composants (journal des opérations, store de contenu, store d'idempotence, bus,
moteur d'invalidation, processeur, détecteur de dérive, Monitor) à partir des `Settings` et les
assemble dans un `ContentSyncCore`. Aucun singleton de module: chaque application (ou test)
construit son propre conteneur.
"""

from __future__ import annotations

import redis.asyncio as aioredis
import structlog

from contentsync.core.settings import Settings, SyncOptions, get_settings
from contentsync.domain.events import ContentType
from contentsync.infra.broadcast import (
    BroadcastBus,
    LocalChannelHub,
    LocalChannelTransport,
    RedisTransport,
    Transport,
)
from contentsync.infra.content_source import (
    ContentSource,
    HttpContentSource,
    InMemoryContentSource,
)
from contentsync.infra.monitoring.recorder import OperationRecorder
from contentsync.infra.ops.idempotency import IdempotencyStore
from contentsync.services.drift_detector import DriftDetector
from contentsync.services.invalidation import InvalidationEngine
from contentsync.services.monitor import Monitor
from contentsync.services.sync_core import ContentSyncCore
from contentsync.services.webhook_processor import WebhookProcessor

log = structlog.get_logger(__name__)


class Container:
    """Assemble le cœur à partir de la configuration."""

    def __init__(
        self,
        settings: Settings | None = None,
        source: ContentSource | None = None,
        hub: LocalChannelHub | None = None,
    ) -> None:
        """Construit tous les composants.

        Args:
            settings: configuration (chargée depuis l'environnement si absente).
            source: store de contenu imposé (tests, dev); sinon HTTP si `CONTENT_API_URL`,
                mémoire sinon.
            hub: canal en mémoire partagé entre plusieurs conteneurs d'un même processus.
        """
        self.settings = settings or get_settings()
        self.options = SyncOptions.from_settings(self.settings)
        self.recorder = OperationRecorder(max_entries=self.settings.RECORDER_MAX_ENTRIES)
        self.content_types = [ContentType(v) for v in self.settings.CONTENT_TYPES]

        self.redis = None
        self.storage_backend = "memory"
        if self.settings.REDIS_URL:
            try:
                self.redis = aioredis.from_url(self.settings.REDIS_URL, decode_responses=True)
                self.storage_backend = "redis"
            except Exception:
                log.warning("redis_unavailable", fallback="memory", exc_info=True)
                self.storage_backend = "memory-fallback"

        if source is not None:
            self.source = source
        elif self.settings.CONTENT_API_URL:
            self.source = HttpContentSource(
                str(self.settings.CONTENT_API_URL),
                token=self.settings.CONTENT_API_TOKEN,
                timeout_s=self.settings.CONTENT_API_TIMEOUT_S,
            )
        else:
            self.source = InMemoryContentSource()

        transport: Transport | None = None
        if hub is not None:
            transport = LocalChannelTransport(hub)
        elif self.redis is not None:
            transport = RedisTransport(self.redis, channel=self.settings.BROADCAST_CHANNEL)
        self.bus = BroadcastBus(transport=transport)

        ttl_s = max(1, self.options.webhook_freshness_window_ms // 1000)
        self.idempotency = IdempotencyStore(ttl_seconds=ttl_s, client=self.redis)

        self.engine = InvalidationEngine(self.source, self.bus, self.recorder)
        self.processor = WebhookProcessor(
            self.engine,
            self.recorder,
            options=self.options,
            secret=self.settings.WEBHOOK_SECRET,
            require_signature=self.settings.WEBHOOK_REQUIRE_SIGNATURE,
            source=self.source,
            store=self.idempotency,
        )
        self.detector = DriftDetector(
            self.source,
            self.processor,
            self.recorder,
            options=self.options,
            content_types=self.content_types,
        )
        self.monitor = Monitor(
            self.recorder,
            thresholds=self.options.alert_thresholds,
            interval_ms=self.options.monitor_interval_ms,
            pending_retries=self.processor.pending_retries,
        )
        self.core = ContentSyncCore(
            self.processor,
            self.detector,
            self.engine,
            self.bus,
            self.monitor,
            self.recorder,
            polling_enabled=self.settings.POLL_ENABLED,
        )

    async def aclose(self) -> None:
        """Arrête le cœur puis ferme les clients réseau."""
        await self.core.stop()
        await self.source.aclose()
        if self.redis is not None:
            await self.redis.aclose()
