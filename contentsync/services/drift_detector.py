"""Détecteur de dérive: polling du store faisant autorité.

Rattrape les changements faits hors webhook (édition directe en base, webhook perdu) en comparant
deux instantanés successifs. Chaque changement détecté devient un `ChangeEvent` (source `poller`)
traité par le même chemin que les webhooks.

Garanties:
- au plus une lecture d'instantané en cours (un tick qui la trouve en vol est ignoré);
- après `stop()`, le résultat d'une lecture en vol est ignoré;
- après N échecs consécutifs, suspension puis reprise automatique après un délai de refroidissement
  (l'instantané précédent est conservé pour détecter la dérive survenue pendant la panne).
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

import structlog

from contentsync.app.metrics import POLL_DRIFT_CHANGES, POLL_SUSPENDED, POLL_TICKS
from contentsync.core.settings import MIN_POLL_INTERVAL_MS, SyncOptions
from contentsync.domain.events import ChangeEvent, ContentType, EventSource, ProcessingResult
from contentsync.domain.snapshots import (
    ChangeDetectionResult,
    ContentSnapshot,
    action_for_change,
    detect_changes,
)
from contentsync.infra.content_source import ContentSource
from contentsync.infra.monitoring.recorder import OperationRecorder
from contentsync.services.webhook_processor import WebhookProcessor

log = structlog.get_logger(__name__)


class DriftDetector:
    """Boucle de polling, diff d'instantanés et synthèse d'évènements."""

    def __init__(
        self,
        source: ContentSource,
        processor: WebhookProcessor,
        recorder: OperationRecorder,
        options: SyncOptions | None = None,
        content_types: Iterable[ContentType] | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """Initialise le détecteur (aucune tâche n'est lancée avant `start()`)."""
        self.source = source
        self.processor = processor
        self.recorder = recorder
        self.options = options or SyncOptions()
        self.content_types = list(content_types or ContentType)
        self._now = now
        self.poll_interval_ms = self.options.poll_interval_ms
        self._snapshot: ContentSnapshot | None = None
        self._previous: ContentSnapshot | None = None
        self._task: asyncio.Task | None = None
        self._resume_task: asyncio.Task | None = None
        self._tick_tasks: set[asyncio.Task] = set()
        self._fetching = False
        self._generation = 0
        self.is_polling = False
        self.suspended = False
        self.consecutive_failures = 0
        self.last_check: datetime | None = None
        self.last_result: ChangeDetectionResult | None = None
        self.skipped_ticks = 0

    # ------------------------------------------------------------------ cycle
    async def start(self) -> None:
        """Prend l'instantané de référence puis lance la boucle."""
        if self.is_polling:
            return
        self.is_polling = True
        self._generation += 1
        log.info("drift_detector_started", interval_ms=self.poll_interval_ms)
        if self._snapshot is None:
            await self._tick(self._generation, baseline=True)
        self._launch_loop()

    def _launch_loop(self) -> None:
        self._task = asyncio.create_task(self._loop(self._generation))

    async def _loop(self, generation: int) -> None:
        while self.is_polling and generation == self._generation:
            await asyncio.sleep(self.poll_interval_ms / 1000.0)
            if generation != self._generation or self.suspended:
                return
            if self._fetching:
                self._skip()
                continue
            task = asyncio.create_task(self._tick(generation))
            self._tick_tasks.add(task)
            task.add_done_callback(self._tick_tasks.discard)

    async def stop(self) -> None:
        """Arrête la boucle et le refroidissement; une lecture en vol est ignorée."""
        self.is_polling = False
        self._generation += 1
        for task in (self._task, self._resume_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        for task in list(self._tick_tasks):
            task.cancel()
        self._task = None
        self._resume_task = None
        self._fetching = False
        if self.suspended:
            self.suspended = False
            POLL_SUSPENDED.set(0)
        log.info("drift_detector_stopped")

    def set_frequency(self, interval_ms: int) -> int:
        """Change la période de polling (plancher appliqué) et relance la boucle."""
        self.poll_interval_ms = max(MIN_POLL_INTERVAL_MS, int(interval_ms))
        if self.is_polling and not self.suspended:
            if self._task is not None:
                self._task.cancel()
            self._launch_loop()
        log.info("poll_frequency_updated", interval_ms=self.poll_interval_ms)
        return self.poll_interval_ms

    async def force_check(self) -> ChangeDetectionResult | None:
        """Exécute un tick immédiatement; None si une lecture est déjà en vol."""
        if self._fetching:
            self._skip()
            return None
        return await self._tick(self._generation)

    def _skip(self) -> None:
        self.skipped_ticks += 1
        POLL_TICKS.labels(result="skipped").inc()
        log.debug("poll_tick_skipped", reason="fetch_in_flight")

    # ------------------------------------------------------------------- tick
    async def _fetch_snapshot(self) -> ContentSnapshot:
        items = {}
        for content_type in self.content_types:
            items[content_type] = await self.source.fetch_content_snapshot(content_type)
        return ContentSnapshot(items=items, taken_at=self._now())

    async def _tick(
        self, generation: int, baseline: bool = False
    ) -> ChangeDetectionResult | None:
        self._fetching = True
        started = time.perf_counter()
        try:
            snapshot = await self._fetch_snapshot()
        except Exception as exc:
            if generation != self._generation:
                return None
            self._fetching = False
            self.recorder.record_fetch(
                False, (time.perf_counter() - started) * 1000.0, error=str(exc)
            )
            POLL_TICKS.labels(result="failed").inc()
            self._on_failure(exc)
            return None

        if generation != self._generation:
            # arrêté (ou relancé) pendant la lecture: résultat ignoré
            POLL_TICKS.labels(result="discarded").inc()
            return None
        self._fetching = False
        self.recorder.record_fetch(
            True,
            (time.perf_counter() - started) * 1000.0,
            counts={ct.value: snapshot.count(ct) for ct in self.content_types},
        )
        self.consecutive_failures = 0
        self.last_check = snapshot.taken_at
        self._previous, self._snapshot = self._snapshot, snapshot
        if baseline or self._previous is None:
            POLL_TICKS.labels(result="baseline").inc()
            log.info("drift_baseline_taken", counts=self._counts(snapshot))
            return None

        result = detect_changes(self._previous, snapshot)
        self.last_result = result
        POLL_TICKS.labels(result="changed" if result.has_changes else "unchanged").inc()
        if result.has_changes:
            log.info("drift_detected", total=result.total(), changes=result.to_dict())
            await self._dispatch(result, snapshot)
        return result

    def _counts(self, snapshot: ContentSnapshot) -> dict[str, int]:
        return {ct.value: snapshot.count(ct) for ct in self.content_types}

    async def _dispatch(
        self, result: ChangeDetectionResult, snapshot: ContentSnapshot
    ) -> list[ProcessingResult]:
        out: list[ProcessingResult] = []
        statuses = {
            (ct, row.id): row.status for ct, rows in snapshot.items.items() for row in rows
        }
        for content_type, changes in result.changes.items():
            for change in changes:
                POLL_DRIFT_CHANGES.labels(
                    content_type=content_type.value, kind=change.kind.value
                ).inc()
                data: dict[str, Any] = {"detectedChange": change.kind.value}
                status = change.new_status or statuses.get((content_type, change.id))
                if status is not None:
                    data["status"] = status
                event = ChangeEvent(
                    action=action_for_change(change),
                    content_type=content_type,
                    content_id=change.id,
                    timestamp=self._now(),
                    data=data,
                    source=EventSource.POLLER,
                )
                out.append(await self.processor.process(event))
        return out

    # ---------------------------------------------------------------- failure
    def _on_failure(self, exc: Exception) -> None:
        self.consecutive_failures += 1
        log.warning(
            "snapshot_fetch_failed",
            consecutive_failures=self.consecutive_failures,
            error=str(exc),
        )
        if (
            self.consecutive_failures >= self.options.poll_failure_threshold
            and self.is_polling
            and not self.suspended
        ):
            self._suspend()

    def _suspend(self) -> None:
        self.suspended = True
        POLL_SUSPENDED.set(1)
        self._generation += 1
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None
        log.error(
            "drift_detector_suspended",
            consecutive_failures=self.consecutive_failures,
            cooldown_ms=self.options.poll_cooldown_ms,
        )
        self._resume_task = asyncio.create_task(self._resume_after_cooldown(self._generation))

    async def _resume_after_cooldown(self, generation: int) -> None:
        await asyncio.sleep(self.options.poll_cooldown_ms / 1000.0)
        if generation != self._generation or not self.is_polling:
            return
        self.suspended = False
        self.consecutive_failures = 0
        POLL_SUSPENDED.set(0)
        self._resume_task = None
        log.info("drift_detector_resumed")
        self._launch_loop()

    # ----------------------------------------------------------------- status
    def status(self) -> dict[str, Any]:
        """État courant du détecteur."""
        return {
            "isPolling": self.is_polling,
            "suspended": self.suspended,
            "pollingFrequencyMs": self.poll_interval_ms,
            "lastCheck": self.last_check.isoformat() if self.last_check else None,
            "consecutiveFailures": self.consecutive_failures,
            "skippedTicks": self.skipped_ticks,
            "lastResult": self.last_result.to_dict() if self.last_result else None,
        }
