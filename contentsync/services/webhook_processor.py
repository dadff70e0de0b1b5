# ============================================================
# Module : contentsync/services/webhook_processor.py
# Objet  : Traitement des notifications de changement (webhooks CMS,
#          évènements synthétisés par le détecteur de dérive).
# Invariants :
#  - une même identité n'est jamais traitée deux fois en parallèle;
#  - une identité terminée avec succès est un no-op à la re-livraison;
#  - une seule tentative armée par webhook_id.
# ============================================================
"""Processeur de webhooks: authenticité, fraîcheur, dispatch, invalidation et rejeu.

Étapes d'une invocation de `process()`:

1. attribution du `webhook_id` (première réception seulement);
2. vérification de la signature HMAC (si fournie ou exigée) puis de la fraîcheur;
3. déduplication (identités en vol + état d'idempotence partagé);
4. dispatch vers le handler de l'action, puis invalidation si le handler la demande;
5. en cas d'échec: nouvelle tentative avec backoff, ou échec terminal (DLQ).

Chaque invocation produit un `ProcessingResult` et un enregistrement pour le Monitor.
"""

from __future__ import annotations

import hashlib
import hmac
import itertools
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

import structlog

from contentsync.app.metrics import SYNC_WEBHOOK_RETRIES, SYNC_WEBHOOK_TERMINAL_FAILURES
from contentsync.core.settings import SyncOptions
from contentsync.domain.errors import (
    AuthenticityError,
    ProcessingError,
    StaleEventError,
    SyncError,
)
from contentsync.domain.events import (
    PUBLISHED_STATUS,
    VISIBILITY_ACTIONS,
    ChangeEvent,
    ContentAction,
    EventSource,
    ProcessingResult,
)
from contentsync.infra.content_source import ContentSource
from contentsync.infra.monitoring.recorder import OperationRecorder
from contentsync.infra.ops.idempotency import (
    STATE_FAILED,
    STATE_IN_PROGRESS,
    STATE_SUCCEEDED,
    IdempotencyStore,
    make_idem_key,
)
from contentsync.services.invalidation import InvalidationEngine, Strength
from contentsync.services.retry_scheduler import RetryScheduler, backoff_delay_ms

SIGNATURE_PREFIX = "sha256="
RETRY_OPTION_KEYS = frozenset(
    {"max_retries", "retry_base_delay_ms", "retry_max_delay_ms", "retry_backoff_multiplier"}
)

Handler = Callable[[ChangeEvent], Awaitable[bool]]

log = structlog.get_logger(__name__)


def compute_signature(secret: str, event: ChangeEvent) -> str:
    """Signature attendue: `sha256=<hex HMAC-SHA256(secret, corps canonique)>`."""
    digest = hmac.new(secret.encode("utf-8"), event.canonical_body(), hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


class WebhookProcessor:
    """Traite les évènements de changement et pilote l'invalidation du cache."""

    def __init__(
        self,
        invalidator: InvalidationEngine,
        recorder: OperationRecorder,
        options: SyncOptions | None = None,
        secret: str | None = None,
        require_signature: bool = False,
        source: ContentSource | None = None,
        store: IdempotencyStore | None = None,
        scheduler: RetryScheduler | None = None,
        handlers: Mapping[ContentAction, Handler] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialise le processeur.

        Args:
            invalidator: moteur d'invalidation (seul écrivain du cache).
            recorder: journal des opérations observé par le Monitor.
            options: options de rejeu et fenêtre de fraîcheur.
            secret: secret partagé pour la signature HMAC.
            require_signature: rejette les évènements webhook non signés.
            source: store faisant autorité (visibilité des create/update sans statut).
            store: état d'idempotence partagé et file de lettres mortes.
            scheduler: table des tentatives armées.
            handlers: surcharge des handlers par action.
            clock: horloge (epoch secondes), injectable pour les tests.
        """
        self.invalidator = invalidator
        self.recorder = recorder
        self.options = options or SyncOptions()
        self._secret = secret or ""
        self.require_signature = require_signature
        self.source = source
        self.store = store or IdempotencyStore(ttl_seconds=self._idem_ttl_s())
        self.scheduler = scheduler or RetryScheduler()
        self._clock = clock
        self._counter = itertools.count(1)
        self._in_flight: set[str] = set()
        self._handlers: dict[ContentAction, Handler] = {
            ContentAction.CREATE: self._handle_visibility_checked,
            ContentAction.UPDATE: self._handle_visibility_checked,
            ContentAction.DELETE: self._handle_always,
            ContentAction.PUBLISH: self._handle_always,
            ContentAction.UNPUBLISH: self._handle_always,
        }
        if handlers:
            self._handlers.update(handlers)

    # ------------------------------------------------------------------ helpers
    def _idem_ttl_s(self) -> int:
        return max(1, int(self.options.webhook_freshness_window_ms / 1000))

    def _next_webhook_id(self, event: ChangeEvent) -> str:
        epoch_ms = int(event.timestamp.timestamp() * 1000)
        return (
            f"wh_{event.content_type.value}_{event.content_id}_{event.action.value}"
            f"_{epoch_ms}_{next(self._counter)}"
        )

    def _elapsed_ms(self, started: float) -> float:
        return (time.perf_counter() - started) * 1000.0

    def _check_signature(self, event: ChangeEvent, signature: str | None) -> None:
        if event.source is not EventSource.WEBHOOK:
            return
        if not signature:
            if self.require_signature:
                raise AuthenticityError("Missing webhook signature")
            return
        if not self._secret:
            raise AuthenticityError("Webhook secret not configured")
        expected = compute_signature(self._secret, event)
        if not hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8")):
            raise AuthenticityError("Invalid webhook signature")

    def _check_freshness(self, event: ChangeEvent) -> None:
        window_s = self.options.webhook_freshness_window_ms / 1000.0
        age_s = self._clock() - event.timestamp.timestamp()
        if age_s > window_s:
            raise StaleEventError(
                "Event timestamp outside freshness window", {"age_ms": int(age_s * 1000)}
            )
        if -age_s > window_s:
            raise StaleEventError(
                "Event timestamp too far in the future", {"skew_ms": int(-age_s * 1000)}
            )

    # ----------------------------------------------------------------- handlers
    async def _handle_always(self, event: ChangeEvent) -> bool:
        return True

    async def _handle_visibility_checked(self, event: ChangeEvent) -> bool:
        status = event.status
        if status is None and self.source is not None:
            item = await self.source.fetch_content_item(
                event.content_type, event.content_id, published_only=False
            )
            status = item.get("status") if item else None
        if status == PUBLISHED_STATUS:
            return True
        # retrait de visibilité: une copie publiée encore en cache doit disparaître
        return self.invalidator.holds_visible(event.content_type, event.content_id)

    def strength_for(self, action: ContentAction) -> Strength:
        """Force d'invalidation: immédiate pour les changements de visibilité."""
        return Strength.IMMEDIATE if action in VISIBILITY_ACTIONS else Strength.STANDARD

    async def invalidate_for(self, event: ChangeEvent) -> list[str]:
        """Chemin d'invalidation partagé (processeur, détecteur de dérive, déclenchement manuel)."""
        return await self.invalidator.invalidate(
            event.content_type,
            event.content_id,
            strength=self.strength_for(event.action),
            action=event.action,
            trigger=event.webhook_id or event.source.value,
        )

    # ------------------------------------------------------------------ process
    async def process(
        self,
        event: ChangeEvent,
        signature: str | None = None,
        request_id: str | None = None,
    ) -> ProcessingResult:
        """Traite un évènement de changement et retourne le résultat structuré.

        Les erreurs de validation, d'authenticité et de fraîcheur sont retournées dans le résultat
        (`error_code`) sans nouvelle tentative.
        """
        started = time.perf_counter()
        if event.webhook_id is None:
            event = replace(event, webhook_id=self._next_webhook_id(event))

        try:
            self._check_signature(event, signature if signature is not None else event.signature)
            self._check_freshness(event)
        except SyncError as exc:
            return self._rejected(event, exc, started, request_id)

        identity = event.identity_key
        if identity in self._in_flight:
            return self._duplicate(event, started, request_id)
        self._in_flight.add(identity)
        try:
            key = make_idem_key(identity)
            if not await self._claim(key):
                return self._duplicate(event, started, request_id)
            return await self._attempt(event, started, request_id)
        finally:
            self._in_flight.discard(identity)

    def reject(
        self,
        exc: SyncError,
        payload: Any = None,
        request_id: str | None = None,
    ) -> ProcessingResult:
        """Enregistre le rejet d'une charge utile qui n'a pas pu devenir un évènement."""
        summary: dict[str, Any] = {"source": EventSource.WEBHOOK.value}
        if isinstance(payload, dict):
            summary["action"] = payload.get("action")
            summary["contentType"] = payload.get("contentType") or payload.get("content_type")
        result = ProcessingResult(
            webhook_id=f"wh_rejected_{next(self._counter)}",
            errors=[exc.message],
            error_code=exc.code,
        )
        self.recorder.record_webhook(result, summary, request_id)
        return result

    async def _attempt(
        self, event: ChangeEvent, started: float, request_id: str | None
    ) -> ProcessingResult:
        result = ProcessingResult(webhook_id=event.webhook_id or "", retry_count=event.retry_count)
        key = make_idem_key(event.identity_key)
        try:
            handler = self._handlers[event.action]
            if await handler(event):
                await self.invalidate_for(event)
                result.cache_invalidated = True
            result.success = True
        except SyncError as exc:
            result.errors.append(exc.message)
            result.error_code = exc.code
            if exc.retryable:
                await self._handle_failure(event, result)
            else:
                result.terminal = True
        except Exception as exc:
            err = ProcessingError(str(exc) or exc.__class__.__name__)
            result.errors.append(err.message)
            result.error_code = err.code
            await self._handle_failure(event, result)

        if result.success:
            await self._set_state(key, STATE_SUCCEEDED)
        elif result.terminal:
            await self._set_state(key, STATE_FAILED)
        result.processing_time_ms = self._elapsed_ms(started)
        self.recorder.record_webhook(result, event.sanitized(), request_id)
        return result

    async def _handle_failure(self, event: ChangeEvent, result: ProcessingResult) -> None:
        if event.retry_count < self.options.max_retries:
            delay_ms = backoff_delay_ms(
                event.retry_count,
                self.options.retry_base_delay_ms,
                self.options.retry_backoff_multiplier,
                self.options.retry_max_delay_ms,
            )
            nxt = event.next_attempt()
            self.scheduler.schedule(
                event.webhook_id or "", nxt.retry_count, delay_ms, lambda: self._run_retry(nxt)
            )
            result.retry_scheduled = True
            SYNC_WEBHOOK_RETRIES.labels(content_type=event.content_type.value).inc()
            return

        result.terminal = True
        SYNC_WEBHOOK_TERMINAL_FAILURES.labels(content_type=event.content_type.value).inc()
        log.error(
            "webhook_terminal_failure",
            webhook_id=event.webhook_id,
            retry_count=event.retry_count,
            errors=result.errors,
        )
        try:
            await self.store.push_dead_letter(
                {
                    "webhook_id": event.webhook_id,
                    "identity": event.identity_key,
                    "event": event.sanitized(),
                    "reason": result.errors[-1] if result.errors else "max_retries",
                    "ts": datetime.now(UTC).isoformat(),
                }
            )
        except Exception:
            log.exception("dead_letter_push_failed", webhook_id=event.webhook_id)

    async def _run_retry(self, event: ChangeEvent) -> ProcessingResult | None:
        identity = event.identity_key
        if identity in self._in_flight:
            log.info("retry_skipped_in_flight", webhook_id=event.webhook_id)
            return None
        self._in_flight.add(identity)
        try:
            return await self._attempt(event, time.perf_counter(), None)
        finally:
            self._in_flight.discard(identity)

    async def _claim(self, key: str) -> bool:
        """Passe l'identité à `in_progress` (SET NX partagé entre workers).

        Seul un état `failed` peut être repris; `in_progress` et `succeeded` sont des doublons.
        """
        try:
            if await self.store.acquire(key, ttl=self._idem_ttl_s()):
                return True
        except Exception:
            log.warning("idempotency_store_unavailable", op="acquire", exc_info=True)
            return True
        state = await self._get_state(key)
        if state == STATE_FAILED:
            await self._set_state(key, STATE_IN_PROGRESS)
            return True
        if state is None:
            # clé expirée entre les deux appels
            try:
                return await self.store.acquire(key, ttl=self._idem_ttl_s())
            except Exception:
                log.warning("idempotency_store_unavailable", op="acquire", exc_info=True)
                return True
        return False

    async def _get_state(self, key: str) -> str | None:
        try:
            return await self.store.get_state(key)
        except Exception:
            log.warning("idempotency_store_unavailable", op="get", exc_info=True)
            return None

    async def _set_state(self, key: str, state: str) -> None:
        try:
            await self.store.set_state(key, state, ttl=self._idem_ttl_s())
        except Exception:
            log.warning("idempotency_store_unavailable", op="set", state=state, exc_info=True)

    def _rejected(
        self,
        event: ChangeEvent,
        exc: SyncError,
        started: float,
        request_id: str | None,
    ) -> ProcessingResult:
        if isinstance(exc, AuthenticityError):
            self.recorder.record_security(
                "invalid_signature", "high", {"webhookId": event.webhook_id}, request_id
            )
        elif isinstance(exc, StaleEventError):
            self.recorder.record_security(
                "stale_event", "medium", {"webhookId": event.webhook_id, **exc.details}, request_id
            )
        result = ProcessingResult(
            webhook_id=event.webhook_id or "",
            retry_count=event.retry_count,
            errors=[exc.message],
            error_code=exc.code,
            processing_time_ms=self._elapsed_ms(started),
        )
        self.recorder.record_webhook(result, event.sanitized(), request_id)
        return result

    def _duplicate(
        self, event: ChangeEvent, started: float, request_id: str | None
    ) -> ProcessingResult:
        result = ProcessingResult(
            webhook_id=event.webhook_id or "",
            success=True,
            retry_count=event.retry_count,
            duplicate=True,
            processing_time_ms=self._elapsed_ms(started),
        )
        log.info("webhook_duplicate_ignored", identity=event.identity_key)
        self.recorder.record_webhook(result, event.sanitized(), request_id)
        return result

    # ------------------------------------------------------------- operations
    def pending_retries(self) -> int:
        """Nombre de tentatives armées."""
        return len(self.scheduler)

    def cancel_all_retries(self) -> int:
        """Annule toutes les tentatives armées."""
        cancelled = self.scheduler.cancel_all()
        if cancelled:
            log.info("retries_cancelled", count=cancelled)
        return cancelled

    async def retry_failed(self, event: ChangeEvent) -> ProcessingResult:
        """Rejoue manuellement un évènement en échec (compteur de tentatives remis à zéro)."""
        event = replace(event, retry_count=0, signature=None)
        if event.webhook_id is None:
            event = replace(event, webhook_id=self._next_webhook_id(event))
        self.scheduler.cancel(event.webhook_id or "")
        try:
            await self.store.release(make_idem_key(event.identity_key))
        except Exception:
            log.warning("idempotency_store_unavailable", op="release", exc_info=True)
        return await self._run_retry(event) or self._duplicate(event, time.perf_counter(), None)

    def update_retry_config(self, **changes: Any) -> SyncOptions:
        """Met à jour les options de rejeu (`max_retries`, `retry_base_delay_ms`, ...)."""
        unknown = set(changes) - RETRY_OPTION_KEYS
        if unknown:
            raise ValueError(f"unknown retry options: {sorted(unknown)}")
        for name, value in changes.items():
            setattr(self.options, name, value)
        log.info("retry_config_updated", **changes)
        return self.options

    async def wait_for_retries(self, timeout_s: float | None = None) -> None:
        """Attend l'exécution des tentatives armées (tests, arrêt propre)."""
        await self.scheduler.wait(timeout_s)
