"""Moteur d'invalidation du cache local de contenu.

Le moteur est le seul écrivain de l'état frais/périmé du cache. Clés:

- `<type>:<id>`: un élément publié (valeur None si absent ou non publié);
- `<type>:all`: la liste publiée d'un type.

Deux forces d'invalidation:

- standard: les entrées sont marquées périmées, la prochaine lecture recharge;
- immediate: les entrées sont évincées puis rechargées avant le retour de l'appel.

Les rechargements concurrents d'une même clé sont regroupés: un seul rechargement en cours et au
plus un rechargement de suivi partagé par tous les déclencheurs arrivés pendant qu'il tournait.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from contentsync.app.metrics import CACHE_REFETCH_COLLAPSED
from contentsync.domain.errors import FetchError, ProcessingError
from contentsync.domain.events import ContentAction, ContentType
from contentsync.infra.broadcast import BroadcastBus, UpdateEvent, UpdateType
from contentsync.infra.content_source import ContentSource
from contentsync.infra.monitoring.recorder import OperationRecorder

ALL_SUFFIX = "all"
WILDCARD_SUFFIX = "*"

log = structlog.get_logger(__name__)


class Strength(str, Enum):
    """Force d'invalidation."""

    STANDARD = "standard"
    IMMEDIATE = "immediate"


def item_key(content_type: ContentType, content_id: str) -> str:
    """Clé de cache d'un élément."""
    return f"{content_type.value}:{content_id}"


def list_key(content_type: ContentType) -> str:
    """Clé de cache de la liste publiée d'un type."""
    return f"{content_type.value}:{ALL_SUFFIX}"


def _split_key(key: str) -> tuple[ContentType, str]:
    raw_type, _, suffix = key.partition(":")
    return ContentType(raw_type), suffix


@dataclass
class CacheEntry:
    """Entrée de cache."""

    value: Any
    fresh: bool
    fetched_at: float


@dataclass
class _Flight:
    task: asyncio.Task
    started_seq: int
    follow_up: asyncio.Task | None = None


class InvalidationEngine:
    """Cache local, invalidation standard/immédiate et regroupement des rechargements."""

    def __init__(
        self,
        source: ContentSource,
        bus: BroadcastBus,
        recorder: OperationRecorder,
    ) -> None:
        """Initialise le cache et s'abonne aux évènements distants du bus."""
        self.source = source
        self.bus = bus
        self.recorder = recorder
        self._entries: dict[str, CacheEntry] = {}
        self._flights: dict[str, _Flight] = {}
        self._invalidated_at: dict[str, int] = {}
        self._seq = 0
        self._epoch = 0
        self._hits = 0
        self._misses = 0
        self._invalidations = 0
        self._collapsed = 0
        self._unsubscribe = bus.subscribe(self._on_bus_event)

    # ----------------------------------------------------------------- refetch
    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    async def _fetch_into(self, key: str, started_seq: int) -> Any:
        epoch = self._epoch
        content_type, suffix = _split_key(key)
        if suffix == ALL_SUFFIX:
            value: Any = await self.source.fetch_content_list(content_type, published_only=True)
        else:
            value = await self.source.fetch_content_item(
                content_type, suffix, published_only=True
            )
        if epoch != self._epoch:
            # cache vidé pendant le rechargement: résultat ignoré
            return value
        fresh = started_seq >= self._invalidated_at.get(key, 0)
        self._entries[key] = CacheEntry(value=value, fresh=fresh, fetched_at=time.time())
        return value

    def _start(self, key: str) -> _Flight:
        seq = self._seq
        task = asyncio.create_task(self._fetch_into(key, seq))
        flight = _Flight(task=task, started_seq=seq)
        self._flights[key] = flight

        def _done(_t: asyncio.Task, key: str = key, flight: _Flight = flight) -> None:
            if self._flights.get(key) is flight and flight.follow_up is None:
                del self._flights[key]
                self._invalidated_at.pop(key, None)
            # évite "Task exception was never retrieved" quand personne n'attend
            if not _t.cancelled():
                _t.exception()

        task.add_done_callback(_done)
        return flight

    async def _run_follow_up(self, key: str, previous: _Flight) -> Any:
        await asyncio.wait({previous.task})
        return await self._start(key).task

    async def _refresh(self, key: str, trigger_seq: int) -> Any:
        """Recharge une clé en regroupant les déclencheurs concurrents."""
        flight = self._flights.get(key)
        if flight is None:
            return await self._start(key).task
        if flight.started_seq >= trigger_seq:
            self._collapse()
            return await asyncio.shield(flight.task)
        if flight.follow_up is None:
            flight.follow_up = asyncio.create_task(self._run_follow_up(key, flight))
        else:
            self._collapse()
        return await asyncio.shield(flight.follow_up)

    def _collapse(self) -> None:
        self._collapsed += 1
        CACHE_REFETCH_COLLAPSED.inc()

    async def _join_or_fetch(self, key: str) -> Any:
        # un rechargement démarré avant la dernière invalidation ne suffit pas
        return await self._refresh(key, self._invalidated_at.get(key, 0))

    # ------------------------------------------------------------ invalidation
    def _stamp(self, key: str, seq: int) -> None:
        # la marque ne sert qu'à juger un rechargement en vol
        if key in self._flights:
            self._invalidated_at[key] = seq
        else:
            self._invalidated_at.pop(key, None)

    def _mark_stale(self, keys: list[str], seq: int) -> None:
        for key in keys:
            self._stamp(key, seq)
            entry = self._entries.get(key)
            if entry is not None:
                entry.fresh = False

    def _evict(self, keys: list[str], seq: int) -> None:
        for key in keys:
            self._stamp(key, seq)
            self._entries.pop(key, None)

    async def _apply(
        self,
        content_type: ContentType,
        content_id: str | None,
        keys: list[str],
        refetch_keys: list[str],
        strength: Strength,
        action: ContentAction | None,
        trigger: str,
    ) -> list[str]:
        started = time.perf_counter()
        seq = self._next_seq()
        self._invalidations += 1
        error: Exception | None = None
        if strength is Strength.IMMEDIATE:
            self._evict(keys, seq)
            results = await asyncio.gather(
                *(self._refresh(key, seq) for key in refetch_keys), return_exceptions=True
            )
            error = next((r for r in results if isinstance(r, BaseException)), None)
        else:
            self._mark_stale(keys, seq)

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        self.recorder.record_cache(
            keys, trigger, error is None, strength.value, content_type.value, elapsed_ms
        )
        self.bus.publish(
            UpdateEvent(
                type=UpdateType.for_action(action),
                content_type=content_type,
                content_id=content_id,
                action=action,
                keys=tuple(keys),
                strength=strength.value,
            )
        )
        if error is not None:
            if isinstance(error, FetchError):
                raise ProcessingError(f"refetch failed: {error.message}") from error
            raise ProcessingError(f"refetch failed: {error}") from error
        return keys

    async def invalidate(
        self,
        content_type: ContentType,
        content_id: str,
        strength: Strength = Strength.STANDARD,
        action: ContentAction | None = None,
        trigger: str = "manual",
    ) -> list[str]:
        """Invalide un élément et la liste publiée de son type.

        Raises:
            ProcessingError: rechargement immédiat en échec (les entrées restent évincées).
        """
        keys = [item_key(content_type, content_id), list_key(content_type)]
        return await self._apply(
            content_type, content_id, keys, keys, strength, action, trigger
        )

    async def invalidate_all(
        self,
        content_type: ContentType,
        strength: Strength = Strength.STANDARD,
        trigger: str = "manual",
    ) -> list[str]:
        """Invalide toutes les entrées d'un type (liste et éléments en cache)."""
        prefix = f"{content_type.value}:"
        cached = sorted(k for k in self._entries if k.startswith(prefix))
        keys = sorted({*cached, list_key(content_type)})
        return await self._apply(content_type, None, keys, keys, strength, None, trigger)

    async def clear(self) -> None:
        """Vide le cache et diffuse une invalidation complète de chaque type."""
        self._epoch += 1
        self._next_seq()
        for flight in list(self._flights.values()):
            for task in (flight.follow_up, flight.task):
                if task is not None and not task.done():
                    task.cancel()
        self._flights.clear()
        self._entries.clear()
        self._invalidated_at.clear()
        for content_type in ContentType:
            key = f"{content_type.value}:{WILDCARD_SUFFIX}"
            self.bus.publish(
                UpdateEvent(
                    type=UpdateType.UPDATED,
                    content_type=content_type,
                    content_id=None,
                    action=None,
                    keys=(key,),
                    strength=Strength.IMMEDIATE.value,
                )
            )
        log.info("cache_cleared")

    def _on_bus_event(self, event: UpdateEvent) -> None:
        if self.bus.is_local(event):
            return
        seq = self._next_seq()
        keys: list[str] = []
        for key in event.keys:
            if key.endswith(f":{WILDCARD_SUFFIX}"):
                prefix = key[: -len(WILDCARD_SUFFIX)]
                keys.extend(k for k in {*self._entries, *self._flights} if k.startswith(prefix))
            else:
                keys.append(key)
        self._mark_stale(keys, seq)
        log.debug("remote_invalidation_applied", keys=keys, origin=event.origin)

    # ------------------------------------------------------------------- reads
    async def _read(self, content_type: ContentType, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is not None and entry.fresh:
            self._hits += 1
            self.recorder.record_read(content_type.value, key, "hit", 0.0)
            return entry.value
        self._misses += 1
        started = time.perf_counter()
        try:
            value = await self._join_or_fetch(key)
        except Exception:
            self.recorder.record_read(
                content_type.value, key, "miss", (time.perf_counter() - started) * 1000.0, False
            )
            raise
        self.recorder.record_read(
            content_type.value, key, "miss", (time.perf_counter() - started) * 1000.0
        )
        return value

    async def read_list(self, content_type: ContentType) -> list[dict[str, Any]]:
        """Liste publiée d'un type, depuis le cache si fraîche.

        Raises:
            FetchError: store injoignable et aucune entrée fraîche.
        """
        return list(await self._read(content_type, list_key(content_type)) or [])

    async def read_item(self, content_type: ContentType, content_id: str) -> dict[str, Any] | None:
        """Élément publié, ou None."""
        return await self._read(content_type, item_key(content_type, content_id))

    # ------------------------------------------------------------------- admin
    def holds_visible(self, content_type: ContentType, content_id: str) -> bool:
        """Indique si le cache expose actuellement l'élément (élément ou liste publiée)."""
        entry = self._entries.get(item_key(content_type, content_id))
        if entry is not None and entry.value is not None:
            return True
        listing = self._entries.get(list_key(content_type))
        if listing is None or not listing.value:
            return False
        return any(str(row.get("id")) == content_id for row in listing.value)

    def is_fresh(self, key: str) -> bool:
        """Indique si une clé est présente et fraîche."""
        entry = self._entries.get(key)
        return bool(entry and entry.fresh)

    def stats(self) -> dict[str, Any]:
        """Compteurs du cache (entrées, hits/misses, regroupements)."""
        fresh = sum(1 for e in self._entries.values() if e.fresh)
        return {
            "entries": len(self._entries),
            "fresh": fresh,
            "stale": len(self._entries) - fresh,
            "inFlight": len(self._flights),
            "hits": self._hits,
            "misses": self._misses,
            "invalidations": self._invalidations,
            "collapsedRefetches": self._collapsed,
            "pendingMarks": len(self._invalidated_at),
        }

    async def close(self) -> None:
        """Se désabonne du bus et annule les rechargements en cours."""
        self._unsubscribe()
        tasks = [
            t
            for f in self._flights.values()
            for t in (f.follow_up, f.task)
            if t is not None and not t.done()
        ]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._flights.clear()
