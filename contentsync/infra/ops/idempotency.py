"""Idempotency state and dead-letter helpers (Redis or in-memory).

- IdempotencyStore: records the state of a change-event identity
  (`in_progress` / `succeeded` / `failed`) for the freshness window so a
  re-delivered event is a no-op, and keeps the dead-letter list of events
  that exhausted their retries.

Key rule:
    sync:idem:{identity_key}

Use `make_idem_key(event.identity_key)` to compose keys consistently.

The store talks to Redis through `redis.asyncio` when a client is given
(see `contentsync.core.container`); otherwise it uses an in-memory KV
suitable for unit tests and single-process dev servers.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any

import structlog

STATE_IN_PROGRESS = "in_progress"
STATE_SUCCEEDED = "succeeded"
STATE_FAILED = "failed"

DLQ_LIST = "sync:dlq"

log = structlog.get_logger(__name__)


def make_idem_key(identity_key: str) -> str:
    """Compose a stable idempotency key following the `sync:idem:{identity}` rule."""
    safe = str(identity_key).replace("\n", " ").replace("\r", " ")
    return f"sync:idem:{safe}"


class _InMemoryKV:
    """Sous-ensemble asynchrone de l'API Redis utilisé par le store."""

    def __init__(self) -> None:
        self._exp: dict[str, float] = {}
        self._vals: dict[str, str] = {}
        self._lists: dict[str, list[str]] = {}

    def _purge(self, key: str) -> None:
        exp = self._exp.get(key)
        if exp is not None and exp <= time.time():
            self._exp.pop(key, None)
            self._vals.pop(key, None)

    async def set(
        self, key: str, value: str, ex: int | None = None, nx: bool = False
    ) -> bool | None:
        self._purge(key)
        if nx and key in self._vals:
            return None
        self._vals[key] = value
        if ex:
            self._exp[key] = time.time() + int(ex)
        else:
            self._exp.pop(key, None)
        return True

    async def get(self, key: str) -> str | None:
        self._purge(key)
        return self._vals.get(key)

    async def delete(self, key: str) -> int:
        existed = key in self._vals
        self._vals.pop(key, None)
        self._exp.pop(key, None)
        return int(existed)

    async def rpush(self, list_key: str, value: str) -> int:
        bucket = self._lists.setdefault(list_key, [])
        bucket.append(value)
        return len(bucket)

    async def lrange(self, list_key: str, start: int, end: int) -> list[str]:
        items = list(self._lists.get(list_key, []))
        if end == -1:
            return items[start:]
        return items[start : end + 1]

    async def llen(self, list_key: str) -> int:
        return len(self._lists.get(list_key, []))

    async def aclose(self) -> None:
        return None


@dataclass
class IdempotencyStore:
    """Store d'idempotence des évènements avec TTL et file de lettres mortes."""

    ttl_seconds: int = 300
    client: Any = field(default=None)
    dlq_list: str = DLQ_LIST

    def __post_init__(self) -> None:
        """Initialise le client en mémoire si aucun client Redis n'est fourni."""
        if self.client is None:
            self.client = _InMemoryKV()

    async def acquire(self, key: str, ttl: int | None = None) -> bool:
        """Acquiert une clé (verrou in_progress) si elle n'existe pas encore."""
        ttl = int(ttl or self.ttl_seconds)
        ok = await self.client.set(key, STATE_IN_PROGRESS, ex=ttl, nx=True)
        return bool(ok)

    async def get_state(self, key: str) -> str | None:
        """Retourne l'état enregistré pour une clé, ou None si inconnue/expirée."""
        value = await self.client.get(key)
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def set_state(self, key: str, state: str, ttl: int | None = None) -> None:
        """Enregistre un état (in_progress/succeeded/failed) avec TTL."""
        ttl = int(ttl or self.ttl_seconds)
        await self.client.set(key, state, ex=ttl)

    async def release(self, key: str) -> None:
        """Supprime la clé (l'évènement pourra être retraité)."""
        await self.client.delete(key)

    async def push_dead_letter(self, entry: dict[str, Any]) -> None:
        """Ajoute une entrée JSON `{webhook_id, identity, reason, ts, ...}` à la DLQ."""
        payload = json.dumps({**entry, "ts": entry.get("ts", time.time())}, default=str)
        await self.client.rpush(self.dlq_list, payload)
        log.warning("dead_letter_pushed", queue=self.dlq_list, webhook_id=entry.get("webhook_id"))

    async def dead_letters(self, limit: int = 100) -> list[dict[str, Any]]:
        """Retourne les dernières entrées de la DLQ (les plus anciennes d'abord)."""
        raw = await self.client.lrange(self.dlq_list, -limit if limit > 0 else 0, -1)
        out: list[dict[str, Any]] = []
        for item in raw:
            if isinstance(item, bytes):
                item = item.decode("utf-8")
            out.append(json.loads(item))
        return out

    async def close(self) -> None:
        """Ferme le client sous-jacent."""
        await self.client.aclose()
