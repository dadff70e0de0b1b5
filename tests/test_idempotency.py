"""Tests pour le store d'idempotence des évènements.

Ce module teste la composition des clés, les états in_progress/succeeded/failed, l'expiration et
la file de lettres mortes, sur le KV en mémoire et sur un client Redis simulé.
"""

from __future__ import annotations

import time
from unittest.mock import AsyncMock

import pytest

from contentsync.infra.ops.idempotency import (
    DLQ_LIST,
    STATE_FAILED,
    STATE_IN_PROGRESS,
    STATE_SUCCEEDED,
    IdempotencyStore,
    _InMemoryKV,
    make_idem_key,
)

IDENTITY = "publish:article:42:2024-05-01T10:00:00+00:00"


def test_make_idem_key() -> None:
    """Teste la composition des clés d'idempotence."""
    assert make_idem_key(IDENTITY) == f"sync:idem:{IDENTITY}"
    assert make_idem_key("a\nb\rc") == "sync:idem:a b c"


@pytest.mark.asyncio
async def test_in_memory_kv_set_nx() -> None:
    """Teste set(nx=True) du store en mémoire."""
    kv = _InMemoryKV()
    assert await kv.set("key1", "value1", ex=60, nx=True) is True
    assert await kv.set("key1", "value2", ex=60, nx=True) is None
    assert await kv.get("key1") == "value1"


@pytest.mark.asyncio
async def test_in_memory_kv_expiration(monkeypatch) -> None:
    """Teste l'expiration des clés en mémoire."""
    kv = _InMemoryKV()
    await kv.set("key1", "value1", ex=1)
    now = time.time()
    monkeypatch.setattr(time, "time", lambda: now + 2)
    assert await kv.get("key1") is None
    assert await kv.set("key1", "value2", ex=60, nx=True) is True


@pytest.mark.asyncio
async def test_store_state_transitions() -> None:
    """Acquisition, changement d'état et libération d'une identité."""
    store = IdempotencyStore(ttl_seconds=60)
    key = make_idem_key(IDENTITY)
    assert await store.get_state(key) is None
    assert await store.acquire(key) is True
    assert await store.acquire(key) is False
    assert await store.get_state(key) == STATE_IN_PROGRESS
    await store.set_state(key, STATE_SUCCEEDED)
    assert await store.get_state(key) == STATE_SUCCEEDED
    await store.set_state(key, STATE_FAILED)
    assert await store.get_state(key) == STATE_FAILED
    await store.release(key)
    assert await store.get_state(key) is None


@pytest.mark.asyncio
async def test_dead_letters_roundtrip() -> None:
    """Les entrées de DLQ sont conservées dans l'ordre d'arrivée."""
    store = IdempotencyStore()
    await store.push_dead_letter({"webhook_id": "wh_1", "reason": "boom"})
    await store.push_dead_letter({"webhook_id": "wh_2", "reason": "boom"})
    letters = await store.dead_letters()
    assert [d["webhook_id"] for d in letters] == ["wh_1", "wh_2"]
    assert all("ts" in d for d in letters)
    assert [d["webhook_id"] for d in await store.dead_letters(limit=1)] == ["wh_2"]


@pytest.mark.asyncio
async def test_store_with_redis_client() -> None:
    """Le store délègue à un client `redis.asyncio` (réponses en bytes décodées)."""
    client = AsyncMock()
    client.get.return_value = b"succeeded"
    client.lrange.return_value = [b'{"webhook_id": "wh_9", "ts": 1}']
    store = IdempotencyStore(ttl_seconds=30, client=client)

    await store.set_state("sync:idem:x", STATE_SUCCEEDED)
    client.set.assert_awaited_with("sync:idem:x", STATE_SUCCEEDED, ex=30)
    assert await store.get_state("sync:idem:x") == STATE_SUCCEEDED

    await store.push_dead_letter({"webhook_id": "wh_9"})
    assert client.rpush.await_args.args[0] == DLQ_LIST
    assert (await store.dead_letters())[0]["webhook_id"] == "wh_9"

    await store.close()
    client.aclose.assert_awaited_once()
