"""Tests de la planification des nouvelles tentatives (backoff, unicité par webhook_id)."""

from __future__ import annotations

import asyncio

import pytest

from contentsync.services.retry_scheduler import RetryScheduler, backoff_delay_ms

BASE_MS = 100
MAX_MS = 5000
MULTIPLIER = 2.0


@pytest.mark.parametrize(
    ("retry_count", "expected"),
    [(0, 100.0), (1, 200.0), (2, 400.0), (5, 3200.0), (6, 5000.0), (20, 5000.0)],
)
def test_backoff_delay_is_bounded(retry_count: int, expected: float) -> None:
    """min(base * multiplier**n, max): 100, 200, 400 ms puis plafond."""
    assert backoff_delay_ms(retry_count, BASE_MS, MULTIPLIER, MAX_MS) == expected


@pytest.mark.asyncio
async def test_schedule_runs_callback_once() -> None:
    """La tentative armée s'exécute puis quitte la table."""
    scheduler = RetryScheduler()
    calls: list[int] = []

    async def cb() -> None:
        calls.append(1)

    scheduler.schedule("wh_1", 1, 1, cb)
    assert "wh_1" in scheduler
    assert len(scheduler) == 1
    await scheduler.wait(timeout_s=1)
    assert calls == [1]
    assert len(scheduler) == 0


@pytest.mark.asyncio
async def test_rescheduling_cancels_previous_handle() -> None:
    """Une seule tentative armée par webhook_id: réarmer annule la précédente."""
    scheduler = RetryScheduler()
    calls: list[str] = []

    async def first() -> None:
        calls.append("first")

    async def second() -> None:
        calls.append("second")

    old = scheduler.schedule("wh_1", 1, 50, first)
    scheduler.schedule("wh_1", 2, 1, second)
    assert len(scheduler) == 1
    assert scheduler.get("wh_1").attempt == 2
    await scheduler.wait(timeout_s=1)
    assert old.task.cancelled()
    assert calls == ["second"]


@pytest.mark.asyncio
async def test_cancel_all() -> None:
    """L'annulation globale vide la table et retourne le nombre de tentatives annulées."""
    scheduler = RetryScheduler()

    async def cb() -> None:
        raise AssertionError("should not run")

    scheduler.schedule("wh_1", 1, 1000, cb)
    scheduler.schedule("wh_2", 1, 1000, cb)
    assert scheduler.cancel_all() == 2
    assert scheduler.pending() == {}
    assert scheduler.cancel("wh_1") is False
    await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_callback_error_is_contained() -> None:
    """Une exception dans le callback est journalisée sans tuer le planificateur."""
    scheduler = RetryScheduler()

    async def boom() -> None:
        raise RuntimeError("boom")

    scheduler.schedule("wh_1", 1, 1, boom)
    await scheduler.wait(timeout_s=1)
    assert len(scheduler) == 0
