"""Planification des nouvelles tentatives avec backoff exponentiel borné.

Une seule tentative armée par webhook_id: armer une nouvelle tentative annule la précédente.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from contentsync.app.metrics import SYNC_PENDING_RETRIES

log = structlog.get_logger(__name__)


def backoff_delay_ms(
    retry_count: int, base_ms: int, multiplier: float, max_delay_ms: int
) -> float:
    """Délai avant la tentative suivante: min(base * multiplier**retry_count, max)."""
    return float(min(base_ms * (multiplier ** max(0, retry_count)), max_delay_ms))


@dataclass
class RetryHandle:
    """Tentative armée pour un webhook_id."""

    task: asyncio.Task
    attempt: int
    delay_s: float
    due_at: float


class RetryScheduler:
    """Table webhook_id → tentative armée (asyncio)."""

    def __init__(self) -> None:
        """Initialise une table vide."""
        self._handles: dict[str, RetryHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        """Nombre de tentatives armées."""
        return len(self._handles)

    def __contains__(self, webhook_id: object) -> bool:
        """Indique si une tentative est armée pour cet identifiant."""
        return webhook_id in self._handles

    def get(self, webhook_id: str) -> RetryHandle | None:
        """Retourne la tentative armée, si elle existe."""
        return self._handles.get(webhook_id)

    def schedule(
        self,
        webhook_id: str,
        attempt: int,
        delay_ms: float,
        callback: Callable[[], Awaitable[object]],
    ) -> RetryHandle:
        """Arme (ou réarme) la tentative d'un webhook_id.

        La tentative précédente éventuelle est annulée avant d'armer la nouvelle.
        """
        self.cancel(webhook_id)
        delay_s = max(0.0, float(delay_ms) / 1000.0)
        task = asyncio.create_task(self._run(webhook_id, delay_s, callback))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        handle = RetryHandle(
            task=task, attempt=attempt, delay_s=delay_s, due_at=time.time() + delay_s
        )
        self._handles[webhook_id] = handle
        SYNC_PENDING_RETRIES.set(len(self._handles))
        log.info("retry_scheduled", webhook_id=webhook_id, attempt=attempt, delay_ms=delay_ms)
        return handle

    async def _run(
        self, webhook_id: str, delay_s: float, callback: Callable[[], Awaitable[object]]
    ) -> None:
        await asyncio.sleep(delay_s)
        current = self._handles.get(webhook_id)
        if current is not None and current.task is asyncio.current_task():
            del self._handles[webhook_id]
            SYNC_PENDING_RETRIES.set(len(self._handles))
        try:
            await callback()
        except Exception:
            log.exception("retry_callback_failed", webhook_id=webhook_id)

    def cancel(self, webhook_id: str) -> bool:
        """Annule la tentative armée d'un webhook_id; True si une tentative existait."""
        handle = self._handles.pop(webhook_id, None)
        if handle is None:
            return False
        if handle.task is not asyncio.current_task():
            handle.task.cancel()
        SYNC_PENDING_RETRIES.set(len(self._handles))
        return True

    def cancel_all(self) -> int:
        """Annule toutes les tentatives armées; retourne leur nombre."""
        ids = list(self._handles)
        for webhook_id in ids:
            self.cancel(webhook_id)
        return len(ids)

    def pending(self) -> dict[str, RetryHandle]:
        """Copie de la table des tentatives armées."""
        return dict(self._handles)

    async def wait(self, timeout_s: float | None = None) -> None:
        """Attend l'exécution des tentatives armées, y compris celles qu'elles réarment."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout_s is None else loop.time() + timeout_s
        while self._tasks:
            tasks = list(self._tasks)
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            if remaining == 0.0:
                return
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.wait(tasks, timeout=remaining)
