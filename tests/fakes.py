"""
Fakes et helpers pour les tests unitaires.

Ce module fournit des évènements de changement prêts à l'emploi, un invalidateur défaillant
contrôlable et un collecteur d'évènements diffusés.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

from contentsync.domain.events import ChangeEvent, ContentAction, ContentType, EventSource
from contentsync.infra.broadcast import UpdateEvent
from contentsync.services.invalidation import InvalidationEngine, Strength

TEST_SECRET = "test-webhook-secret"


def make_event(
    action: str = "update",
    content_type: str = "article",
    content_id: str = "42",
    age_s: float = 0.0,
    status: str | None = "published",
    source: EventSource = EventSource.WEBHOOK,
    **extra: Any,
) -> ChangeEvent:
    """
    Construit un évènement de changement horodaté `age_s` secondes dans le passé.

    Args:
        action: action de mutation.
        content_type: type de contenu.
        content_id: identifiant de l'élément.
        age_s: âge de l'évènement (négatif pour un horodatage futur).
        status: statut annoncé dans `data` (None pour ne pas en envoyer).
        source: origine de l'évènement.
    """
    data = {"status": status} if status is not None else None
    return ChangeEvent(
        action=ContentAction(action),
        content_type=ContentType(content_type),
        content_id=content_id,
        timestamp=datetime.now(UTC) - timedelta(seconds=age_s),
        data=data,
        source=source,
        **extra,
    )


def make_payload(
    action: str = "publish", content_type: str = "article", content_id: str = "42", **extra: Any
) -> dict[str, Any]:
    """Charge utile webhook au format CMS, horodatée maintenant."""
    payload: dict[str, Any] = {
        "action": action,
        "contentType": content_type,
        "contentId": content_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }
    payload.update(extra)
    return payload


class FlakyInvalidator:
    """
    Invalidateur qui échoue `failures` fois avant de déléguer au moteur réel.

    Permet de tester le rejeu et l'échec terminal sans dépendre d'un store défaillant.
    """

    def __init__(self, engine: InvalidationEngine, failures: int, exc: Exception | None = None):
        """Initialise l'invalidateur avec le nombre d'échecs à produire."""
        self.engine = engine
        self.failures = failures
        self.exc = exc or RuntimeError("cache backend unavailable")
        self.calls = 0

    async def invalidate(
        self,
        content_type: ContentType,
        content_id: str,
        strength: Strength = Strength.STANDARD,
        action: ContentAction | None = None,
        trigger: str = "manual",
    ) -> list[str]:
        """Échoue tant que le quota d'échecs n'est pas épuisé."""
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.exc
        return await self.engine.invalidate(
            content_type, content_id, strength=strength, action=action, trigger=trigger
        )

    def holds_visible(self, content_type: ContentType, content_id: str) -> bool:
        """Délègue au moteur réel."""
        return self.engine.holds_visible(content_type, content_id)


class UpdateCollector:
    """Listener de bus qui conserve les évènements reçus."""

    def __init__(self) -> None:
        """Initialise une liste vide."""
        self.events: list[UpdateEvent] = []

    def __call__(self, event: UpdateEvent) -> None:
        """Enregistre l'évènement."""
        self.events.append(event)


class YieldingKV:
    """Client KV qui rend la main à la boucle avant chaque appel, comme un aller-retour Redis."""

    def __init__(self, inner: Any) -> None:
        """Enveloppe un client KV asynchrone."""
        self.inner = inner
        self.calls: list[str] = []

    def __getattr__(self, name: str) -> Any:
        method = getattr(self.inner, name)

        async def call(*args: Any, **kwargs: Any) -> Any:
            self.calls.append(name)
            await asyncio.sleep(0)
            return await method(*args, **kwargs)

        return call
