# ============================================================
# Module : contentsync/domain/events.py
# Objet  : Évènement de changement canonique et résultat de traitement.
# Invariants :
#  - identity_key = action:content_type:content_id:timestamp
#  - webhook_id est attribué à la première réception puis conservé
#    pendant toutes les tentatives.
# ============================================================
"""Modèles de domaine pour les notifications de changement de contenu.

Un `ChangeEvent` est la notification canonique d'une mutation de contenu, qu'elle provienne d'un
webhook CMS, du détecteur de dérive ou d'un déclenchement manuel. Le `ProcessingResult` est
l'enregistrement structuré produit par chaque invocation du processeur de webhooks.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from contentsync.domain.errors import ValidationError


class ContentAction(str, Enum):
    """Actions de mutation reconnues."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    PUBLISH = "publish"
    UNPUBLISH = "unpublish"


class ContentType(str, Enum):
    """Types de contenu synchronisés."""

    ARTICLE = "article"
    CASE_STUDY = "case-study"


class EventSource(str, Enum):
    """Origine d'un évènement de changement."""

    WEBHOOK = "webhook"
    POLLER = "poller"
    MANUAL = "manual"


# Actions qui modifient la visibilité publique: invalidation systématique et immédiate.
VISIBILITY_ACTIONS = frozenset(
    {ContentAction.DELETE, ContentAction.PUBLISH, ContentAction.UNPUBLISH}
)

PUBLISHED_STATUS = "published"

_REQUIRED_FIELDS = (
    ("action", "action"),
    ("contentType", "content_type"),
    ("contentId", "content_id"),
    ("timestamp", "timestamp"),
)


def _pick(payload: dict[str, Any], camel: str, snake: str) -> Any:
    if camel in payload:
        return payload[camel]
    return payload.get(snake)


def parse_timestamp(value: Any) -> datetime:
    """Convertit un horodatage (ISO-8601, epoch ms ou datetime) en datetime UTC.

    Raises:
        ValidationError: si la valeur n'est pas interprétable.
    """
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, bool):
        raise ValidationError("Invalid timestamp format")
    elif isinstance(value, int | float):
        try:
            ts = datetime.fromtimestamp(float(value) / 1000.0, tz=UTC)
        except (OverflowError, OSError, ValueError) as exc:
            raise ValidationError("Invalid timestamp format") from exc
    elif isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(raw)
        except ValueError as exc:
            raise ValidationError("Invalid timestamp format") from exc
    else:
        raise ValidationError("Invalid timestamp format")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


@dataclass(frozen=True)
class ChangeEvent:
    """Notification canonique d'une mutation de contenu.

    Attributs
    - action: type de mutation (create/update/delete/publish/unpublish).
    - content_type: type de contenu concerné.
    - content_id: identifiant opaque, non vide.
    - timestamp: date de création de l'évènement (UTC).
    - retry_count: nombre de tentatives déjà effectuées.
    - signature: jeton d'authenticité optionnel.
    - data: charge utile libre envoyée par le CMS (title, status, ...).
    - webhook_id: identité de suivi attribuée à la première réception.
    - source: origine de l'évènement.
    """

    action: ContentAction
    content_type: ContentType
    content_id: str
    timestamp: datetime
    retry_count: int = 0
    signature: str | None = None
    data: dict[str, Any] | None = None
    webhook_id: str | None = None
    source: EventSource = EventSource.WEBHOOK

    @classmethod
    def from_payload(cls, payload: Any) -> ChangeEvent:
        """Construit un évènement depuis une charge utile webhook (camelCase ou snake_case).

        Raises:
            ValidationError: champ manquant, énumération inconnue ou horodatage invalide.
        """
        if not isinstance(payload, dict):
            raise ValidationError("Payload must be a JSON object")
        for camel, snake in _REQUIRED_FIELDS:
            if _pick(payload, camel, snake) in (None, ""):
                raise ValidationError(f"Missing required field: {camel}")

        raw_action = _pick(payload, "action", "action")
        try:
            action = ContentAction(raw_action)
        except ValueError as exc:
            raise ValidationError(f"Invalid action: {raw_action}") from exc

        raw_type = _pick(payload, "contentType", "content_type")
        try:
            content_type = ContentType(raw_type)
        except ValueError as exc:
            raise ValidationError(f"Invalid contentType: {raw_type}") from exc

        content_id = str(_pick(payload, "contentId", "content_id")).strip()
        if not content_id:
            raise ValidationError("Missing required field: contentId")

        raw_retry = _pick(payload, "retryCount", "retry_count") or 0
        try:
            retry_count = int(raw_retry)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid retryCount: {raw_retry}") from exc
        if retry_count < 0:
            raise ValidationError(f"Invalid retryCount: {raw_retry}")

        data = payload.get("data")
        if data is not None and not isinstance(data, dict):
            raise ValidationError("Invalid data: expected an object")

        return cls(
            action=action,
            content_type=content_type,
            content_id=content_id,
            timestamp=parse_timestamp(payload["timestamp"]),
            retry_count=retry_count,
            signature=payload.get("signature"),
            data=data,
        )

    @property
    def identity_key(self) -> str:
        """Clé d'identité logique (sans compteur) utilisée pour la déduplication."""
        return ":".join(
            (
                self.action.value,
                self.content_type.value,
                self.content_id,
                self.timestamp.isoformat(),
            )
        )

    @property
    def status(self) -> str | None:
        """Statut de visibilité annoncé dans la charge utile, s'il existe."""
        if not self.data:
            return None
        value = self.data.get("status")
        return str(value) if value is not None else None

    def canonical_body(self) -> bytes:
        """Sérialisation canonique signée (hors signature et compteur de tentatives)."""
        body = {
            "action": self.action.value,
            "contentType": self.content_type.value,
            "contentId": self.content_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data or {},
        }
        return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def sanitized(self) -> dict[str, Any]:
        """Représentation journalisable (la signature n'est jamais exposée)."""
        return {
            "action": self.action.value,
            "contentType": self.content_type.value,
            "contentId": self.content_id,
            "timestamp": self.timestamp.isoformat(),
            "retryCount": self.retry_count,
            "source": self.source.value,
            "webhookId": self.webhook_id,
        }

    def next_attempt(self) -> ChangeEvent:
        """Retourne l'évènement de la tentative suivante (même webhook_id)."""
        return replace(self, retry_count=self.retry_count + 1, signature=None)


@dataclass
class ProcessingResult:
    """Enregistrement structuré émis à chaque invocation du processeur."""

    webhook_id: str
    success: bool = False
    cache_invalidated: bool = False
    retry_count: int = 0
    processing_time_ms: float = 0.0
    errors: list[str] = field(default_factory=list)
    error_code: str | None = None
    duplicate: bool = False
    terminal: bool = False
    retry_scheduled: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Sérialise le résultat (clés camelCase, comme les réponses webhook)."""
        out: dict[str, Any] = {
            "webhookId": self.webhook_id,
            "success": self.success,
            "cacheInvalidated": self.cache_invalidated,
            "retryCount": self.retry_count,
            "processingTime": round(self.processing_time_ms, 3),
            "duplicate": self.duplicate,
            "terminal": self.terminal,
            "retryScheduled": self.retry_scheduled,
        }
        if self.errors:
            out["errors"] = list(self.errors)
        if self.error_code:
            out["errorCode"] = self.error_code
        return out
