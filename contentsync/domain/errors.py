"""Taxonomie des erreurs du cœur de synchronisation.

Chaque erreur porte un `code` stable (journaux, réponses HTTP, métriques) et un statut HTTP
indicatif utilisé par la surface webhook. Seules les `ProcessingError` sont rejouées; les erreurs
de validation, d'authenticité et de fraîcheur sont renvoyées immédiatement à l'appelant.
"""

from __future__ import annotations

from typing import Any

from contentsync.core.http_constants import (
    HTTP_BAD_GATEWAY,
    HTTP_BAD_REQUEST,
    HTTP_UNAUTHORIZED,
    HTTP_UNPROCESSABLE_ENTITY,
)


class SyncError(Exception):
    """Erreur de base du cœur de synchronisation."""

    code = "sync_error"
    http_status = HTTP_UNPROCESSABLE_ENTITY
    retryable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialise l'erreur avec un message et des détails optionnels."""
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(SyncError):
    """Évènement de changement mal formé ou incomplet."""

    code = "validation_error"
    http_status = HTTP_BAD_REQUEST


class StaleEventError(ValidationError):
    """Horodatage hors de la fenêtre de fraîcheur (anti-rejeu)."""

    code = "stale_event"


class AuthenticityError(SyncError):
    """Signature absente de la valeur attendue."""

    code = "authenticity_error"
    http_status = HTTP_UNAUTHORIZED


class ProcessingError(SyncError):
    """Échec d'un handler ou de l'invalidation; rejoué avec backoff."""

    code = "processing_error"
    retryable = True


class FetchError(SyncError):
    """Échec de lecture du store de contenu faisant autorité."""

    code = "fetch_error"
    http_status = HTTP_BAD_GATEWAY
    retryable = True
