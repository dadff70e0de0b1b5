# Schémas Pydantic exposés par l'API (requêtes et réponses).

from pydantic import BaseModel, ConfigDict, Field


class WebhookResponse(BaseModel):
    """Réponse de la réception d'un webhook (miroir du résultat de traitement).

    Champs:
    - webhookId: identifiant de suivi attribué à la première réception
    - success / cacheInvalidated / duplicate / terminal / retryScheduled
    - retryCount: tentatives déjà effectuées
    - processingTime: durée de traitement (ms)
    - errors / errorCode: présents en cas d'échec
    - requestId: identifiant de la requête HTTP
    """

    model_config = ConfigDict(extra="allow")

    webhookId: str
    success: bool
    cacheInvalidated: bool = False
    retryCount: int = 0
    processingTime: float = 0.0
    duplicate: bool = False
    terminal: bool = False
    retryScheduled: bool = False
    errors: list[str] | None = None
    errorCode: str | None = None
    requestId: str | None = None


class WebhookHealthResponse(BaseModel):
    """État de la surface webhook."""

    status: str
    pendingRetries: int
    signatureRequired: bool


class FrequencyRequest(BaseModel):
    """Nouvelle période de polling (le plancher est appliqué côté serveur)."""

    interval_ms: int = Field(gt=0, alias="intervalMs")

    model_config = ConfigDict(populate_by_name=True)


class FrequencyResponse(BaseModel):
    """Période de polling effectivement appliquée."""

    pollingFrequencyMs: int


class ResolveAlertResponse(BaseModel):
    """Résultat de la résolution manuelle d'une alerte."""

    id: str
    resolved: bool
