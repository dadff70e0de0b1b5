"""
Réception des webhooks CMS de changement de contenu.

Contrôles d'entrée (avant le processeur):
- Content-Type JSON obligatoire (415);
- taille maximale de la charge utile (413);
- JSON valide (400, évènement de sécurité de faible gravité);
- champs requis et énumérations (400).

Le résultat du processeur est ensuite converti en statut HTTP: 200 succès (y compris doublon),
400 validation/fraîcheur, 401 signature, 422 échec de traitement.
"""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from contentsync.api.deps import get_container, get_request_id
from contentsync.api.errors import payload_too_large, unsupported_media_type
from contentsync.api.schemas import WebhookHealthResponse, WebhookResponse
from contentsync.core.container import Container
from contentsync.core.http_constants import (
    HTTP_BAD_REQUEST,
    HTTP_OK,
    HTTP_UNAUTHORIZED,
    HTTP_UNPROCESSABLE_ENTITY,
)
from contentsync.domain.errors import (
    AuthenticityError,
    StaleEventError,
    ValidationError,
)
from contentsync.domain.events import ChangeEvent, ProcessingResult

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

_STATUS_BY_CODE = {
    ValidationError.code: HTTP_BAD_REQUEST,
    StaleEventError.code: HTTP_BAD_REQUEST,
    AuthenticityError.code: HTTP_UNAUTHORIZED,
}


def status_for_result(result: ProcessingResult) -> int:
    """Statut HTTP correspondant à un résultat de traitement."""
    if result.success:
        return HTTP_OK
    return _STATUS_BY_CODE.get(result.error_code or "", HTTP_UNPROCESSABLE_ENTITY)


def _respond(result: ProcessingResult, request_id: str | None) -> JSONResponse:
    return JSONResponse(
        status_code=status_for_result(result),
        content={**result.to_dict(), "requestId": request_id},
    )


@router.post("/content-sync", response_model=WebhookResponse)
async def receive_content_sync(
    request: Request,
    container: Container = Depends(get_container),
    x_webhook_signature: str | None = Header(default=None),
):
    """Reçoit une notification de changement et la transmet au cœur de synchronisation."""
    request_id = get_request_id(request)
    max_bytes = container.settings.WEBHOOK_MAX_PAYLOAD_BYTES

    content_type = request.headers.get("content-type", "")
    if "application/json" not in content_type.lower():
        raise unsupported_media_type("Content-Type must be application/json", request_id)

    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise payload_too_large(f"Payload exceeds {max_bytes} bytes", request_id)
    body = await request.body()
    if len(body) > max_bytes:
        raise payload_too_large(f"Payload exceeds {max_bytes} bytes", request_id)

    processor = container.processor
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, ValueError):
        container.recorder.record_security(
            "invalid_json", "low", {"size": len(body)}, request_id
        )
        result = processor.reject(ValidationError("Invalid JSON payload"), None, request_id)
        return _respond(result, request_id)

    try:
        event = ChangeEvent.from_payload(payload)
    except ValidationError as exc:
        return _respond(processor.reject(exc, payload, request_id), request_id)

    result = await container.core.notify_change(event, x_webhook_signature, request_id)
    return _respond(result, request_id)


@router.get("/content-sync/health", response_model=WebhookHealthResponse)
def webhook_health(container: Container = Depends(get_container)):
    """État de la surface webhook (tentatives armées, signature exigée)."""
    return {
        "status": "ok",
        "pendingRetries": container.processor.pending_retries(),
        "signatureRequired": container.processor.require_signature,
    }
