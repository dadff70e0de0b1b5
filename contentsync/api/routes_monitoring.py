"""Routes d'exploitation du Monitor (export, alertes)."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from contentsync.api.deps import get_core, get_request_id
from contentsync.api.errors import not_found
from contentsync.api.schemas import ResolveAlertResponse
from contentsync.services.sync_core import ContentSyncCore

router = APIRouter(prefix="/monitoring", tags=["monitoring"])


@router.get("/export")
def export_metrics(core: ContentSyncCore = Depends(get_core)):
    """Instantané JSON des agrégats pour une ingestion externe."""
    return Response(core.export_metrics(), media_type="application/json")


@router.get("/alerts")
def list_alerts(include_resolved: bool = False, core: ContentSyncCore = Depends(get_core)):
    """Alertes ouvertes (ou toutes avec `include_resolved=true`)."""
    monitor = core.monitor
    alerts = monitor.get_all_alerts() if include_resolved else monitor.get_active_alerts()
    return {"alerts": [a.to_dict() for a in alerts]}


@router.post("/alerts/check")
def check_alerts(core: ContentSyncCore = Depends(get_core)):
    """Évalue les seuils immédiatement; retourne les alertes nouvellement ouvertes."""
    created = core.monitor.check_alerts()
    return {"created": [a.to_dict() for a in created]}


@router.post("/alerts/{alert_id}/resolve", response_model=ResolveAlertResponse)
def resolve_alert(alert_id: str, request: Request, core: ContentSyncCore = Depends(get_core)):
    """Résout manuellement une alerte ouverte (404 si inconnue ou déjà résolue)."""
    if not core.monitor.resolve_alert(alert_id):
        raise not_found(f"No open alert with id {alert_id}", get_request_id(request))
    return {"id": alert_id, "resolved": True}


@router.get("/realtime")
def realtime(core: ContentSyncCore = Depends(get_core)):
    """Activité de la dernière minute."""
    return core.monitor.get_realtime_metrics()
