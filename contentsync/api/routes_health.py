"""
Endpoint de santé du cœur de synchronisation.

Expose `/health`: statut dérivé des seuils franchis, agrégats, alertes ouvertes, état du polling
et backend de stockage.
"""

from fastapi import APIRouter, Depends

from contentsync.api.deps import get_container
from contentsync.core.container import Container

router = APIRouter(tags=["health"])


@router.get("/health")
def health(container: Container = Depends(get_container)):
    """Retourne la santé courante et le backend de stockage."""
    status = container.core.get_health_status()
    status["storage"] = container.storage_backend
    return status
