"""Routes de pilotage du détecteur de dérive."""

from fastapi import APIRouter, Depends

from contentsync.api.deps import get_core
from contentsync.api.schemas import FrequencyRequest, FrequencyResponse
from contentsync.services.sync_core import ContentSyncCore

router = APIRouter(prefix="/poller", tags=["poller"])


@router.get("/status")
def poller_status(core: ContentSyncCore = Depends(get_core)):
    """État courant du polling."""
    return core.detector.status()


@router.post("/force-check")
async def force_check(core: ContentSyncCore = Depends(get_core)):
    """Exécute une vérification immédiate (ignorée si une lecture est déjà en vol)."""
    result = await core.detector.force_check()
    return {
        "checked": result is not None,
        "changes": result.to_dict() if result is not None else None,
        "status": core.detector.status(),
    }


@router.put("/frequency", response_model=FrequencyResponse)
def set_frequency(body: FrequencyRequest, core: ContentSyncCore = Depends(get_core)):
    """Change la période de polling (plancher de 1000 ms)."""
    return {"pollingFrequencyMs": core.detector.set_frequency(body.interval_ms)}
