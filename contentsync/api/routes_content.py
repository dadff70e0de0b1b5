"""Lectures consommateur du contenu publié, servies par le cache local."""

from fastapi import APIRouter, Depends, Request

from contentsync.api.deps import get_core, get_request_id
from contentsync.api.errors import not_found
from contentsync.domain.events import ContentType
from contentsync.services.sync_core import ContentSyncCore

router = APIRouter(prefix="/content", tags=["content"])


def _content_type(raw: str, request: Request) -> ContentType:
    try:
        return ContentType(raw)
    except ValueError:
        raise not_found(f"Unknown content type {raw}", get_request_id(request)) from None


@router.get("/{content_type}")
async def list_content(
    content_type: str, request: Request, core: ContentSyncCore = Depends(get_core)
):
    """Liste publiée d'un type de contenu."""
    ct = _content_type(content_type, request)
    return {"contentType": ct.value, "results": await core.read_list(ct)}


@router.get("/{content_type}/{content_id}")
async def get_content(
    content_type: str,
    content_id: str,
    request: Request,
    core: ContentSyncCore = Depends(get_core),
):
    """Élément publié; 404 s'il n'existe pas ou n'est pas publié."""
    ct = _content_type(content_type, request)
    item = await core.read_item(ct, content_id)
    if item is None:
        raise not_found(f"{ct.value} {content_id} not found", get_request_id(request))
    return {"data": item}
