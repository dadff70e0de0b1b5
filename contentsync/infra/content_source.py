"""Accès au store de contenu faisant autorité.

Objectif du module
------------------
- Encapsuler les lectures du CMS (instantané admin, listes et éléments publiés).
- Fournir une implémentation HTTP (httpx) et une implémentation en mémoire (dev/tests).

Les lectures publiques filtrent toujours sur le statut `published`, y compris côté client: un
élément non publié renvoyé par le store n'est jamais servi aux consommateurs.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from contentsync.core.http_constants import HTTP_NOT_FOUND
from contentsync.domain.errors import FetchError
from contentsync.domain.events import PUBLISHED_STATUS, ContentType
from contentsync.domain.snapshots import SnapshotItem

log = structlog.get_logger(__name__)

# Chemins REST par type de contenu.
CONTENT_PATHS: dict[ContentType, str] = {
    ContentType.ARTICLE: "/api/blogs/",
    ContentType.CASE_STUDY: "/api/case-studies/",
}

PAGE_SIZE = "200"
MAX_PAGES = 500


def _is_published(item: dict[str, Any]) -> bool:
    return item.get("status") == PUBLISHED_STATUS


class ContentSource(ABC):
    """Interface de lecture du store faisant autorité."""

    @abstractmethod
    async def fetch_content_snapshot(self, content_type: ContentType) -> list[SnapshotItem]:
        """Lecture admin de tous les éléments (tous statuts) pour un type."""

    @abstractmethod
    async def fetch_content_list(
        self, content_type: ContentType, published_only: bool = True
    ) -> list[dict[str, Any]]:
        """Liste des éléments d'un type."""

    @abstractmethod
    async def fetch_content_item(
        self, content_type: ContentType, content_id: str, published_only: bool = True
    ) -> dict[str, Any] | None:
        """Élément par identifiant, ou None s'il n'existe pas (ou n'est pas visible)."""

    async def aclose(self) -> None:
        """Libère les ressources (aucune par défaut)."""
        return None


class HttpContentSource(ContentSource):
    """Client httpx du CMS (listes `{results: [...]}`, éléments `{data: {...}}`)."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout_s: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialise le client HTTP avec des timeouts bornés."""
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        timeout = httpx.Timeout(connect=timeout_s, read=timeout_s, write=timeout_s, pool=timeout_s)
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout, limits=limits
        )

    async def _get(self, path: str, params: dict[str, str] | None = None) -> httpx.Response:
        try:
            resp = await self._client.get(path, params=params)
            if resp.status_code == HTTP_NOT_FOUND:
                return resp
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code if exc.response is not None else 0
            raise FetchError(f"content store returned {code}", {"path": path}) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"content store unreachable: {exc}", {"path": path}) from exc

    async def _get_all(
        self, path: str, params: dict[str, str] | None = None
    ) -> list[dict[str, Any]]:
        """Parcourt toutes les pages `{results, next}` d'une liste paginée."""
        rows: list[dict[str, Any]] = []
        url: str | None = path
        seen: set[str] = set()
        while url and url not in seen and len(seen) < MAX_PAGES:
            seen.add(url)
            resp = await self._get(url, params=params if url == path else None)
            body = resp.json() or {}
            rows.extend(body.get("results") or [])
            url = body.get("next")
        if url and len(seen) >= MAX_PAGES:
            log.warning("content_pagination_truncated", path=path, pages=len(seen))
        return rows

    async def fetch_content_snapshot(self, content_type: ContentType) -> list[SnapshotItem]:
        """Lecture admin (jeton requis côté CMS) réduite à id/updated_at/status, toutes pages."""
        rows = await self._get_all(CONTENT_PATHS[content_type], params={"page_size": PAGE_SIZE})
        return [
            SnapshotItem(
                id=str(row.get("id")),
                last_modified=str(row.get("updated_at") or ""),
                status=str(row.get("status") or ""),
            )
            for row in rows
            if row.get("id") is not None
        ]

    async def fetch_content_list(
        self, content_type: ContentType, published_only: bool = True
    ) -> list[dict[str, Any]]:
        """Liste publique (filtrée `status=published`) ou admin."""
        params = {"page_size": PAGE_SIZE}
        if published_only:
            params["status"] = PUBLISHED_STATUS
        rows = await self._get_all(CONTENT_PATHS[content_type], params=params)
        if published_only:
            dropped = [r.get("id") for r in rows if not _is_published(r)]
            if dropped:
                log.warning(
                    "unpublished_content_filtered",
                    content_type=content_type.value,
                    ids=dropped,
                )
            rows = [r for r in rows if _is_published(r)]
        return rows

    async def fetch_content_item(
        self, content_type: ContentType, content_id: str, published_only: bool = True
    ) -> dict[str, Any] | None:
        """Élément par identifiant; un élément non publié est masqué en lecture publique."""
        resp = await self._get(f"{CONTENT_PATHS[content_type]}{content_id}/")
        if resp.status_code == HTTP_NOT_FOUND:
            return None
        item = (resp.json() or {}).get("data")
        if not item:
            return None
        if published_only and not _is_published(item):
            return None
        return item

    async def aclose(self) -> None:
        """Ferme le client httpx."""
        await self._client.aclose()


class InMemoryContentSource(ContentSource):
    """Store en mémoire (dev, tests) avec mutations explicites.

    Chaque mutation met à jour `updated_at`, comme le ferait le CMS.
    """

    def __init__(self, latency_s: float = 0.0) -> None:
        """Initialise un store vide; `latency_s` simule la latence réseau."""
        self._items: dict[ContentType, dict[str, dict[str, Any]]] = {ct: {} for ct in ContentType}
        self.latency_s = latency_s
        self.fail_next: int = 0
        self.calls: int = 0

    @staticmethod
    def _now() -> str:
        return datetime.now(UTC).isoformat()

    def upsert(
        self,
        content_type: ContentType,
        content_id: str,
        status: str = PUBLISHED_STATUS,
        **fields: Any,
    ) -> dict[str, Any]:
        """Crée ou met à jour un élément."""
        item = dict(self._items[content_type].get(content_id, {}))
        item.update(fields)
        item.update({"id": content_id, "status": status, "updated_at": self._now()})
        self._items[content_type][content_id] = item
        return item

    def set_status(self, content_type: ContentType, content_id: str, status: str) -> None:
        """Change le statut sans toucher `updated_at` (transition de publication seule)."""
        self._items[content_type][content_id]["status"] = status

    def remove(self, content_type: ContentType, content_id: str) -> None:
        """Supprime un élément s'il existe."""
        self._items[content_type].pop(content_id, None)

    async def _tick(self) -> None:
        self.calls += 1
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise FetchError("content store unavailable")

    async def fetch_content_snapshot(self, content_type: ContentType) -> list[SnapshotItem]:
        """Instantané de tous les éléments, tous statuts."""
        await self._tick()
        return [
            SnapshotItem(id=i["id"], last_modified=i["updated_at"], status=i["status"])
            for i in self._items[content_type].values()
        ]

    async def fetch_content_list(
        self, content_type: ContentType, published_only: bool = True
    ) -> list[dict[str, Any]]:
        """Copie des éléments (publiés uniquement par défaut)."""
        await self._tick()
        rows = [dict(i) for i in self._items[content_type].values()]
        if published_only:
            rows = [r for r in rows if _is_published(r)]
        return sorted(rows, key=lambda r: r["id"])

    async def fetch_content_item(
        self, content_type: ContentType, content_id: str, published_only: bool = True
    ) -> dict[str, Any] | None:
        """Copie d'un élément ou None."""
        await self._tick()
        item = self._items[content_type].get(content_id)
        if item is None or (published_only and not _is_published(item)):
            return None
        return dict(item)
