"""Tests du client HTTP du store de contenu (transport httpx simulé)."""

from __future__ import annotations

import httpx
import pytest

from contentsync.domain.errors import FetchError
from contentsync.domain.events import ContentType
from contentsync.infra.content_source import HttpContentSource, InMemoryContentSource

BASE_URL = "http://cms.local"

ROWS = [
    {"id": 1, "status": "published", "updated_at": "2024-01-01T00:00:00Z", "title": "A"},
    {"id": 2, "status": "draft", "updated_at": "2024-01-02T00:00:00Z", "title": "B"},
]


def _handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/api/blogs/":
        return httpx.Response(200, json={"results": ROWS})
    if path == "/api/blogs/1/":
        return httpx.Response(200, json={"data": ROWS[0]})
    if path == "/api/blogs/2/":
        return httpx.Response(200, json={"data": ROWS[1]})
    if path == "/api/case-studies/":
        return httpx.Response(500, json={"detail": "boom"})
    return httpx.Response(404, json={"detail": "not found"})


def _source(handler=_handler) -> HttpContentSource:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return HttpContentSource(BASE_URL, client=client)


@pytest.mark.asyncio
async def test_public_list_drops_unpublished_rows() -> None:
    """Un élément non publié renvoyé par le store n'est jamais servi."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _handler(request)

    source = _source(handler)
    rows = await source.fetch_content_list(ContentType.ARTICLE)
    assert [r["id"] for r in rows] == [1]
    assert seen[0].url.params["status"] == "published"

    admin = await source.fetch_content_list(ContentType.ARTICLE, published_only=False)
    assert len(admin) == 2
    await source.aclose()


@pytest.mark.asyncio
async def test_item_reads() -> None:
    """Élément publié servi; brouillon et inconnu masqués."""
    source = _source()
    assert (await source.fetch_content_item(ContentType.ARTICLE, "1"))["title"] == "A"
    assert await source.fetch_content_item(ContentType.ARTICLE, "2") is None
    assert await source.fetch_content_item(ContentType.ARTICLE, "2", published_only=False)
    assert await source.fetch_content_item(ContentType.ARTICLE, "999") is None
    await source.aclose()


@pytest.mark.asyncio
async def test_snapshot_maps_rows() -> None:
    """L'instantané admin garde tous les statuts, réduits à id/updated_at/status."""
    source = _source()
    items = await source.fetch_content_snapshot(ContentType.ARTICLE)
    assert [(i.id, i.status) for i in items] == [("1", "published"), ("2", "draft")]
    assert items[1].last_modified == "2024-01-02T00:00:00Z"
    await source.aclose()


@pytest.mark.asyncio
async def test_server_error_raises_fetch_error() -> None:
    """Une erreur 5xx du store devient une `FetchError` rejouable."""
    source = _source()
    with pytest.raises(FetchError) as exc_info:
        await source.fetch_content_list(ContentType.CASE_STUDY)
    assert exc_info.value.retryable is True
    assert "500" in exc_info.value.message
    await source.aclose()


@pytest.mark.asyncio
async def test_unreachable_store_raises_fetch_error() -> None:
    """Une erreur réseau devient une `FetchError`."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    source = _source(handler)
    with pytest.raises(FetchError):
        await source.fetch_content_snapshot(ContentType.ARTICLE)
    await source.aclose()


@pytest.mark.asyncio
async def test_in_memory_source_mutations() -> None:
    """Les mutations du store en mémoire se reflètent dans les lectures."""
    source = InMemoryContentSource()
    source.upsert(ContentType.ARTICLE, "a", title="A")
    source.upsert(ContentType.ARTICLE, "b", status="draft")
    assert [r["id"] for r in await source.fetch_content_list(ContentType.ARTICLE)] == ["a"]
    statuses = {i.id: i.status for i in await source.fetch_content_snapshot(ContentType.ARTICLE)}
    assert statuses == {"a": "published", "b": "draft"}

    source.fail_next = 1
    with pytest.raises(FetchError):
        await source.fetch_content_item(ContentType.ARTICLE, "a")
    assert (await source.fetch_content_item(ContentType.ARTICLE, "a"))["title"] == "A"


@pytest.mark.asyncio
async def test_snapshot_follows_pagination() -> None:
    """Les pages suivantes (`next`) sont lues: aucun élément ne sort de l'instantané."""
    pages = {
        None: {"results": ROWS, "next": f"{BASE_URL}/api/blogs/?page=2"},
        "2": {
            "results": [{"id": 3, "status": "published", "updated_at": "2024-01-03T00:00:00Z"}],
            "next": None,
        },
    }
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=pages[request.url.params.get("page")])

    source = _source(handler)
    items = await source.fetch_content_snapshot(ContentType.ARTICLE)
    assert [i.id for i in items] == ["1", "2", "3"]
    assert len(seen) == 2
    assert seen[0].url.params["page_size"] == "200"

    rows = await source.fetch_content_list(ContentType.ARTICLE)
    assert [r["id"] for r in rows] == [1, 3]
    await source.aclose()


@pytest.mark.asyncio
async def test_pagination_loop_is_broken() -> None:
    """Un lien `next` qui reboucle sur une page déjà lue arrête le parcours."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"results": ROWS[:1], "next": f"{BASE_URL}/api/blogs/?page=1"}
        )

    source = _source(handler)
    items = await source.fetch_content_snapshot(ContentType.ARTICLE)
    assert [i.id for i in items] == ["1", "1"]
    await source.aclose()
