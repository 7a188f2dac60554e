# tests/test_adapter.py
import asyncio
import json

import httpx
import pytest

from collector.adapter import RawPayload, SourceAdapter
from collector.errors import ExtractionError, FetchError
from collector.utils import utcnow


def _payload(body, source="alpha", fmt="html", url="https://alpha.example/bestsellers"):
    return RawPayload(source=source, url=url, body=body, fetched_at=utcnow(), format=fmt)


@pytest.fixture
async def adapter_for(make_config, routing_transport):
    clients = []

    def _make(routes, **config_overrides):
        client = httpx.AsyncClient(transport=routing_transport(routes))
        clients.append(client)
        return SourceAdapter(make_config(**config_overrides), client)

    yield _make
    for client in clients:
        await client.aclose()


async def test_fetch_returns_payload(adapter_for, listing, books):
    adapter = adapter_for({"alpha.example": listing(books("a", 2))})
    payload = await adapter.fetch()
    assert payload.source == "alpha"
    assert payload.status_code == 200
    assert "A Book 1" in payload.body


@pytest.mark.parametrize(
    "route, kind",
    [
        (httpx.ReadTimeout, FetchError.TIMEOUT),
        (httpx.ConnectError, FetchError.CONNECTION),
        (503, FetchError.HTTP_STATUS),
        (404, FetchError.HTTP_STATUS),
    ],
)
async def test_fetch_error_kinds(adapter_for, route, kind):
    adapter = adapter_for({"alpha.example": route})
    with pytest.raises(FetchError) as exc:
        await adapter.fetch()
    assert exc.value.kind == kind
    if kind == FetchError.HTTP_STATUS:
        assert exc.value.status_code == route


async def test_slow_source_times_out(adapter_for):
    async def slow(request):
        await asyncio.sleep(5)
        return httpx.Response(200, text="late")

    adapter = adapter_for(
        {"alpha.example": slow},
        fetch={"endpoint": "https://alpha.example/bestsellers", "timeoutMs": 50},
    )
    with pytest.raises(FetchError) as exc:
        await adapter.fetch()
    assert exc.value.kind == FetchError.TIMEOUT


async def test_extract_maps_fields_and_resolves_urls(adapter_for, listing, books):
    adapter = adapter_for({})
    records = adapter.extract(_payload(listing(books("a", 3, price="$12.99"))))

    assert [r.position for r in records] == [1, 2, 3]
    first = records[0]
    assert first.values["title"] == "A Book 1"
    assert first.values["author"] == "Author a1"
    assert first.values["price"] == "$12.99"
    assert first.values["local_id"] == "a1"
    assert first.values["url"] == "https://alpha.example/book/a1"
    assert first.values["image_url"] == "https://alpha.example/covers/a1.jpg"
    assert first.missing_required == []


async def test_extract_uses_fallback_container(adapter_for, listing, books):
    adapter = adapter_for({})
    page = listing(books("a", 2), wrapper="ul", wrapper_attrs='id="bestseller-list"')
    records = adapter.extract(_payload(page))
    assert len(records) == 2
    assert adapter.fallback_hits == {"container": 1}


async def test_extract_empty_listing_is_not_an_error(adapter_for, listing):
    assert adapter_for({}).extract(_payload(listing([]))) == []


async def test_extract_missing_container_raises(adapter_for, books, listing):
    page = listing(books("a", 2), wrapper="div", wrapper_attrs='class="grid"')
    with pytest.raises(ExtractionError) as exc:
        adapter_for({}).extract(_payload(page))
    assert exc.value.kind == ExtractionError.CONTAINER_NOT_FOUND


async def test_extract_flags_required_and_optional_no_match(adapter_for):
    page = (
        '<html><body><ol class="bestsellers">'
        '<li class="book" data-id="1"><span class="title">No author</span></li>'
        "</ol></body></html>"
    )
    (record,) = adapter_for({}).extract(_payload(page))
    assert record.missing_required == ["author"]
    assert record.values["publisher"] is None
    assert any(w.startswith("publisher") for w in record.warnings)


async def test_extract_json_source(adapter_for):
    adapter = adapter_for(
        {},
        format="json",
        container=["results"],
        item=["books"],
        fieldSelectors={
            "title": ["title"],
            "author": ["author", "contributor"],
            "price": ["price"],
            "rank": ["rank"],
            "url": ["amazon_product_url", "link"],
        },
    )
    body = json.dumps(
        {
            "results": {
                "books": [
                    {"rank": 1, "title": "FOURTH WING", "contributor": "by Rebecca Yarros", "price": "0.00", "link": "/fw"},
                    {"rank": 2, "title": "IRON FLAME", "author": "Rebecca Yarros", "price": 18.99},
                ]
            }
        }
    )
    records = adapter.extract(_payload(body, fmt="json"))
    assert [r.values["title"] for r in records] == ["FOURTH WING", "IRON FLAME"]
    assert records[0].matched["author"] == 1
    assert records[0].values["url"] == "https://alpha.example/fw"
    assert records[1].values["price"] == 18.99


async def test_extract_invalid_json_raises(adapter_for):
    adapter = adapter_for({}, format="json", container=["results"], item=["books"])
    with pytest.raises(ExtractionError):
        adapter.extract(_payload("<html>not json</html>", fmt="json"))


async def test_extract_json_scalar_items_are_flagged_not_fatal(adapter_for):
    adapter = adapter_for(
        {},
        format="json",
        container=["results"],
        item=["books"],
        fieldSelectors={"title": ["title"], "author": ["author"]},
    )
    body = json.dumps({"results": {"books": ["FOURTH WING", {"title": "IRON FLAME", "author": "Rebecca Yarros"}]}})
    first, second = adapter.extract(_payload(body, fmt="json"))
    assert first.missing_required == ["title", "author"]
    assert second.values == {"title": "IRON FLAME", "author": "Rebecca Yarros"}
    assert second.missing_required == []
