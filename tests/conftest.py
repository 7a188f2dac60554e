# tests/conftest.py
import sys
import os

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT_DIR)

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import httpx
import pytest
from bson import ObjectId

from collector.models import SourceAdapterConfig


def _matches(doc, q):
    for k, v in (q or {}).items():
        if isinstance(v, dict) and "$in" in v:
            if doc.get(k) not in v["$in"]:
                return False
        elif doc.get(k) != v:
            return False
    return True


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = list(docs)
        self._skip = 0
        self._limit = None

    def sort(self, order):
        """
        Sort the documents by the first (field, direction) pair.

        Mirrors Motor's sort() closely enough for the collector's queries,
        which always sort on a single ISO timestamp or integer field.
        """
        field, direction = order[0]
        self._docs.sort(key=lambda d: d.get(field), reverse=(direction < 0))
        return self

    def skip(self, n: int):
        self._skip = n
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    async def to_list(self, length=None):
        start = self._skip
        end = None if self._limit is None else start + self._limit
        return [dict(d) for d in self._docs[start:end]]


class FakeCollection:
    """In-memory stand-in for a Motor collection (equality and $in filters only)."""

    def __init__(self, docs=None):
        self.docs = list(docs or [])
        for d in self.docs:
            if "_id" not in d:
                d["_id"] = str(ObjectId())

    async def find_one(self, q, projection=None):
        for d in self.docs:
            if _matches(d, q):
                if projection:
                    return {k: v for k, v in d.items() if k == "_id" or k in projection}
                return dict(d)
        return None

    def find(self, q=None):
        return FakeCursor([d for d in self.docs if _matches(d, q)])

    async def insert_one(self, doc):
        doc = dict(doc)
        if "_id" not in doc:
            doc["_id"] = str(ObjectId())
        self.docs.append(doc)

        class R:
            inserted_id = doc["_id"]

        return R()

    async def update_one(self, q, u, upsert=False):
        """
        Apply a $set to the first matching document, inserting it on upsert.

        Returns:
            dict: {"matched_count": 0 or 1}
        """
        for sd in self.docs:
            if _matches(sd, q):
                sd.update(u.get("$set", {}))
                return {"matched_count": 1}
        if upsert:
            doc = dict(q)
            doc.update(u.get("$set", {}))
            self.docs.append(doc)
        return {"matched_count": 0}

    async def delete_many(self, q):
        before = len(self.docs)
        self.docs = [d for d in self.docs if not _matches(d, q)]

        class R:
            deleted_count = before - len(self.docs)

        return R()

    async def count_documents(self, q=None):
        return sum(1 for d in self.docs if _matches(d, q))


class FakeDB:
    def __init__(self):
        self.raw_snapshots = FakeCollection()
        self.collection_runs = FakeCollection()
        self.dataset_cache = FakeCollection()
        self.dataset_history = FakeCollection()


class FakeClock:
    """Controllable UTC clock shared by orchestrator and store in tests."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def fake_db(monkeypatch):
    """
    Patch collector.db.get_db so every storage helper hits an in-memory FakeDB.

    Returns:
        FakeDB: the database instance used by archive, store and run history
    """
    db = FakeDB()
    monkeypatch.setattr("collector.db.get_db", lambda: db)
    return db


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_config():
    """Factory for an HTML source config with bestseller-list style patterns."""

    def _make(source_id="alpha", endpoint=None, **overrides):
        data = {
            "sourceId": source_id,
            "format": "html",
            "currency": "USD",
            "container": ["ol.bestsellers", "ul#bestseller-list"],
            "item": ["li.book"],
            "fieldSelectors": {
                "local_id": ["@data-id"],
                "title": [".title", "h3"],
                "author": [".author"],
                "publisher": [".publisher"],
                "price": [".price"],
                "url": ["a@href"],
                "image_url": ["img@src"],
            },
            "required": ["title", "author"],
            "fetch": {
                "endpoint": endpoint or f"https://{source_id}.example/bestsellers",
                "rateLimitPerMinute": 600,
                "timeoutMs": 2000,
            },
        }
        data.update(overrides)
        return SourceAdapterConfig.model_validate(data)

    return _make


def render_listing(books, wrapper="ol", wrapper_attrs='class="bestsellers"', outer="div"):
    """Render a bestseller listing page for (id, title, author, publisher, price) tuples."""
    items = "".join(
        f'<li class="book" data-id="{bid}">'
        f'<a href="/book/{bid}"><span class="title">{title}</span></a>'
        f'<span class="author">{author}</span>'
        f'<span class="publisher">{publisher}</span>'
        f'<span class="price">{price}</span>'
        f'<img src="/covers/{bid}.jpg"/>'
        f"</li>"
        for bid, title, author, publisher, price in books
    )
    return (
        "<html><head><title>Bestsellers</title></head><body>"
        f'<{outer} id="main"><{wrapper} {wrapper_attrs}>{items}</{wrapper}></{outer}>'
        "</body></html>"
    )


@pytest.fixture
def listing():
    return render_listing


def make_books(prefix, count, price="$10.00"):
    return [
        (f"{prefix}{i}", f"{prefix.upper()} Book {i}", f"Author {prefix}{i}", "Penguin", price)
        for i in range(1, count + 1)
    ]


@pytest.fixture
def books():
    return make_books


@pytest.fixture
def routing_transport():
    """
    Build an httpx.MockTransport from a host -> page mapping.

    Values may be a string (200 with that body), an int (empty response with
    that status), an Exception class from httpx (raised), or an async callable
    taking the request.
    """

    def _make(routes):
        async def handler(request):
            target = routes[request.url.host]
            if callable(target) and not isinstance(target, type):
                return await target(request)
            if isinstance(target, type) and issubclass(target, httpx.HTTPError):
                raise target("simulated failure", request=request)
            if isinstance(target, int):
                return httpx.Response(target, text="")
            return httpx.Response(200, text=target, headers={"content-type": "text/html"})

        return httpx.MockTransport(handler)

    return _make
