# tests/test_service.py
import asyncio

import httpx
import pytest

from collector.archive import SnapshotArchive
from collector.errors import UnknownSourceError
from collector.models import RunStatus
from collector.orchestrator import Orchestrator
from collector.service import CollectionAPI
from collector.store import DatasetStore


@pytest.fixture
async def service_for(fake_db, clock, make_config, routing_transport):
    orchestrators = []

    def _make(routes, sources=("alpha", "beta")):
        store = DatasetStore(clock=clock)
        orch = Orchestrator(
            store,
            archive=SnapshotArchive(),
            transport=routing_transport(routes),
            max_attempts=1,
            backoff=0,
            clock=clock,
        )
        orchestrators.append(orch)
        configs = [make_config(s) for s in sources]
        return CollectionAPI(orch, store, config_loader=lambda: configs)

    yield _make
    for orch in orchestrators:
        await orch.close()


async def test_trigger_returns_before_run_finishes(service_for, listing, books):
    release = asyncio.Event()

    async def slow(request):
        await release.wait()
        return httpx.Response(200, text=listing(books("a", 2)))

    service = service_for({"alpha.example": slow}, sources=("alpha",))
    run = await service.trigger_run()
    assert not run.finished
    assert service.in_flight

    release.set()
    finished = await service.trigger_run(wait=True)
    assert finished is run
    assert run.status == RunStatus.COMPLETED
    assert not service.in_flight


async def test_concurrent_triggers_coalesce(service_for, listing, books):
    """
    A trigger arriving while a run is in flight joins it instead of starting
    a second run, so the source is fetched only once.
    """
    release = asyncio.Event()
    calls = {"n": 0}

    async def slow(request):
        calls["n"] += 1
        await release.wait()
        return httpx.Response(200, text=listing(books("a", 1)))

    service = service_for({"alpha.example": slow}, sources=("alpha",))
    first = await service.trigger_run()
    second = await service.trigger_run(source_filter=["alpha"])
    assert second is first

    release.set()
    await service.trigger_run(wait=True)
    assert calls["n"] == 1
    assert (await service.get_dataset()).entry.dataset_version == 1


async def test_unknown_source_filter_is_rejected(service_for):
    service = service_for({})
    with pytest.raises(UnknownSourceError) as exc:
        await service.trigger_run(source_filter=["alpha", "nope"])
    assert exc.value.kind == "unknown_source"
    assert "nope" in exc.value.message
    assert not service.in_flight


async def test_dataset_view_before_and_after_first_run(service_for, listing, books):
    service = service_for({"alpha.example": listing(books("a", 2)), "beta.example": 500})
    assert not (await service.get_dataset()).available

    run = await service.trigger_run(wait=True)
    assert run.status == RunStatus.DEGRADED_COMPLETED
    view = await service.get_dataset()
    assert view.available
    assert len(view.entry.records) == 2


async def test_failed_run_is_recorded(service_for):
    service = service_for({"alpha.example": 500, "beta.example": 503})
    run = await service.trigger_run(wait=True)
    assert run.status == RunStatus.FAILED
    assert not (await service.get_dataset()).available
    stored = await service.get_run(run.run_id)
    assert stored.status == RunStatus.FAILED


async def test_run_history_newest_first(service_for, clock, listing, books):
    service = service_for({"alpha.example": listing(books("a", 1))}, sources=("alpha",))
    first = await service.trigger_run(wait=True)
    clock.advance(minutes=10)
    second = await service.trigger_run(wait=True)

    history = await service.get_run_history(limit=10)
    assert [r.run_id for r in history] == [second.run_id, first.run_id]
    assert history[1].status == RunStatus.COMPLETED
    assert history[1].item_counts == {"alpha": 1}

    old = await service.get_run(first.run_id)
    assert old.run_id == first.run_id
    assert old.dataset_version == 1
    assert await service.get_run("missing") is None
