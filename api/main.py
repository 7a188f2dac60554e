# api/main.py
from contextlib import asynccontextmanager
from typing import List, Optional
import os
import logging

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from collector.archive import SnapshotArchive
from collector.errors import ConfigError, UnknownSourceError
from collector.models import WireModel
from collector.orchestrator import Orchestrator
from collector.service import CollectionAPI
from collector.store import DatasetStore
from .rate_limit import register_rate_limit, limiter

load_dotenv()
API_PORT = int(os.getenv("API_PORT", "8000"))
READ_RATE_LIMIT = os.getenv("READ_RATE_LIMIT", "120/minute")
RUN_TRIGGER_RATE_LIMIT = os.getenv("RUN_TRIGGER_RATE_LIMIT", "10/minute")

logger = logging.getLogger("api")
logger.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build the collection pipeline once per process.

    Loads the last committed dataset from storage so the read interface can
    serve it (possibly stale) before the first run of this process finishes.
    """
    store = DatasetStore()
    await store.load()
    orchestrator = Orchestrator(store, archive=SnapshotArchive())
    app.state.collection_api = CollectionAPI(orchestrator, store)
    try:
        yield
    finally:
        await orchestrator.close()


app = FastAPI(title="Bestseller Collection API", version="1.0", lifespan=lifespan)

register_rate_limit(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


class TriggerRequest(WireModel):
    source_filter: Optional[List[str]] = None


def get_collection_api(request: Request) -> CollectionAPI:
    """FastAPI dependency returning the process-wide CollectionAPI."""
    return request.app.state.collection_api


@app.post("/runs", status_code=202)
@limiter.limit(RUN_TRIGGER_RATE_LIMIT)
async def trigger_run(
    request: Request,
    body: Optional[TriggerRequest] = None,
    service: CollectionAPI = Depends(get_collection_api),
):
    """
    Start a collection run, or join the one in flight.

    Args:
        request (Request): FastAPI request object (required for rate limiting)
        body (TriggerRequest, optional): ``{"sourceFilter": [...]}`` restricting
            the run to the named sources
        service (CollectionAPI): injected pipeline entry point

    Returns:
        JSONResponse: 202 with ``{"runId", "status"}``. The run continues in the
        background; poll ``GET /runs/{run_id}`` or read ``GET /dataset``.

    Raises:
        HTTPException: 422 for unknown source ids, 503 when the source
            configuration cannot be loaded

    Rate Limit:
        RUN_TRIGGER_RATE_LIMIT per client (default 10/minute)
    """
    source_filter = body.source_filter if body else None
    try:
        run = await service.trigger_run(source_filter=source_filter)
    except UnknownSourceError as e:
        raise HTTPException(status_code=422, detail=e.message)
    except ConfigError as e:
        logger.error(f"Cannot start run: {e.message}")
        raise HTTPException(status_code=503, detail="Source configuration unavailable")
    return JSONResponse(
        {"runId": run.run_id, "status": run.status.value}, status_code=202
    )


@app.get("/dataset")
@limiter.limit(READ_RATE_LIMIT)
async def get_dataset(request: Request, service: CollectionAPI = Depends(get_collection_api)):
    """
    Return the currently served dataset.

    Always answers 200: with the last committed records and ``stale: true``
    once the entry expired, or with ``available: false`` and no records when
    no run has ever succeeded.

    Returns:
        dict: records, generatedAt, expiresAt, stale, available, datasetVersion
    """
    view = await service.get_dataset()
    return view.to_wire()


@app.get("/runs")
@limiter.limit(READ_RATE_LIMIT)
async def list_runs(
    request: Request,
    limit: int = Query(20, ge=1, le=100),
    service: CollectionAPI = Depends(get_collection_api),
):
    """Run summaries as a JSON array, most recent first."""
    runs = await service.get_run_history(limit)
    return [r.to_wire() for r in runs]


@app.get("/runs/{run_id}")
@limiter.limit(READ_RATE_LIMIT)
async def get_run(
    request: Request, run_id: str, service: CollectionAPI = Depends(get_collection_api)
):
    run = await service.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run.to_wire()


# Run uvicorn externally or here
if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host="0.0.0.0", port=API_PORT, reload=True)
