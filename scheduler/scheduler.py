# scheduler/scheduler.py
import asyncio
import logging
import os

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dotenv import load_dotenv

from collector.archive import SnapshotArchive
from collector.errors import CollectionError
from collector.orchestrator import Orchestrator
from collector.service import CollectionAPI
from collector.store import DatasetStore
from scheduler.reporter import generate_run_report

load_dotenv()
SCHEDULE_MINUTES = int(os.getenv("SCHEDULE_MINUTES", "60"))

logger = logging.getLogger("scheduler")
logger.setLevel(logging.INFO)
handler = logging.StreamHandler()
handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
logger.addHandler(handler)


async def scheduled_collection(service):
    """
    Trigger one collection run, wait for it, and report on the outcome.

    Args:
        service (CollectionAPI): pipeline entry point shared by all jobs

    Returns:
        CollectionRun or None: the finished run, None when it could not start

    Note:
        If a manual trigger is already running, this job joins that run
        instead of starting a second one.
    """
    logger.info("Starting scheduled collection")
    try:
        run = await service.trigger_run(wait=True)
    except CollectionError as e:
        logger.error(f"Scheduled collection could not start: {e.message}")
        return None
    logger.info(
        f"Scheduled collection {run.run_id} finished with status {run.status.value}"
    )
    generate_run_report(run)
    return run


async def async_main():
    """
    Run the interval scheduler until the process is terminated.

    Configuration:
        - Job: scheduled_collection
        - Trigger: interval, every SCHEDULE_MINUTES minutes (default 60)
        - Job ID: "bestseller_collection"; max_instances=1 so a slow run is
          never overlapped by the next tick
    """
    store = DatasetStore()
    await store.load()
    orchestrator = Orchestrator(store, archive=SnapshotArchive())
    service = CollectionAPI(orchestrator, store)

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        scheduled_collection,
        "interval",
        minutes=SCHEDULE_MINUTES,
        args=[service],
        id="bestseller_collection",
        max_instances=1,
        coalesce=True,
    )

    scheduler.start()
    logger.info(f"Scheduler started (every {SCHEDULE_MINUTES} min)")
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        await orchestrator.close()


if __name__ == "__main__":
    asyncio.run(async_main())
