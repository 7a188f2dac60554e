# collector/service.py
import asyncio
import logging

from . import db
from .config import SOURCES_FILE, load_source_configs
from .errors import UnknownSourceError
from .models import CollectionRun, RunError, RunStatus
from .utils import utcnow

logger = logging.getLogger("collector.service")


class CollectionAPI:
    """
    The single entry point for schedulers, manual triggers and the frontend.

    trigger_run() starts a run in the background and returns immediately;
    while a run is active further triggers are coalesced into it. Readers use
    get_dataset(), which always answers with the last committed dataset (or
    an empty, not-yet-available view) plus a staleness flag.
    """

    def __init__(self, orchestrator, store, config_loader=None):
        self.orchestrator = orchestrator
        self.store = store
        self.config_loader = config_loader or (lambda: load_source_configs(SOURCES_FILE))
        self._current = None
        self._task = None

    @property
    def in_flight(self):
        return self._task is not None and not self._task.done()

    async def trigger_run(self, source_filter=None, wait=False):
        """
        Start a collection run, or join the one already running.

        Args:
            source_filter (Iterable[str], optional): restrict the run to these
                source ids. Ignored when coalescing into an in-flight run.
            wait (bool): block until the run finished (scheduler use); the HTTP
                trigger never waits

        Returns:
            CollectionRun: the new run (status pending/running), the in-flight
            run when coalesced, or the finished run when wait=True

        Raises:
            UnknownSourceError: source_filter names a source that is not configured
            ConfigError: the source configuration cannot be loaded
        """
        if self.in_flight:
            logger.info(f"Run {self._current.run_id} in flight, coalescing trigger")
            run = self._current
        else:
            configs = self.config_loader()
            if source_filter:
                unknown = set(source_filter) - {c.source_id for c in configs}
                if unknown:
                    raise UnknownSourceError(unknown)
            run = self.orchestrator.new_run(source_filter)
            self._current = run
            self._task = asyncio.create_task(
                self._run(run, configs), name=f"run-{run.run_id}"
            )
            logger.info(f"Run {run.run_id} triggered")

        if wait:
            await asyncio.shield(self._task)
        return run

    async def _run(self, run, configs):
        try:
            await self.orchestrator.execute(run, configs)
        except Exception as e:
            # keep the failure on the run record instead of an unobserved task error
            logger.exception(f"Run {run.run_id} crashed: {e}")
            run.errors.append(RunError(source="*", kind="internal", message=str(e)))
            run.status = RunStatus.FAILED
            run.finished_at = utcnow()
        return run

    async def get_dataset(self):
        return await self.store.view()

    async def get_run_history(self, limit=20):
        """Most recent runs first, including the in-flight one."""
        docs = await db.find_runs(limit)
        return [CollectionRun.model_validate(_strip_id(d)) for d in docs]

    async def get_run(self, run_id):
        if self._current is not None and self._current.run_id == run_id:
            return self._current
        doc = await db.find_run(run_id)
        return CollectionRun.model_validate(_strip_id(doc)) if doc else None


def _strip_id(doc):
    doc = dict(doc)
    doc.pop("_id", None)
    return doc
