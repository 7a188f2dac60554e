# collector/orchestrator.py
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

import httpx

from .adapter import SourceAdapter
from .archive import SnapshotArchive
from .config import (
    CIRCUIT_BREAKER_COOLDOWN_SECONDS,
    CIRCUIT_BREAKER_THRESHOLD,
    FETCH_BACKOFF_MAX_SECONDS,
    FETCH_BACKOFF_SECONDS,
    FETCH_MAX_ATTEMPTS,
    RUN_TIMEOUT_SECONDS,
)
from .db import save_run
from .errors import CollectionError, FetchError, NormalizationError
from .merge import merge_records
from .models import CollectionRun, RunError, RunStatus, SourceStatus
from .normalizer import RecordNormalizer
from .utils import SlidingWindowLimiter, fetch_retrying, utcnow

logger = logging.getLogger("collector")
logger.setLevel(logging.INFO)
handler = logging.StreamHandler()
handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
logger.addHandler(handler)

RUN_SCOPE = "*"


@dataclass
class SourceOutcome:
    source: str
    status: SourceStatus = SourceStatus.OK
    records: list = field(default_factory=list)
    errors: List[RunError] = field(default_factory=list)
    circuit_skipped: bool = False

    def add_error(self, kind, message):
        self.errors.append(RunError(source=self.source, kind=kind, message=message))

    def fail(self, kind, message):
        self.status = SourceStatus.FAILED
        self.records = []
        self.add_error(kind, message)


@dataclass
class CircuitState:
    consecutive_failures: int = 0
    last_failure_at: Optional[object] = None


class Orchestrator:
    """
    Runs every configured source concurrently and commits the merged result.

    One asyncio task per selected source: fetch (with retry and backoff),
    archive and drift check, extract, normalize. A failing source only drops
    itself; the run ends as Completed (every source ok), DegradedCompleted
    (some source succeeded) or Failed (none did, cache left untouched).
    """

    def __init__(
        self,
        store,
        archive=None,
        transport=None,
        run_timeout=RUN_TIMEOUT_SECONDS,
        max_attempts=FETCH_MAX_ATTEMPTS,
        backoff=FETCH_BACKOFF_SECONDS,
        backoff_max=FETCH_BACKOFF_MAX_SECONDS,
        breaker_threshold=CIRCUIT_BREAKER_THRESHOLD,
        breaker_cooldown=CIRCUIT_BREAKER_COOLDOWN_SECONDS,
        clock=utcnow,
    ):
        self.store = store
        self.archive = archive or SnapshotArchive()
        self.client = httpx.AsyncClient(transport=transport, follow_redirects=True)
        self.run_timeout = run_timeout
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.backoff_max = backoff_max
        self.breaker_threshold = breaker_threshold
        self.breaker_cooldown = timedelta(seconds=breaker_cooldown)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._limiters = {}
        self._breakers = {}
        self.active_run = None

    async def close(self):
        """Close the shared HTTP client."""
        await self.client.aclose()

    @property
    def busy(self):
        return self._lock.locked()

    def new_run(self, source_filter=None):
        return CollectionRun(
            run_id=uuid.uuid4().hex,
            status=RunStatus.PENDING,
            source_filter=sorted(source_filter) if source_filter else None,
            started_at=self._clock(),
        )

    def _limiter_for(self, config):
        rate = config.fetch.rate_limit_per_minute
        limiter = self._limiters.get(config.source_id)
        if limiter is None or limiter.per_minute != rate:
            limiter = SlidingWindowLimiter(rate)
            self._limiters[config.source_id] = limiter
        return limiter

    def circuit_open(self, source_id):
        """
        True while a source is in its cooldown window.

        A source that failed its last `breaker_threshold` runs is skipped until
        `breaker_cooldown` has passed since its last failure; the next run after
        that is a single trial attempt.
        """
        state = self._breakers.get(source_id)
        if state is None or state.consecutive_failures < self.breaker_threshold:
            return False
        return self._clock() - state.last_failure_at < self.breaker_cooldown

    def _record_circuit(self, outcome):
        state = self._breakers.setdefault(outcome.source, CircuitState())
        if outcome.status == SourceStatus.FAILED:
            if outcome.circuit_skipped:
                return
            state.consecutive_failures += 1
            state.last_failure_at = self._clock()
        else:
            state.consecutive_failures = 0
            state.last_failure_at = None

    async def _fetch_with_retry(self, adapter):
        async for attempt in fetch_retrying(self.max_attempts, self.backoff, self.backoff_max):
            with attempt:
                return await adapter.fetch()

    async def _collect_source(self, config):
        """
        Run fetch -> archive/drift -> extract -> normalize for one source.

        Args:
            config (SourceAdapterConfig): frozen config for this run

        Returns:
            SourceOutcome: status, normalized records and ordered errors

        Note:
            Never raises for pipeline failures: FetchError and ExtractionError
            fail the source, NormalizationError drops a single record, drift
            downgrades the source to partial. Unexpected exceptions are logged
            and fail only this source.
        """
        source = config.source_id
        outcome = SourceOutcome(source=source)

        if self.circuit_open(source):
            state = self._breakers[source]
            outcome.circuit_skipped = True
            outcome.fail(
                "circuit_open",
                f"Skipped after {state.consecutive_failures} consecutive failed runs",
            )
            logger.warning(f"{source}: circuit open, skipping this run")
            return outcome

        adapter = SourceAdapter(config, self.client, limiter=self._limiter_for(config))
        try:
            payload = await self._fetch_with_retry(adapter)
            await self.archive.store(source, payload.body, payload.format, payload.fetched_at)
            if await self.archive.detect_drift(source):
                outcome.status = SourceStatus.PARTIAL
                outcome.add_error(
                    "drift_detected",
                    "Page structure changed since the previous snapshot; extracted values are suspect",
                )
            partials = adapter.extract(payload)
        except CollectionError as e:
            logger.warning(f"{source}: {e.kind}: {e.message}")
            outcome.fail(e.kind, e.message)
            return outcome
        except Exception as e:
            logger.exception(f"{source}: unexpected failure: {e}")
            outcome.fail("internal", f"{type(e).__name__}: {e}")
            return outcome

        normalizer = RecordNormalizer(config)
        for partial in partials:
            try:
                outcome.records.append(normalizer.normalize(partial))
            except NormalizationError as e:
                outcome.add_error(e.kind, e.message)

        dropped = len(partials) - len(outcome.records)
        if partials and not outcome.records:
            outcome.status = SourceStatus.PARTIAL
            outcome.add_error(
                "no_valid_records", f"All {len(partials)} extracted items were dropped"
            )
        logger.info(
            f"{source}: {outcome.status.value}, {len(outcome.records)} records"
            + (f", {dropped} dropped" if dropped else "")
        )
        return outcome

    async def _persist(self, run):
        try:
            await save_run(run.to_wire())
        except Exception as e:
            logger.exception(f"Could not persist run {run.run_id}: {e}")

    async def execute(self, run, configs):
        """
        Execute a collection run to completion.

        Args:
            run (CollectionRun): a pending run created by new_run()
            configs (list[SourceAdapterConfig]): source configs loaded for this
                run, in configured order

        Returns:
            CollectionRun: the same run object, finished

        Process:
            1. Pending -> Running under the single-run lock
            2. One task per selected source, bounded by the run deadline;
               sources still pending at the deadline fail with "timeout"
            3. Records of successful (ok/partial) sources are merged
            4. Completed / DegradedCompleted commit a new CacheEntry;
               Failed leaves the previous entry authoritative

        Note:
            A second execute() call waits for the lock; callers that want
            coalescing check `busy` / `active_run` first.
        """
        async with self._lock:
            self.active_run = run
            try:
                await self._execute(run, configs)
            finally:
                self.active_run = None
        return run

    async def _execute(self, run, configs):
        run.status = RunStatus.RUNNING
        if run.source_filter:
            wanted = set(run.source_filter)
            configs = [c for c in configs if c.source_id in wanted]
        await self._persist(run)
        logger.info(f"Run {run.run_id} started with {len(configs)} sources")

        if not configs:
            run.errors.append(RunError(source=RUN_SCOPE, kind="no_sources", message="No sources selected"))
            run.status = RunStatus.FAILED
            run.finished_at = self._clock()
            await self._persist(run)
            return

        tasks = {
            asyncio.create_task(self._collect_source(cfg), name=f"collect-{cfg.source_id}"): cfg
            for cfg in configs
        }
        done, pending = await asyncio.wait(tasks, timeout=self.run_timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes = []
        for task, cfg in tasks.items():
            if task in done:
                outcome = task.result()
            else:
                outcome = SourceOutcome(source=cfg.source_id)
                outcome.fail(
                    FetchError.TIMEOUT,
                    f"Run deadline of {self.run_timeout:g}s elapsed before the source finished",
                )
            self._record_circuit(outcome)
            outcomes.append(outcome)

        succeeded = []
        for outcome in outcomes:
            run.sources[outcome.source] = outcome.status
            run.item_counts[outcome.source] = len(outcome.records)
            run.errors.extend(outcome.errors)
            if outcome.status == SourceStatus.FAILED:
                run.excluded_sources.append(outcome.source)
            else:
                succeeded.append(outcome)

        if not succeeded:
            run.status = RunStatus.FAILED
            logger.error(f"Run {run.run_id} failed for every source; keeping previous dataset")
        else:
            records = [r for o in succeeded for r in o.records]
            merged, conflicts = merge_records(records, [c.source_id for c in configs])
            run.conflicts = conflicts
            entry = self.store.build_entry(merged, run_id=run.run_id)
            try:
                entry = await self.store.put(entry)
            except Exception as e:
                logger.exception(f"Run {run.run_id}: could not commit dataset: {e}")
                run.errors.append(RunError(source=RUN_SCOPE, kind="store", message=str(e)))
                run.status = RunStatus.FAILED
            else:
                run.dataset_version = entry.dataset_version
                all_ok = all(o.status == SourceStatus.OK for o in outcomes)
                run.status = RunStatus.COMPLETED if all_ok else RunStatus.DEGRADED_COMPLETED

        run.finished_at = self._clock()
        await self._persist(run)
        logger.info(
            f"Run {run.run_id} {run.status.value}: "
            f"{sum(run.item_counts.values())} records from {len(succeeded)}/{len(outcomes)} sources"
            + (f", excluded {run.excluded_sources}" if run.excluded_sources else "")
        )
