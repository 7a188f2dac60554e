# collector/store.py
import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from pymongo.errors import PyMongoError

from . import db
from .config import CACHE_HISTORY_SIZE, CACHE_TTL_SECONDS
from .models import CacheEntry
from .utils import utcnow

logger = logging.getLogger("collector.store")


@dataclass(frozen=True)
class DatasetView:
    """What readers get: the served entry (if any) plus the advisory staleness flag."""

    entry: Optional[CacheEntry]
    stale: bool

    @property
    def available(self):
        return self.entry is not None

    def to_wire(self):
        entry = self.entry
        return {
            "available": self.available,
            "stale": self.stale,
            "datasetVersion": entry.dataset_version if entry else None,
            "generatedAt": entry.to_wire()["generatedAt"] if entry else None,
            "expiresAt": entry.to_wire()["expiresAt"] if entry else None,
            "records": [r.to_wire() for r in entry.records] if entry else [],
        }


def _entry_from_doc(doc):
    doc = dict(doc)
    doc.pop("_id", None)
    return CacheEntry.model_validate(doc)


class DatasetStore:
    """
    Holds the last successfully merged dataset.

    put() swaps the whole CacheEntry reference under a lock, after the entry
    has been persisted, so a reader either sees the previous entry or the new
    one, never a partially merged dataset. Expired entries keep being served;
    freshness is advisory.

    The API and the scheduler run in separate processes and both commit to
    the same ``dataset_cache`` document. Readers therefore check the stored
    version on every get()/view() and reload when another process committed
    a newer one; put() numbers the entry from the stored version, never from
    the copy held in memory.
    """

    def __init__(self, ttl_seconds=CACHE_TTL_SECONDS, history_size=CACHE_HISTORY_SIZE, clock=utcnow):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.history_size = max(1, history_size)
        self._clock = clock
        self._current = None
        self._lock = asyncio.Lock()

    def _held_version(self):
        return self._current.dataset_version if self._current else 0

    async def refresh(self):
        """
        Adopt a newer entry committed by another process.

        Only the stored datasetVersion is read on each call; the records are
        loaded when it is ahead of the entry held in memory. If storage is
        unreachable the entry in memory keeps being served.
        """
        try:
            version = await db.find_cache_version()
            if version is None or version <= self._held_version():
                return self._current
            doc = await db.load_cache_entry()
        except PyMongoError as e:
            logger.warning(f"Cannot check stored dataset, serving version {self._held_version()}: {e}")
            return self._current
        if doc:
            entry = _entry_from_doc(doc)
            async with self._lock:
                if entry.dataset_version > self._held_version():
                    self._current = entry
                    logger.info(f"Loaded dataset version {entry.dataset_version}")
        return self._current

    async def load(self):
        """Hydrate the current entry from storage (called once at startup)."""
        return await self.refresh()

    async def get(self):
        """The latest committed entry, from this process or any other."""
        return await self.refresh()

    def is_fresh(self, now=None):
        entry = self._current
        if entry is None:
            return False
        return (now or self._clock()) < entry.expires_at

    async def view(self):
        entry = await self.refresh()
        return DatasetView(entry=entry, stale=entry is not None and not self.is_fresh())

    def build_entry(self, records, run_id=None):
        """Wrap merged records with a fresh TTL; put() assigns the version."""
        now = self._clock()
        return CacheEntry(
            dataset_version=0,
            records=records,
            generated_at=now,
            expires_at=now + self.ttl,
            run_id=run_id,
        )

    async def put(self, entry):
        """
        Atomically replace the served entry.

        Args:
            entry (CacheEntry): fully merged dataset

        Returns:
            CacheEntry: the committed entry, numbered one past the newest
            version in storage or in memory

        Note:
            Only the Orchestrator (and rollback) calls this, and only for
            Completed or DegradedCompleted runs.
        """
        async with self._lock:
            stored = await db.find_cache_version() or 0
            version = max(stored, self._held_version()) + 1
            entry = entry.model_copy(update={"dataset_version": version})
            await db.save_cache_entry(entry.to_wire(), self.history_size)
            self._current = entry
        logger.info(
            f"Dataset version {entry.dataset_version} committed "
            f"({len(entry.records)} records, expires {entry.expires_at.isoformat()})"
        )
        return entry

    async def history(self, limit=None):
        docs = await db.find_cache_history(limit or self.history_size)
        return [_entry_from_doc(d) for d in docs]

    async def rollback(self, version):
        """
        Serve a previous dataset version again.

        The restored records are re-committed as a new version with a fresh TTL,
        so versions keep increasing monotonically.

        Raises:
            LookupError: version not present in the bounded history
        """
        for old in await self.history():
            if old.dataset_version == version:
                entry = await self.put(self.build_entry(old.records, run_id=old.run_id))
                logger.warning(f"Rolled back dataset to version {version} as {entry.dataset_version}")
                return entry
        raise LookupError(f"Dataset version {version} not in history")
