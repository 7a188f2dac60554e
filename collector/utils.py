# collector/utils.py
import asyncio
import hashlib
import logging
import re
import time
import unicodedata
from collections import deque
from datetime import datetime, timezone

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import FetchError

logger = logging.getLogger("collector.utils")

_WS_RE = re.compile(r"\s+")


def utcnow():
    return datetime.now(timezone.utc)


def normalize_text(value):
    """NFKC, collapse internal whitespace, strip. None becomes ''."""
    if value is None:
        return ""
    value = unicodedata.normalize("NFKC", str(value))
    return _WS_RE.sub(" ", value).strip()


def compute_canonical_key(title, author, publisher):
    """
    Generate the cross-source identity of a book.

    Title, author and publisher are NFKC-normalized, case folded and
    whitespace collapsed before hashing, so " the great gatsby " and
    "The Great Gatsby" by the same author and publisher produce the same key.

    Args:
        title (str): Book title as reported by the source
        author (str): Author string, may be empty
        publisher (str): Publisher string, may be empty

    Returns:
        str: 32-character hex SHA-256 prefix

    Note:
        Fields are joined with "|" in a fixed order to keep the key stable
        across runs.
    """
    parts = [normalize_text(v).casefold() for v in (title, author, publisher)]
    s = "|".join(parts)
    return hashlib.sha256(s.encode("utf-8")).hexdigest()[:32]


def fetch_retrying(attempts=3, backoff=1.0, backoff_max=10.0):
    """
    Create a tenacity AsyncRetrying controller for source fetches.

    Only FetchError is retried: extraction and normalization failures are
    deterministic for a given payload, repeating the request would not help.

    Args:
        attempts (int): Maximum number of attempts, including the first one
        backoff (float): Exponential backoff multiplier in seconds
        backoff_max (float): Upper bound for a single wait

    Returns:
        tenacity.AsyncRetrying: use as ``async for attempt in ...: with attempt:``

    Note:
        reraise=True surfaces the last FetchError instead of a RetryError so
        its kind lands in CollectionRun.errors unchanged.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=backoff, max=backoff_max),
        retry=retry_if_exception_type(FetchError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


class SlidingWindowLimiter:
    """
    Per-source request limiter: at most ``per_minute`` requests in any 60s window.

    Waiting callers sleep until the oldest request in the window ages out.
    """

    window = 60.0

    def __init__(self, per_minute, clock=time.monotonic):
        self.per_minute = max(1, int(per_minute))
        self._clock = clock
        self._stamps = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now):
        while self._stamps and now - self._stamps[0] >= self.window:
            self._stamps.popleft()

    async def acquire(self):
        async with self._lock:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._stamps) < self.per_minute:
                    self._stamps.append(now)
                    return
                delay = self.window - (now - self._stamps[0])
                logger.info(f"Rate limit reached, sleeping {delay:.1f}s")
                await asyncio.sleep(delay)
