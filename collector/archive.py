# collector/archive.py
import hashlib
import json
import logging

from bs4 import BeautifulSoup
from bs4.element import Tag

from . import db
from .config import SNAPSHOT_RETENTION
from .models import RawSnapshot
from .utils import utcnow

logger = logging.getLogger("collector.archive")

IGNORED_TAGS = {"script", "style", "noscript", "template"}


def _collapse(skeletons):
    """
    Distinct sibling skeletons, sorted.

    How many items a listing has and the order they are ranked in are content:
    a book without a cover image moving up the list must not change the shape.
    """
    return sorted(set(skeletons))


def _html_skeleton(node):
    attrs = ",".join(sorted(node.attrs))
    children = [
        _html_skeleton(c)
        for c in node.children
        if isinstance(c, Tag) and c.name not in IGNORED_TAGS
    ]
    inner = "".join(_collapse(children))
    return f"<{node.name}[{attrs}]{inner}>"


def _json_skeleton(node):
    if isinstance(node, dict):
        parts = [f"{k}:{_json_skeleton(node[k])}" for k in sorted(node)]
        return "{" + ",".join(parts) + "}"
    if isinstance(node, list):
        return "[" + ",".join(_collapse([_json_skeleton(v) for v in node])) + "]"
    return "v"


def structural_skeleton(payload, fmt="html"):
    """
    Reduce a payload to its shape, dropping all content.

    HTML keeps tag names and attribute names; text, attribute values, scripts
    and styles are discarded. JSON keeps object keys and nesting; every scalar
    becomes the same token. In both formats repeated sibling shapes
    collapse regardless of their order, so a listing with 19 items has the same
    shape as one with 20, and reranking items never changes it.
    """
    if fmt == "json":
        try:
            return _json_skeleton(json.loads(payload))
        except ValueError:
            return "<unparsable-json>"
    soup = BeautifulSoup(payload, "lxml")
    roots = [c for c in soup.children if isinstance(c, Tag)]
    return "".join(_collapse([_html_skeleton(r) for r in roots]))


def fingerprint(payload, fmt="html"):
    """SHA-256 of the structural skeleton of a payload."""
    skeleton = structural_skeleton(payload, fmt)
    return hashlib.sha256(skeleton.encode("utf-8")).hexdigest()


class SnapshotArchive:
    """
    Append-only archive of raw source payloads used for drift detection.

    Snapshots are keyed by (source, fetchedAt) and never updated once written.
    Only the newest `retention` snapshots per source are kept.
    """

    def __init__(self, retention=SNAPSHOT_RETENTION):
        self.retention = max(2, retention)

    async def store(self, source, payload, fmt="html", fetched_at=None):
        """
        Persist a raw payload with its structural fingerprint.

        Args:
            source (str): source id
            payload (str): raw response body
            fmt (str): "html" or "json", selects the fingerprint strategy
            fetched_at (datetime, optional): defaults to now (UTC)

        Returns:
            str: snapshot id, "{source}:{fetchedAt}"

        Note:
            Older snapshots beyond the retention bound are pruned after the
            insert. Different sources never share keys, so concurrent stores
            for different sources do not interfere.
        """
        fetched_at = fetched_at or utcnow()
        snap = RawSnapshot(
            id=f"{source}:{fetched_at.isoformat()}",
            source=source,
            fetched_at=fetched_at,
            format=fmt,
            payload=payload,
            fingerprint=fingerprint(payload, fmt),
        )
        doc = snap.to_wire()
        doc["_id"] = doc.pop("id")
        snap_id = await db.insert_snapshot(doc)

        pruned = await db.prune_snapshots(source, self.retention)
        if pruned:
            logger.info(f"Pruned {pruned} old snapshots for {source}")
        return snap_id

    async def history(self, source, limit=10):
        docs = await db.find_snapshots(source, limit)
        out = []
        for d in docs:
            d = dict(d)
            d["id"] = d.pop("_id")
            out.append(RawSnapshot.model_validate(d))
        return out

    async def detect_drift(self, source):
        """
        Compare the newest snapshot's fingerprint with the previous one.

        Returns:
            bool: True when the structure changed. The very first snapshot of
            a source is the baseline and never reports drift.
        """
        latest = await db.find_snapshots(source, 2)
        if len(latest) < 2:
            return False
        current, previous = latest[0], latest[1]
        drifted = current["fingerprint"] != previous["fingerprint"]
        if drifted:
            logger.warning(
                f"Structural drift for {source}: {previous['fingerprint'][:12]} -> "
                f"{current['fingerprint'][:12]}"
            )
        return drifted
