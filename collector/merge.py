# collector/merge.py
import logging
from datetime import datetime, timezone

from .models import MergeConflict

logger = logging.getLogger("collector.merge")

MERGED_FIELDS = (
    "title",
    "author",
    "publisher",
    "price_minor_units",
    "image_url",
    "published_at",
)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _latest_link(record):
    return max(record.source_links, key=lambda l: (l.fetched_at or _EPOCH, l.source))


def _pick_link(current, candidate):
    """Keep one link per source: the newer one, then the better rank."""
    if current is None:
        return candidate
    a = (current.fetched_at or _EPOCH, -(current.rank or 10**9))
    b = (candidate.fetched_at or _EPOCH, -(candidate.rank or 10**9))
    return candidate if b > a else current


def _best_rank(record):
    ranks = [l.rank for l in record.source_links if l.rank is not None]
    return min(ranks) if ranks else 10**9


def _merge_group(key, group, order):
    def recency(rec):
        link = _latest_link(rec)
        return (rec.last_seen_at, order.get(link.source, len(order)), link.source, rec.id)

    group = sorted(group, key=recency)
    values, provenance = {}, {}
    conflicts = []
    links = {}
    for rec in group:
        src = _latest_link(rec).source
        for name in MERGED_FIELDS:
            new = getattr(rec, name)
            if new is None or new == "":
                continue
            old = values.get(name)
            if old not in (None, "") and old != new:
                conflicts.append(
                    MergeConflict(
                        canonical_key=key,
                        field=name,
                        kept_source=src,
                        kept_value=str(new),
                        dropped_source=provenance[name],
                        dropped_value=str(old),
                    )
                )
            values[name] = new
            provenance[name] = src
        for link in rec.source_links:
            links[link.source] = _pick_link(links.get(link.source), link)

    merged = group[-1].model_copy(
        update={
            **values,
            "id": min(r.id for r in group),
            "source_links": sorted(
                links.values(), key=lambda l: (order.get(l.source, len(order)), l.source)
            ),
            "last_seen_at": max(r.last_seen_at for r in group),
        }
    )
    return merged, conflicts


def merge_records(records, source_order=None):
    """
    Merge per-source BookRecords into one record per canonical key.

    Records sharing a canonical key collapse into one; their source links are
    unioned (one link per source). When two sources report different values for
    the same field the most recently fetched value wins and a MergeConflict is
    recorded; values are never averaged. Empty values never override.

    Args:
        records (list[BookRecord]): normalized records from any number of sources
        source_order (list[str], optional): configured source order, used as
            tie-break when fetch times are equal

    Returns:
        tuple[list[BookRecord], list[MergeConflict]]: merged records ordered by
        best rank then title, and the conflicts found

    Note:
        Idempotent: merging the output again (or the same input twice) yields
        the same record set.
    """
    order = {s: i for i, s in enumerate(source_order or [])}
    groups = {}
    for rec in records:
        groups.setdefault(rec.canonical_key, []).append(rec)

    merged, conflicts = [], []
    for key, group in groups.items():
        rec, group_conflicts = _merge_group(key, group, order)
        merged.append(rec)
        conflicts.extend(group_conflicts)

    merged.sort(key=lambda r: (_best_rank(r), r.title.casefold(), r.id))
    if conflicts:
        logger.info(f"Merge resolved {len(conflicts)} field conflicts by recency")
    return merged, conflicts
