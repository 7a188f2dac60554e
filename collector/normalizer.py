# collector/normalizer.py
import logging
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from urllib.parse import urlparse

import pandas as pd

from .errors import NormalizationError
from .models import BookRecord, SourceLink
from .utils import compute_canonical_key, normalize_text

logger = logging.getLogger("collector.normalizer")

# ISO 4217 exponents that differ from the default of 2
CURRENCY_EXPONENTS = {"KRW": 0, "JPY": 0, "VND": 0, "CLP": 0, "ISK": 0, "KWD": 3, "BHD": 3}

_NUMBER_RE = re.compile(r"\d[\d.,\s '’]*")
_YMD_RE = re.compile(r"(\d{4})\D{1,3}(\d{1,2})\D{1,3}(\d{1,2})")
_INT_RE = re.compile(r"\d+")


def currency_exponent(currency):
    return CURRENCY_EXPONENTS.get((currency or "").upper(), 2)


def _decimal_from_text(text):
    m = _NUMBER_RE.search(text)
    if not m:
        return None
    num = re.sub(r"[\s '’]", "", m.group(0)).rstrip(".,")
    if not num:
        return None

    has_dot, has_comma = "." in num, "," in num
    if has_dot and has_comma:
        # whichever separator comes last is the decimal point
        if num.rfind(",") > num.rfind("."):
            num = num.replace(".", "").replace(",", ".")
        else:
            num = num.replace(",", "")
    elif has_dot or has_comma:
        sep = "." if has_dot else ","
        head, _, tail = num.rpartition(sep)
        if num.count(sep) == 1 and len(tail) != 3:
            num = f"{head}.{tail}"
        else:
            # 1,299 / 15.000 / 1,234,567: thousands grouping
            num = num.replace(sep, "")
    try:
        return Decimal(num)
    except InvalidOperation:
        return None


def parse_price(value, currency="USD"):
    """
    Convert a price as shown on a page into integer minor currency units.

    Accepts display strings with symbols and either separator convention
    ("$12.99", "12,99 €", "1.299,00", "15,000원") or plain numbers from JSON
    sources. Three digits after a lone separator are read as thousands
    grouping.

    Args:
        value (str | int | float): raw price
        currency (str): ISO 4217 code used for the minor unit exponent

    Returns:
        int: price in minor units, e.g. 1299 for "$12.99" or 15000 for
        "15,000원" (KRW has no minor unit)

    Raises:
        NormalizationError: unparsable_price
    """
    if isinstance(value, bool):
        amount = None
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    else:
        amount = _decimal_from_text(str(value))
    if amount is None or amount < 0:
        raise NormalizationError(
            NormalizationError.UNPARSABLE_PRICE,
            f"Cannot parse price {value!r}",
            field="price",
        )
    scaled = amount * (Decimal(10) ** currency_exponent(currency))
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def parse_date(value):
    """Return YYYY-MM-DD for a date string, or None if it cannot be read."""
    if value is None or value == "":
        return None
    text = normalize_text(value)
    m = _YMD_RE.search(text)
    if m:
        y, mo, d = (int(g) for g in m.groups())
        try:
            return pd.Timestamp(year=y, month=mo, day=d).date().isoformat()
        except ValueError:
            return None
    ts = pd.to_datetime(text, errors="coerce")
    if pd.isna(ts):
        return None
    return ts.date().isoformat()


def parse_rank(value):
    if value is None:
        return None
    if isinstance(value, int):
        return value
    m = _INT_RE.search(str(value))
    return int(m.group(0)) if m else None


def local_id_for(values, canonical_key):
    """Source-local identifier: explicit id field, else the item URL path, else the key."""
    explicit = values.get("local_id")
    if explicit not in (None, ""):
        return normalize_text(explicit)
    url = values.get("url")
    if url:
        path = urlparse(str(url)).path.rstrip("/")
        if path:
            segments = [s for s in path.split("/") if s]
            tail = segments[-1]
            # ".../the-great-gatsby_12/index.html" style detail pages
            if tail.startswith("index.") and len(segments) > 1:
                tail = segments[-2]
            return tail
    return canonical_key


class RecordNormalizer:
    """Turns PartialRecords of one source into canonical BookRecords."""

    def __init__(self, config):
        self.config = config
        self.required = set(config.required) | {"title"}

    def normalize(self, partial):
        """
        Canonicalize one extracted item.

        Args:
            partial (PartialRecord): values extracted by the SourceAdapter

        Returns:
            BookRecord: canonical record with a single SourceLink for this source

        Raises:
            NormalizationError: missing_required_field when a required field
                had no matching pattern or came back empty; unparsable_price
                when a present price cannot be read
        """
        values = partial.values
        for name in sorted(self.required):
            raw = values.get(name)
            if name in partial.missing_required or raw is None or normalize_text(raw) == "":
                raise NormalizationError(
                    NormalizationError.MISSING_REQUIRED_FIELD,
                    f"{partial.source} item {partial.position}: missing {name}",
                    field=name,
                )

        title = normalize_text(values.get("title"))
        author = normalize_text(values.get("author"))
        publisher = normalize_text(values.get("publisher"))

        price = values.get("price")
        price_minor = None
        if price is not None and normalize_text(price) != "":
            price_minor = parse_price(price, self.config.currency)

        published_at = parse_date(values.get("published_at"))
        if values.get("published_at") and published_at is None:
            partial.warnings.append(f"published_at: cannot parse {values['published_at']!r}")

        rank = parse_rank(values.get("rank"))
        if rank is None:
            rank = partial.position

        key = compute_canonical_key(title, author, publisher)
        local_id = local_id_for(values, key)

        for w in partial.warnings:
            logger.debug(f"{partial.source} item {partial.position}: {w}")

        return BookRecord(
            id=f"{partial.source}:{local_id}",
            title=title,
            author=author,
            publisher=publisher,
            price_minor_units=price_minor,
            image_url=values.get("image_url") or None,
            published_at=published_at,
            source_links=[
                SourceLink(
                    source=partial.source,
                    url=values.get("url") or None,
                    rank=rank,
                    fetched_at=partial.fetched_at,
                )
            ],
            last_seen_at=partial.fetched_at,
            canonical_key=key,
        )
