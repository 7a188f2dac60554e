# collector/models.py
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel


def _iso_utc(value):
    # fixed width so stored timestamps sort lexicographically
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


Timestamp = Annotated[
    datetime, PlainSerializer(_iso_utc, return_type=str, when_used="json")
]


class WireModel(BaseModel):
    """Base for everything that is persisted or returned over HTTP (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self):
        return self.model_dump(mode="json", by_alias=True)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    DEGRADED_COMPLETED = "degraded_completed"
    FAILED = "failed"


class SourceStatus(str, Enum):
    OK = "ok"
    PARTIAL = "partial"
    FAILED = "failed"


class SourceLink(WireModel):
    source: str
    url: Optional[str] = None
    rank: Optional[int] = None
    fetched_at: Optional[Timestamp] = None


class BookRecord(WireModel):
    id: str = Field(..., description="source:local id of the preferred source")
    title: str
    author: str = ""
    publisher: str = ""
    price_minor_units: Optional[int] = None
    image_url: Optional[str] = None
    published_at: Optional[str] = None  # YYYY-MM-DD
    source_links: List[SourceLink] = Field(default_factory=list)
    last_seen_at: Timestamp
    canonical_key: str


class RawSnapshot(WireModel):
    model_config = ConfigDict(frozen=True)

    id: str
    source: str
    fetched_at: Timestamp
    format: str = "html"
    payload: str
    fingerprint: str


class FetchParams(WireModel):
    model_config = ConfigDict(frozen=True)

    endpoint: str
    headers: Dict[str, str] = Field(default_factory=dict)
    rate_limit_per_minute: int = Field(30, ge=1)
    timeout_ms: int = Field(10_000, ge=1)


class SourceAdapterConfig(WireModel):
    """
    Extraction rules for one source, loaded from YAML.

    container, item and every entry of field_selectors are ordered pattern lists:
    the first pattern that structurally matches wins, later entries cover
    older or alternate page layouts.
    """

    model_config = ConfigDict(frozen=True)

    source_id: str
    format: str = Field("html", pattern="^(html|json)$")
    container: List[str]
    item: List[str]
    field_selectors: Dict[str, List[str]]
    required: List[str] = Field(default_factory=lambda: ["title"])
    currency: str = "USD"
    fetch: FetchParams


class RunError(WireModel):
    source: str
    kind: str
    message: str


class MergeConflict(WireModel):
    canonical_key: str
    field: str
    kept_source: str
    kept_value: Optional[str] = None
    dropped_source: str
    dropped_value: Optional[str] = None


class CollectionRun(WireModel):
    run_id: str
    status: RunStatus = RunStatus.PENDING
    source_filter: Optional[List[str]] = None
    started_at: Timestamp
    finished_at: Optional[Timestamp] = None
    sources: Dict[str, SourceStatus] = Field(default_factory=dict)
    item_counts: Dict[str, int] = Field(default_factory=dict)
    errors: List[RunError] = Field(default_factory=list)
    excluded_sources: List[str] = Field(default_factory=list)
    conflicts: List[MergeConflict] = Field(default_factory=list)
    dataset_version: Optional[int] = None

    @property
    def finished(self):
        return self.status in (
            RunStatus.COMPLETED,
            RunStatus.DEGRADED_COMPLETED,
            RunStatus.FAILED,
        )


class CacheEntry(WireModel):
    model_config = ConfigDict(frozen=True)

    dataset_version: int
    records: List[BookRecord] = Field(default_factory=list)
    generated_at: Timestamp
    expires_at: Timestamp
    run_id: Optional[str] = None
