# collector/config.py
import logging
import os

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from .errors import ConfigError
from .models import SourceAdapterConfig

load_dotenv()

SOURCES_FILE = os.getenv("SOURCES_FILE", "config/sources.yaml")
CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "3600"))
CACHE_HISTORY_SIZE = int(os.getenv("CACHE_HISTORY_SIZE", "5"))
RUN_TIMEOUT_SECONDS = float(os.getenv("RUN_TIMEOUT_SECONDS", "300"))
FETCH_MAX_ATTEMPTS = int(os.getenv("FETCH_MAX_ATTEMPTS", "3"))
FETCH_BACKOFF_SECONDS = float(os.getenv("FETCH_BACKOFF_SECONDS", "1"))
FETCH_BACKOFF_MAX_SECONDS = float(os.getenv("FETCH_BACKOFF_MAX_SECONDS", "10"))
CIRCUIT_BREAKER_THRESHOLD = int(os.getenv("CIRCUIT_BREAKER_THRESHOLD", "3"))
CIRCUIT_BREAKER_COOLDOWN_SECONDS = float(
    os.getenv("CIRCUIT_BREAKER_COOLDOWN_SECONDS", "3600")
)
SNAPSHOT_RETENTION = int(os.getenv("SNAPSHOT_RETENTION", "20"))
USER_AGENT = os.getenv(
    "USER_AGENT", "bestseller-collector/1.0 (+https://example.invalid/bot)"
)

logger = logging.getLogger("collector.config")


def parse_source_configs(raw):
    """
    Validate the parsed YAML document into SourceAdapterConfig models.

    Accepts either ``{"sources": [...]}`` or a bare list. Source ids must be
    unique; the list order is preserved and used as the tie-break order when
    merging records.

    Raises:
        ConfigError: on an invalid entry, a duplicated source id, or a
            required field (title always is) with no field_selectors entry
    """
    entries = raw.get("sources", []) if isinstance(raw, dict) else raw
    if not isinstance(entries, list):
        raise ConfigError("sources must be a list")

    configs = []
    seen = set()
    for entry in entries:
        try:
            cfg = SourceAdapterConfig.model_validate(entry)
        except ValidationError as e:
            raise ConfigError(f"Invalid source config: {e}") from e
        unselectable = (set(cfg.required) | {"title"}) - set(cfg.field_selectors)
        if unselectable:
            raise ConfigError(
                f"{cfg.source_id}: required field(s) without patterns: "
                f"{', '.join(sorted(unselectable))}"
            )
        if cfg.source_id in seen:
            raise ConfigError(f"Duplicate source id {cfg.source_id}")
        seen.add(cfg.source_id)
        configs.append(cfg)
    return configs


def load_source_configs(path=SOURCES_FILE):
    """Read and validate the per-source extraction rules from a YAML file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"Source config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Source config file is not valid YAML: {e}") from e

    configs = parse_source_configs(raw)
    logger.info(f"Loaded {len(configs)} source configs from {path}")
    return configs
