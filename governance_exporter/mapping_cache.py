"""Cached SKU friendly-name reference data.

The published product-name CSV changes rarely, so it is downloaded to a
local file at most once per refresh window. Download or parse failures are
never fatal: callers get whatever the cache holds, possibly nothing, and
fall back to the raw SKU identifier.
"""

import csv
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Iterable, NamedTuple

import requests

from governance_exporter import constants
from governance_exporter.config_store import ConfigStore
from governance_exporter.file_handler import delete_files, file_age_seconds

logger = logging.getLogger(__name__)


class SkuMapping(NamedTuple):
    by_primary_id: dict[str, str]
    by_alternate_id: dict[str, str]


def parse_mapping_file(path: Path) -> SkuMapping:
    by_primary_id: dict[str, str] = {}
    by_alternate_id: dict[str, str] = {}
    try:
        with open(path, "r", encoding="utf-8-sig", newline="") as f:
            for row in csv.DictReader(f):
                name = (row.get(constants.SKU_DISPLAY_NAME_COLUMN) or "").strip()
                if not name:
                    continue
                primary = (row.get(constants.SKU_PRIMARY_ID_COLUMN) or "").strip().lower()
                alternate = (row.get(constants.SKU_ALTERNATE_ID_COLUMN) or "").strip().upper()
                if primary:
                    by_primary_id.setdefault(primary, name)
                if alternate:
                    by_alternate_id.setdefault(alternate, name)
    except FileNotFoundError:
        logger.warning("SKU mapping cache '%s' does not exist", path)
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        logger.warning("SKU mapping cache '%s' could not be parsed: %s", path, e)
        return SkuMapping({}, {})
    return SkuMapping(by_primary_id, by_alternate_id)


class MappingCache:
    """Downloads and caches the SKU-to-friendly-name table."""

    def __init__(
        self,
        source_url: str = constants.SKU_MAPPING_URL,
        cache_path: Path = Path(constants.SKU_CACHE_PATH),
        ttl_seconds: float = constants.SKU_CACHE_TTL_HOURS * 3600,
        timeout: int = constants.SKU_DOWNLOAD_TIMEOUT,
    ) -> None:
        self.source_url = source_url
        self.cache_path = cache_path
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout

    @classmethod
    def from_config(cls, store: ConfigStore, report_key: str) -> "MappingCache":
        """Build a cache whose source, location and lifetime come from report settings."""
        return cls(
            source_url=store.resolve(
                report_key, "skuMappingUrl", default=constants.SKU_MAPPING_URL
            ),
            cache_path=Path(
                store.resolve(report_key, "skuCachePath", default=constants.SKU_CACHE_PATH)
            ),
            ttl_seconds=store.resolve_int(
                report_key, "skuCacheTtlHours", default=constants.SKU_CACHE_TTL_HOURS
            )
            * 3600,
        )

    def is_fresh(self) -> bool:
        age = file_age_seconds(self.cache_path, time.time())
        return age is not None and age < self.ttl_seconds

    def refresh(self) -> bool:
        """Download the reference data and atomically replace the cache file."""
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            fd, name = tempfile.mkstemp(suffix=".download", dir=self.cache_path.parent)
        except OSError as e:
            logger.warning("Cannot stage SKU mapping download in '%s': %s", self.cache_path.parent, e)
            return False
        staged = Path(name)
        try:
            with os.fdopen(fd, "wb") as f:
                response = requests.get(self.source_url, timeout=self.timeout, stream=True)
                response.raise_for_status()
                for chunk in response.iter_content(chunk_size=64 * 1024):
                    f.write(chunk)
            os.replace(staged, self.cache_path)
        except (OSError, requests.RequestException) as e:
            logger.warning(
                "Failed to download SKU mapping from %s, using cached copy: %s",
                self.source_url,
                e,
            )
            delete_files([staged])
            return False
        logger.info("Refreshed SKU mapping cache '%s'", self.cache_path)
        return True

    def get(self) -> SkuMapping:
        if self.is_fresh():
            logger.debug("SKU mapping cache '%s' is fresh", self.cache_path)
        else:
            self.refresh()
        return parse_mapping_file(self.cache_path)


def friendly_name(mapping: SkuMapping, sku_id: str | None, part_number: str | None = None) -> str:
    """Look up a SKU by id, then by part number, falling back to the raw identifier."""
    if sku_id:
        name = mapping.by_primary_id.get(sku_id.strip().lower())
        if name:
            return name
    if part_number:
        name = mapping.by_alternate_id.get(part_number.strip().upper())
        if name:
            return name
    return part_number or sku_id or ""


def enrich_with_friendly_names(
    rows: Iterable[dict[str, Any]],
    mapping: SkuMapping,
    id_field: str = "SkuId",
    part_number_field: str = "SkuPartNumber",
    output_field: str = "SkuFriendlyName",
) -> list[dict[str, Any]]:
    enriched = []
    for row in rows:
        row = dict(row)
        row[output_field] = friendly_name(
            mapping, row.get(id_field), row.get(part_number_field)
        )
        enriched.append(row)
    return enriched
