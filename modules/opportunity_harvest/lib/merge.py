"""
Cross-source merge registry.

Every harvester persists its own `<platform>Opportunities` collection. The
registry folds those into the single `opportunities` collection and keeps the
per-platform display metadata (`scraper_source_configs`) next to it, under a
separate key so either can be lost without touching the other.

The registry is a plain object handed to whoever needs it; nothing here is
module-level state.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable
from typing import Any

from . import logging_bridge
from .errors import RegistryError, StorageWriteError
from .models import OpportunityRecord, SourceConfig
from .store import MERGED_KEY, KeyValueStore, collection_key
from .utils import truthy

LOG = logging.getLogger(__name__)

DEFAULT_SOURCE_CONFIGS: dict[str, SourceConfig] = {
    "sourcebottle": SourceConfig(display_color="#4b6cb7", display_icon="📢", priority=10),
    "featured": SourceConfig(display_color="#ff9800", display_icon="🔍", priority=20),
    "qwoted": SourceConfig(display_color="#009688", display_icon="💬", priority=30),
}

_CONFIG_FIELDS = {
    "display_color": "display_color",
    "displaycolor": "display_color",
    "color": "display_color",
    "display_icon": "display_icon",
    "displayicon": "display_icon",
    "icon": "display_icon",
    "priority": "priority",
    "enabled": "enabled",
}


def default_source_config(name: str) -> SourceConfig:
    return DEFAULT_SOURCE_CONFIGS.get(_platform_name(name), SourceConfig())


class StoredSource:
    """
    Handle for a platform that is merged but not harvested in this process:
    its record stream is whatever is already persisted.
    """

    def __init__(self, platform: str, store: KeyValueStore) -> None:
        self.platform = _platform_name(platform)
        self._store = store

    async def run(self, config: Any = None) -> list[OpportunityRecord]:
        return self._store.load_records(collection_key(self.platform))


class MergeRegistry:
    def __init__(self, store: KeyValueStore) -> None:
        self.store = store
        self._handles: dict[str, Any] = {}

    # ---- registration --------------------------------------------------------

    def register(self, name: str, handle: Any) -> None:
        """
        Attach a harvester handle (anything with `platform` and an async
        `run(config)`). The first registration of a platform persists its
        default SourceConfig.
        """
        platform = _platform_name(name)
        if not platform:
            raise RegistryError("cannot register a source without a name")
        if handle is None or not hasattr(handle, "platform") or not callable(getattr(handle, "run", None)):
            raise RegistryError(f"handle for {platform!r} must expose 'platform' and 'run(config)'")

        self._handles[platform] = handle
        configs = self.store.load_source_configs()
        if platform not in configs:
            configs[platform] = default_source_config(platform)
            self._save_configs(configs, platform)
        logging_bridge.activity({
            "component": "opportunity_harvest.merge",
            "op": "register",
            "platform": platform,
        })

    def register_source(self, name: str, **overrides: Any) -> SourceConfig:
        """Update a platform's display config without touching its records."""
        platform = _platform_name(name)
        if not platform:
            raise RegistryError("cannot configure a source without a name")
        changes: dict[str, Any] = {}
        for key, value in overrides.items():
            field_name = _CONFIG_FIELDS.get(key.lower())
            if field_name is None:
                raise RegistryError(f"unknown source config field {key!r}")
            changes[field_name] = _coerce_field(field_name, value)

        configs = self.store.load_source_configs()
        current = configs.get(platform) or default_source_config(platform)
        updated = dataclasses.replace(current, **changes)
        configs[platform] = updated
        self._save_configs(configs, platform)
        return updated

    def discover(self) -> list[str]:
        """
        Register a StoredSource for every platform that has persisted records
        or a persisted config but no live handle. Returns the added names.
        """
        known = set(self.store.load_source_configs())
        suffix = collection_key("")
        for key in self.store.keys():
            if key.endswith(suffix) and key != suffix:
                known.add(key[: -len(suffix)])
        added = []
        for platform in sorted(known - set(self._handles)):
            self.register(platform, StoredSource(platform, self.store))
            added.append(platform)
        return added

    # ---- lookups -------------------------------------------------------------

    def get_handle(self, name: str) -> Any:
        return self._handles.get(_platform_name(name))

    def get_source_config(self, name: str) -> SourceConfig:
        platform = _platform_name(name)
        return self.store.load_source_configs().get(platform) or default_source_config(platform)

    def get_all_source_configs(self) -> dict[str, SourceConfig]:
        configs = self.store.load_source_configs()
        for platform in self._handles:
            configs.setdefault(platform, default_source_config(platform))
        return configs

    def get_all_sources(self) -> list[str]:
        """Every known platform, highest priority (lowest number) first."""
        configs = self.get_all_source_configs()
        return sorted(configs, key=lambda p: (configs[p].priority, p))

    def get_all_opportunities(self) -> list[OpportunityRecord]:
        """The merged collection, newest first."""
        return sorted(self.store.load_records(MERGED_KEY), key=lambda r: r.extracted_at, reverse=True)

    # ---- merge / maintenance -------------------------------------------------

    def merge_all(self) -> list[OpportunityRecord]:
        """
        Fold every platform collection into the merged one.

        The existing merged collection is read first so its rows (and their
        `saved` flags) win over the per-platform copies. Re-running on an
        unchanged store yields the same list.
        """
        if not self._handles:
            raise RegistryError("merge_all() called before any source was registered")

        merged = self.store.load_records(MERGED_KEY)
        before = len(merged)
        per_source: dict[str, int] = {}
        union = list(merged)
        for platform in self._merge_order():
            rows = self.store.load_records(collection_key(platform))
            # Older rows may predate the platform field
            rows = [r if r.source_platform else dataclasses.replace(r, source_platform=platform) for r in rows]
            per_source[platform] = len(rows)
            union.extend(rows)

        result = _dedup_first_wins(union)
        try:
            self.store.save_records(MERGED_KEY, result)
        except StorageWriteError as e:
            logging_bridge.error({
                "component": "opportunity_harvest.merge",
                "op": "merge_all",
                "fatal": False,
                "error": str(e),
            })

        logging_bridge.activity({
            "component": "opportunity_harvest.merge",
            "op": "merge_all",
            "sources": per_source,
            "before": before,
            "candidates": len(union),
            "after": len(result),
        })
        return result

    def compact(self, keep_per_platform: int) -> int:
        """
        Keep the newest N records per platform; returns how many merged
        records were dropped.

        The per-platform collections are trimmed to the same set, otherwise
        the next merge_all() would fold the dropped rows straight back in.
        """
        if keep_per_platform < 1:
            raise ValueError("keep_per_platform must be >= 1")
        records = self.store.load_records(MERGED_KEY)
        by_platform: dict[str, dict[tuple[str, str], OpportunityRecord]] = {}
        for r in records:
            by_platform.setdefault(r.source_platform, {}).setdefault(r.key, r)

        platforms = set(by_platform) | set(self._handles)
        collections: dict[str, list[OpportunityRecord]] = {}
        for platform in sorted(platforms):
            rows = self.store.load_records(collection_key(platform))
            collections[platform] = rows
            for r in rows:
                by_platform.setdefault(platform, {}).setdefault((platform, r.external_id), r)

        keep: set[tuple[str, str]] = set()
        for rows in by_platform.values():
            newest = sorted(rows.items(), key=lambda kv: kv[1].extracted_at, reverse=True)
            keep.update(k for k, _ in newest[:keep_per_platform])

        trimmed: dict[str, int] = {}
        for platform, rows in collections.items():
            kept_rows = [r for r in rows if (platform, r.external_id) in keep]
            if len(kept_rows) < len(rows):
                self.store.save_records(collection_key(platform), kept_rows)
                trimmed[platform] = len(rows) - len(kept_rows)

        kept = [r for r in records if r.key in keep]
        removed = len(records) - len(kept)
        if removed:
            self.store.save_records(MERGED_KEY, kept)
        logging_bridge.activity({
            "component": "opportunity_harvest.merge",
            "op": "compact",
            "keep_per_platform": keep_per_platform,
            "removed": removed,
            "remaining": len(kept),
            "collections_trimmed": trimmed,
        })
        return removed

    def mark_saved(self, platform: str, external_id: str, saved: bool = True) -> bool:
        """Flip `saved` on a merged record. False when no such record exists."""
        key = (_platform_name(platform), external_id)
        records = self.store.load_records(MERGED_KEY)
        for i, r in enumerate(records):
            if r.key == key:
                if r.saved != saved:
                    records[i] = dataclasses.replace(r, saved=saved)
                    self.store.save_records(MERGED_KEY, records)
                return True
        return False

    # ---- internal ------------------------------------------------------------

    def _merge_order(self) -> list[str]:
        configs = self.get_all_source_configs()
        platforms = set(self._handles) | set(configs)
        return sorted(platforms, key=lambda p: (configs.get(p, default_source_config(p)).priority, p))

    def _save_configs(self, configs: dict[str, SourceConfig], platform: str) -> None:
        try:
            self.store.save_source_configs(configs)
        except StorageWriteError as e:
            logging_bridge.error({
                "component": "opportunity_harvest.merge",
                "op": "save_source_configs",
                "platform": platform,
                "fatal": False,
                "error": str(e),
            })


def _platform_name(name: str) -> str:
    return (name or "").strip().lower()


def _coerce_field(field_name: str, value: Any) -> Any:
    if field_name == "priority":
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise RegistryError(f"priority must be an integer (got {value!r})") from e
    if field_name == "enabled":
        return truthy(value)
    return str(value)


def _dedup_first_wins(records: Iterable[OpportunityRecord]) -> list[OpportunityRecord]:
    seen: set[tuple[str, str]] = set()
    out: list[OpportunityRecord] = []
    for r in records:
        if r.key in seen:
            continue
        seen.add(r.key)
        out.append(r)
    return out
