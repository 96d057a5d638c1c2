from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from typing import Any

from .utils import truthy

DEFAULT_SQLITE_PATH = "/app/local/state/opportunities.db"
DEFAULT_SOURCES_PATH = "/app/local/config/opportunity_sources.json"

MODES = ("button", "infinite-scroll")


# -----------------------------
# Exceptions
# -----------------------------
class ConfigError(ValueError):
    """Raised when provided kwargs/env cannot form a valid Settings or HarvestConfig."""


# -----------------------------
# Per-harvester run config
# -----------------------------
@dataclass(frozen=True)
class HarvestConfig:
    """
    Knobs for one Harvester.run(config).

    Everything that can suspend is bounded here: scroll saturation by
    max_scrolls * scroll_delay, navigation by wait_budget, queries by
    query_timeout.
    """

    max_scrolls: int = 50
    max_pages: int = 10
    auto_paginate: bool = True
    max_consecutive_duplicate_pages: int = 3
    scroll_stall_limit: int = 3
    scroll_delay: float = 1.0
    wait_budget: float = 20.0
    wait_phases: tuple[tuple[int, float], ...] = ((5, 0.2), (5, 0.5), (5, 1.0), (5, 2.0))
    height_tolerance: int = 50
    query_timeout: float = 5.0
    infinite_scroll_fallback: bool = True
    mode: str | None = None  # None -> adapter default

    # Dedup tuning
    max_cached_ids: int = 5000
    similarity_enabled: bool = True
    similarity_prefix: int = 40
    similarity_min_title: int = 8

    @classmethod
    def from_mapping(cls, m: Mapping[str, Any] | None, base: HarvestConfig | None = None) -> HarvestConfig:
        """
        Build from a dict that may use camelCase (maxPages) or snake_case (max_pages).
        Unknown keys are rejected so typos in config files surface early.
        """
        base = base or cls()
        if not m:
            return base
        if not isinstance(m, Mapping):
            raise ConfigError("harvest config must be an object")

        known = {f.name for f in fields(cls)}
        updates: dict[str, Any] = {}
        for raw_key, value in m.items():
            key = _snake(str(raw_key))
            if key not in known:
                raise ConfigError(f"unknown harvest config key {raw_key!r}")
            updates[key] = value

        coerced: dict[str, Any] = {}
        for key, value in updates.items():
            default = getattr(base, key)
            if key == "wait_phases":
                coerced[key] = _parse_phases(value)
            elif key == "mode":
                coerced[key] = None if value in (None, "") else str(value).strip().lower()
            elif isinstance(default, bool):
                coerced[key] = truthy(value)
            elif isinstance(default, int):
                coerced[key] = _as_int(key, value)
            elif isinstance(default, float):
                coerced[key] = _as_float(key, value)
            else:
                coerced[key] = value

        cfg = replace(base, **coerced)
        cfg.validate()
        return cfg

    def validate(self) -> None:
        for name in ("max_scrolls", "max_pages", "max_consecutive_duplicate_pages", "scroll_stall_limit"):
            if getattr(self, name) < 1:
                raise ConfigError(f"'{name}' must be >= 1")
        if self.max_cached_ids < 1:
            raise ConfigError("'max_cached_ids' must be >= 1")
        for name in ("scroll_delay", "wait_budget", "query_timeout"):
            if getattr(self, name) < 0:
                raise ConfigError(f"'{name}' must be >= 0")
        if self.query_timeout == 0:
            raise ConfigError("'query_timeout' must be > 0")
        if self.height_tolerance < 0 or self.similarity_prefix < 0 or self.similarity_min_title < 0:
            raise ConfigError("tolerances must be >= 0")
        if self.mode is not None and self.mode not in MODES:
            raise ConfigError(f"'mode' must be one of {MODES} (got {self.mode!r})")


# -----------------------------
# Module-level settings
# -----------------------------
@dataclass(frozen=True)
class SourceSpec:
    """
    One platform to harvest.
    - kind: adapter registry key ("featured", "qwoted", "sourcebottle")
    - platform: namespace for persisted records (defaults to kind)
    - start_url / driver: optional overrides of the adapter defaults
    - storage_state: Playwright session file for sites that need a login
    - config: per-source HarvestConfig overrides
    """

    kind: str
    platform: str
    start_url: str | None = None
    driver: str | None = None
    storage_state: str | None = None
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class Settings:
    """
    Canonical configuration for an 'opportunity_harvest' run.

    Sources come either inline (kwargs['sources']) or from a JSON file at
    sources_path, a flat list of {"kind", "platform"?, "start_url"?, "driver"?, "config"?}.
    """

    sqlite_path: str = DEFAULT_SQLITE_PATH
    sources_path: str | None = None
    sources: list[SourceSpec] = field(default_factory=list)
    harvest: HarvestConfig = field(default_factory=HarvestConfig)
    op: str = "harvest"
    only: list[str] = field(default_factory=list)
    max_threads: int = 4
    skip_network: bool = False
    headless: bool = True
    compact_keep: int | None = None
    report_all: bool = False

    def selected_sources(self) -> list[SourceSpec]:
        """Sources for this run, narrowed by `only` (platform or kind names) when given."""
        if not self.only:
            return list(self.sources)
        wanted = {o.strip().lower() for o in self.only}
        return [s for s in self.sources if s.platform in wanted or s.kind in wanted]

    def config_for(self, spec: SourceSpec) -> HarvestConfig:
        return HarvestConfig.from_mapping(spec.config, base=self.harvest)

    # ------------- constructors -------------
    @classmethod
    def from_env_and_kwargs(cls, kwargs: Mapping[str, Any] | None) -> Settings:
        """
        Build Settings from kwargs with validation.

        Expected kwargs (all optional):

            sqlite_path: str = $SQLITE_PATH or "/app/local/state/opportunities.db"
            sources: list[dict]         # inline source list
            sources_path: str           # JSON file with the source list
            harvest: dict               # HarvestConfig overrides for every source
            op: "harvest" | "merge" | "compact"
            only: list[str] | str       # restrict to these platforms/kinds
            max_threads: int = 4
            skip_network: bool = false
            headless: bool = $HARVEST_HEADLESS or true
            compact_keep: int | null
            report_all: bool = false    # render every merged record, not just new ones
        """
        kw = dict(kwargs or {})

        sqlite_path = str(kw.get("sqlite_path") or os.getenv("SQLITE_PATH") or DEFAULT_SQLITE_PATH)
        op = str(kw.get("op") or "harvest").strip().lower()
        max_threads = _as_int("max_threads", kw.get("max_threads") or 4)
        skip_network = truthy(kw.get("skip_network"))
        headless_raw = kw.get("headless")
        headless = truthy(headless_raw) if headless_raw is not None else truthy(os.getenv("HARVEST_HEADLESS", "1"))
        report_all = truthy(kw.get("report_all"))

        compact_keep = kw.get("compact_keep")
        compact_keep = _as_int("compact_keep", compact_keep) if compact_keep not in (None, "") else None

        only = kw.get("only") or []
        if isinstance(only, str):
            only = [o for o in only.split(",") if o.strip()]

        harvest = HarvestConfig.from_mapping(kw.get("harvest"))

        sources_path = kw.get("sources_path")
        sources_path = str(sources_path).strip() if sources_path else None
        if "sources" in kw and kw["sources"] is not None:
            sources = _parse_sources(kw["sources"])
        elif op == "harvest":
            sources = _parse_sources(_load_sources_file(sources_path or DEFAULT_SOURCES_PATH))
        else:
            # merge/compact work from persisted state only
            sources = []

        settings = cls(
            sqlite_path=sqlite_path,
            sources_path=sources_path,
            sources=sources,
            harvest=harvest,
            op=op,
            only=[str(o) for o in only],
            max_threads=max_threads,
            skip_network=skip_network,
            headless=headless,
            compact_keep=compact_keep,
            report_all=report_all,
        )
        _validate_settings(settings)
        return settings


# -----------------------------
# Helpers
# -----------------------------
def _snake(key: str) -> str:
    out = []
    for ch in key:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out).lstrip("_")


def _as_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"'{name}' must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as err:
        raise ConfigError(f"'{name}' must be an integer (got {value!r})") from err


def _as_float(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"'{name}' must be a number")
    try:
        return float(value)
    except (TypeError, ValueError) as err:
        raise ConfigError(f"'{name}' must be a number (got {value!r})") from err


def _parse_phases(value: Any) -> tuple[tuple[int, float], ...]:
    """Accept [[5, 0.2], [5, 0.5]] or [{"attempts": 5, "interval": 0.2}]."""
    if not isinstance(value, (list, tuple)) or not value:
        raise ConfigError("'wait_phases' must be a non-empty list")
    out: list[tuple[int, float]] = []
    for i, item in enumerate(value):
        if isinstance(item, Mapping):
            attempts, interval = item.get("attempts"), item.get("interval")
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            attempts, interval = item
        else:
            raise ConfigError(f"wait_phases[{i}] must be [attempts, interval]")
        n = _as_int(f"wait_phases[{i}].attempts", attempts)
        s = _as_float(f"wait_phases[{i}].interval", interval)
        if n < 1 or s <= 0:
            raise ConfigError(f"wait_phases[{i}] needs attempts >= 1 and interval > 0")
        out.append((n, s))
    return tuple(out)


def _load_sources_file(path: str) -> Any:
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"opportunity sources file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"opportunity sources file is invalid JSON: {path}") from e


def _parse_sources(value: Any) -> list[SourceSpec]:
    """
    Parse a flat list into SourceSpec objects.
    Accepts: ["featured", {"kind": "qwoted", "config": {...}}, ...]
    """
    if not value:
        return []
    if not isinstance(value, list):
        raise ConfigError("Expected a list of source objects.")
    out: list[SourceSpec] = []
    seen: set[str] = set()
    for i, item in enumerate(value):
        if isinstance(item, str):
            item = {"kind": item}
        if not isinstance(item, dict):
            raise ConfigError(f"Source[{i}] must be an object or a kind string.")
        kind = str(item.get("kind") or "").strip().lower()
        if not kind:
            raise ConfigError(f"Source[{i}] requires 'kind'.")
        platform = str(item.get("platform") or kind).strip().lower()
        if platform in seen:
            raise ConfigError(f"Source[{i}]: duplicate platform {platform!r}.")
        seen.add(platform)
        cfg = item.get("config") or {}
        if not isinstance(cfg, dict):
            raise ConfigError(f"Source[{i}].config must be an object.")
        driver = item.get("driver")
        if driver is not None and str(driver) not in ("browser", "static"):
            raise ConfigError(f"Source[{i}].driver must be 'browser' or 'static'.")
        storage_state = item.get("storage_state") or item.get("storageState")
        if storage_state is not None and not isinstance(storage_state, str):
            raise ConfigError(f"Source[{i}].storage_state must be a file path.")
        out.append(
            SourceSpec(
                kind=kind,
                platform=platform,
                start_url=(str(item["start_url"]).strip() if item.get("start_url") else None),
                driver=str(driver) if driver else None,
                storage_state=storage_state or None,
                config=dict(cfg),
            )
        )
    return out


def _validate_settings(s: Settings) -> None:
    if s.op not in ("harvest", "merge", "compact"):
        raise ConfigError(f"'op' must be harvest, merge or compact (got {s.op!r}).")
    if s.max_threads <= 0:
        raise ConfigError("'max_threads' must be >= 1.")
    if not s.sqlite_path.strip():
        raise ConfigError("'sqlite_path' cannot be empty.")
    if s.compact_keep is not None and s.compact_keep < 1:
        raise ConfigError("'compact_keep' must be >= 1 when provided.")
    if s.op == "compact" and s.compact_keep is None:
        raise ConfigError("op=compact requires 'compact_keep'.")
    if s.op == "harvest" and not s.sources:
        raise ConfigError("No sources configured to harvest.")
    # Per-source overrides must be valid on top of the shared config
    for spec in s.sources:
        s.config_for(spec)
