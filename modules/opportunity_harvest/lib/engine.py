"""
Engine for one opportunity-harvest cycle.

  - one harvester per configured platform, fanned out over a thread pool
    (each thread owns its own asyncio event loop)
  - cross-source merge into the `opportunities` collection
  - optional compaction of the merged collection
  - HTML summary of what was new, grouped by platform
  - dependency injection for testability (`get_adapter`, `driver_factory`, `sleep`)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed

from . import logging_bridge, render
from .adapters.base import ExtractionAdapter
from .config import HarvestConfig, Settings, SourceSpec
from .drivers import make_driver
from .errors import RegistryError
from .harvester import DriverFactory, Harvester
from .merge import MergeRegistry
from .models import HarvestResult, OpportunityRecord
from .pagination import Sleep
from .store import KeyValueStore


# =============================================================================
# DEFAULT LOOKUPS (PRODUCTION)
# =============================================================================
def _default_get_adapter(kind: str) -> type[ExtractionAdapter]:
    from .adapters.registry import get as get_adapter_class

    return get_adapter_class(kind)


def _default_driver_factory(spec: SourceSpec, headless: bool) -> DriverFactory:
    def _factory(adapter: ExtractionAdapter):
        return make_driver(spec.driver or adapter.driver, headless=headless, storage_state=spec.storage_state)

    return _factory


# =============================================================================
# MAIN ORCHESTRATOR
# =============================================================================
def run_once(
    settings: Settings,
    get_adapter: Callable[[str], type[ExtractionAdapter]] | None = None,
    driver_factory: DriverFactory | None = None,
    sleep: Sleep | None = None,
) -> tuple[str, dict] | None:
    """
    Run one harvest/merge/compact cycle.

    Returns:
        (html, meta_dict) when there is something to report, else None.
    """
    start_ns = time.perf_counter_ns()
    get_adapter_func = get_adapter or _default_get_adapter

    store = KeyValueStore(settings.sqlite_path)
    registry = MergeRegistry(store)

    # -------------------------------------------------------------------------
    # REGISTER HARVESTERS (disabled platforms are registered but not run)
    # -------------------------------------------------------------------------
    planned: dict[str, tuple[Harvester, HarvestConfig]] = {}
    if settings.op == "harvest":
        for spec in settings.selected_sources():
            adapter = get_adapter_func(spec.kind)(platform=spec.platform, start_url=spec.start_url)
            factory = driver_factory or _default_driver_factory(spec, settings.headless)
            harvester = Harvester(adapter, factory, store, sleep=sleep)
            registry.register(spec.platform, harvester)
            if not registry.get_source_config(spec.platform).enabled:
                logging_bridge.activity({
                    "component": "opportunity_harvest.engine",
                    "op": "skipped_source",
                    "platform": spec.platform,
                    "reason": "disabled",
                })
                continue
            planned[spec.platform] = (harvester, settings.config_for(spec))
    registry.discover()

    durations_us: dict[str, int] = {}
    results: dict[str, HarvestResult] = {}
    new_by_platform: dict[str, list[OpportunityRecord]] = {}

    # -------------------------------------------------------------------------
    # INNER: run one platform in a worker thread
    # -------------------------------------------------------------------------
    def _run_platform(platform: str, harvester: Harvester, cfg: HarvestConfig) -> tuple[str, list[OpportunityRecord]]:
        records = asyncio.run(harvester.run(cfg))
        return (platform, records)

    # -------------------------------------------------------------------------
    # EXECUTE HARVESTERS IN PARALLEL (one thread per platform)
    # -------------------------------------------------------------------------
    if settings.skip_network:
        if planned:
            logging_bridge.activity({
                "component": "opportunity_harvest.engine",
                "op": "skipped_harvest",
                "reason": "skip_network",
                "platforms": sorted(planned),
            })
    elif planned:
        with ThreadPoolExecutor(max_workers=min(len(planned), settings.max_threads)) as pool:
            futures = {pool.submit(_run_platform, p, h, cfg): p for p, (h, cfg) in planned.items()}
            for fut in as_completed(futures):
                platform = futures[fut]
                harvester = planned[platform][0]
                try:
                    _, records = fut.result()
                    if records:
                        new_by_platform[platform] = records
                except Exception as e:
                    logging_bridge.error({
                        "component": "opportunity_harvest.engine",
                        "op": "harvester_run",
                        "platform": platform,
                        "error": repr(e),
                    })
                if harvester.last_result is not None:
                    results[platform] = harvester.last_result
                    durations_us[platform] = harvester.last_result.duration_us

    # -------------------------------------------------------------------------
    # MERGE (+ optional compaction)
    # -------------------------------------------------------------------------
    merged: list[OpportunityRecord] = []
    try:
        merged = registry.merge_all()
    except RegistryError as e:
        logging_bridge.activity({
            "component": "opportunity_harvest.engine",
            "op": "nothing_to_merge",
            "reason": str(e),
        })

    compacted = 0
    if settings.compact_keep and merged:
        compacted = registry.compact(settings.compact_keep)
        merged = registry.get_all_opportunities()

    # -------------------------------------------------------------------------
    # SUMMARY LOG (always emitted)
    # -------------------------------------------------------------------------
    new_counts = {p: len(items) for p, items in new_by_platform.items()}
    total_us = int((time.perf_counter_ns() - start_ns) // 1000)
    logging_bridge.activity({
        "component": "opportunity_harvest.engine",
        "op": "summary",
        "run_op": settings.op,
        "skip_network": settings.skip_network,
        "planned": sorted(planned),
        "outcomes": {p: r.outcome for p, r in results.items()},
        "pages": {p: r.pages for p, r in results.items()},
        "invalid": {p: r.invalid_count for p, r in results.items() if r.invalid_count},
        "new_by_platform": new_counts,
        "merged_total": len(merged),
        "compacted": compacted,
        "durations_us": durations_us,
        "total_us": total_us,
    })

    # -------------------------------------------------------------------------
    # DECIDE WHAT TO RENDER
    # -------------------------------------------------------------------------
    if settings.report_all:
        to_render = _group(merged)
        label = "opportunities on file"
    else:
        to_render = new_by_platform
        label = "new opportunities"
    if not any(to_render.values()):
        logging_bridge.activity({
            "component": "opportunity_harvest.engine",
            "op": "no_new",
            "durations_us": durations_us,
            "total_us": total_us,
        })
        return None

    configs = registry.get_all_source_configs()
    msg = _summary_message(to_render, label=label)
    new_total = sum(new_counts.values())
    platforms_with_new = [p for p, items in new_by_platform.items() if items]
    if len(platforms_with_new) == 1:
        subject = f"Opportunity Harvest: {new_total} new on {platforms_with_new[0]}"
    elif not platforms_with_new:
        subject = f"Opportunity Harvest: {sum(len(v) for v in to_render.values())} on file"
    else:
        subject = f"Opportunity Harvest: {new_total} new ({len(platforms_with_new)} sources)"

    html = render.wrap_document(render.build_tables(to_render, configs), heading="Opportunity Harvest", intro=msg)
    by_platform_counts = {p: len(items) for p, items in to_render.items()}

    meta_dict = {
        "message": msg,
        "new_total": new_total,
        "by_platform": by_platform_counts,
        "subject": subject,
        "outcomes": {p: r.outcome for p, r in results.items()},
        "merged_total": len(merged),
        "compacted": compacted,
        "durations_us": {**durations_us, "_total_us": total_us},
        "report_all": settings.report_all,
    }

    logging_bridge.activity({
        "component": "opportunity_harvest.engine",
        "op": "rendered",
        "counts": by_platform_counts,
        "new_total": new_total,
        "report_all": settings.report_all,
        "total_us": total_us,
    })
    return (html, meta_dict)


# =============================================================================
# HELPERS
# =============================================================================
def _group(records: list[OpportunityRecord]) -> dict[str, list[OpportunityRecord]]:
    out: dict[str, list[OpportunityRecord]] = {}
    for r in records:
        out.setdefault(r.source_platform, []).append(r)
    return out


def _summary_message(by_platform: dict[str, list[OpportunityRecord]], *, label: str) -> str:
    """e.g. "7 new opportunities across 2 sources" """
    total = sum(len(v) for v in by_platform.values())
    num_sources = len([p for p, items in by_platform.items() if items])
    return f"{total} {label} across {num_sources} sources"
