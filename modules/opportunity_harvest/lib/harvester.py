"""
One platform's pipeline: driver -> adapter -> normalise -> dedup -> persist,
driven page by page by the PaginationController.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence

from . import logging_bridge
from .adapters.base import ExtractionAdapter
from .config import HarvestConfig
from .dedup import DedupCache
from .drivers.base import Element, PageDriver
from .errors import InvalidRecordError, NoContentError, StorageWriteError
from .fingerprint import FingerprintGenerator
from .models import HarvestResult, OpportunityRecord
from .normalize import normalize_record
from .pagination import PaginationController, Sleep
from .resolver import SelectorResolver
from .store import KeyValueStore, collection_key

LOG = logging.getLogger(__name__)

DriverFactory = Callable[[ExtractionAdapter], PageDriver]


class Harvester:
    def __init__(
        self,
        adapter: ExtractionAdapter,
        driver_factory: DriverFactory,
        store: KeyValueStore,
        *,
        sleep: Sleep | None = None,
    ) -> None:
        self.adapter = adapter
        self.store = store
        self._driver_factory = driver_factory
        self._sleep = sleep
        self._controller: PaginationController | None = None
        self._abort_requested = False
        self.last_result: HarvestResult | None = None

    @property
    def platform(self) -> str:
        return self.adapter.platform

    def abort(self) -> None:
        """Ask the live session (or the next one to start) to stop at its next boundary."""
        self._abort_requested = True
        if self._controller is not None:
            self._controller.abort()

    async def run(self, config: HarvestConfig) -> list[OpportunityRecord]:
        """
        Harvest every reachable page and return the records that were new.

        Raises NoContentError when no item candidate matched anything on the
        first page and nothing was produced. Every other failure degrades to
        fewer records.
        """
        t0 = time.perf_counter_ns()
        adapter = self.adapter
        result = HarvestResult(platform=adapter.platform)
        self.last_result = result

        driver = self._driver_factory(adapter)
        try:
            await driver.goto(adapter.start_url)

            cache = DedupCache(
                config.max_cached_ids,
                similarity_enabled=config.similarity_enabled,
                similarity_prefix=config.similarity_prefix,
                similarity_min_title=config.similarity_min_title,
            )
            seeded = cache.seed(self.store.load_records(collection_key(adapter.platform)))

            resolver = SelectorResolver(driver, query_timeout=config.query_timeout)
            controller = PaginationController(
                driver,
                resolver,
                config,
                item_candidate=adapter.item_candidates,
                container_candidate=adapter.container_candidates,
                mode=config.mode or adapter.default_mode,
                platform=adapter.platform,
                sleep=self._sleep,
                fingerprints=FingerprintGenerator(driver, resolver, item_role=adapter.item_candidates.role),
            )
            self._controller = controller
            if self._abort_requested:
                controller.abort()

            async def handle_page(nodes: list[Element]) -> Sequence[OpportunityRecord]:
                fresh: list[OpportunityRecord] = []
                for raw in await adapter.extract(nodes):
                    try:
                        record = normalize_record(raw, adapter.platform)
                    except InvalidRecordError as e:
                        result.invalid_count += 1
                        LOG.debug("%s", e)
                        continue
                    if not cache.is_duplicate(record):
                        fresh.append(record)
                return fresh

            records: list[OpportunityRecord] = await controller.run(handle_page)
            result.records = records
            result.pages = controller.session.current_page
            result.outcome = controller.session.state.value

            first = controller.first_match
            if not records and first is not None and first.match_count == 0:
                raise NoContentError(adapter.platform, adapter.item_candidates.selectors)

            try:
                self.store.append_records(adapter.platform, records)
            except StorageWriteError as e:
                # The store already logged it; the records are still returned
                result.errors.append(str(e))

            logging_bridge.activity({
                "component": "opportunity_harvest.harvester",
                "op": "harvested",
                "platform": adapter.platform,
                "outcome": result.outcome,
                "pages": result.pages,
                "new": result.new_count,
                "invalid": result.invalid_count,
                "failed_nodes": adapter.failed_nodes,
                "seeded": seeded,
                "evicted": cache.evicted,
            })
            return records
        finally:
            self._controller = None
            result.duration_us = int((time.perf_counter_ns() - t0) // 1000)
            await _close_quietly(driver, adapter.platform)


async def _close_quietly(driver: PageDriver, platform: str) -> None:
    try:
        await driver.close()
    except Exception as e:  # close errors never replace the run outcome
        logging_bridge.error({
            "component": "opportunity_harvest.harvester",
            "op": "driver_close",
            "platform": platform,
            "fatal": False,
            "error": repr(e),
        })
