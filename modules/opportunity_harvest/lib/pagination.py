"""
Pagination / infinite-scroll state machine.

    IDLE -> EXTRACTING -> NAVIGATING -> WAITING_FOR_CHANGE -> EXTRACTING ...
                                                           `-> STALLED / EXHAUSTED

Every wait is an awaited, bounded sleep (injectable for tests); there is no
recursion and no unbounded loop. Pages are strictly sequential: page N+1 is
only requested after page N was extracted, deduplicated and fingerprinted.

The controller always hands back what it accumulated. Running out of pages,
stalling, or being aborted are all normal endings with partial results.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from . import logging_bridge
from .config import HarvestConfig
from .drivers.base import Element, PageDriver
from .errors import NavigationStallError, TransientDomError
from .fingerprint import FingerprintGenerator, FingerprintHistory, has_changed
from .models import ContentFingerprint, PaginationSession, PaginationState, SelectorCandidate, SelectorMatch
from .resolver import SelectorResolver

LOG = logging.getLogger(__name__)

PageHandler = Callable[[list[Element]], Awaitable[Sequence[Any]]]
Sleep = Callable[[float], Awaitable[Any]]

# ---- next-control discovery cascade -----------------------------------------

EXPLICIT_NEXT_SELECTORS = (
    'a[rel="next"]',
    ".pagination-next",
    '[data-testid="pagination-next"]',
    "a.next, button.next",
    "li.next > a",
    "ul.pagination li:not(.disabled):last-child a",
    ".load-more, button.load-more",
)
ARIA_NEXT_SELECTORS = (
    'button[aria-label="Next page"]',
    '[aria-label="Next page"]',
    '[aria-label="Next"]',
    '[aria-label*="next" i]',
)
CLICKABLE_SELECTOR = 'button, a, [role="button"]'
ARROW_ICON_SELECTOR = (
    'svg[class*="arrow" i], svg[class*="chevron" i], svg[data-icon*="arrow" i], '
    'svg[data-icon*="chevron" i], i[class*="arrow" i], i[class*="chevron" i]'
)
PAGINATION_CONTAINERS = (".pagination", 'nav[role="navigation"]', '[aria-label*="pagination" i]')

_NEXT_TEXTS = {">", "›", "»", "→", "next", "next page", "next »", "next ›", "load more", "show more", "more"}
_MAX_HEURISTIC_SCAN = 300


async def find_next_control(driver: PageDriver) -> tuple[Element, str] | None:
    """
    Locate an enabled "next page" control. Returns (element, strategy) or None.

    Order: explicit markers -> ARIA labels -> text/icon heuristics ->
    last clickable inside a pagination container.
    """
    for sel in EXPLICIT_NEXT_SELECTORS:
        el = await _first_enabled(driver, sel)
        if el is not None:
            return el, f"explicit:{sel}"

    for sel in ARIA_NEXT_SELECTORS:
        el = await _first_enabled(driver, sel)
        if el is not None:
            return el, f"aria:{sel}"

    for el in (await _safe_query(driver, CLICKABLE_SELECTOR))[:_MAX_HEURISTIC_SCAN]:
        try:
            text = (await el.text()).strip().lower()
            if text in _NEXT_TEXTS or text.startswith("next "):
                if not await el.is_disabled():
                    return el, "text"
                continue
            if not text and await el.query(ARROW_ICON_SELECTOR) is not None:
                hint = " ".join(
                    [(await el.attribute(a) or "") for a in ("aria-label", "title", "class", "data-direction")]
                ).lower()
                if any(w in hint for w in ("next", "right", "forward")) and not await el.is_disabled():
                    return el, "icon"
        except TransientDomError:
            continue

    for sel in PAGINATION_CONTAINERS:
        for container in await _safe_query(driver, sel):
            try:
                items = await container.query_all("a, button")
                if not items:
                    continue
                last = items[-1]
                if await _is_current(last) or await last.is_disabled():
                    continue
                return last, f"last-sibling:{sel}"
            except TransientDomError:
                continue
    return None


async def _safe_query(driver: PageDriver, selector: str) -> list[Element]:
    try:
        return await driver.query_all(selector)
    except TransientDomError as e:
        LOG.debug("next-control query %r failed: %s", selector, e)
        return []


async def _first_enabled(driver: PageDriver, selector: str) -> Element | None:
    for el in await _safe_query(driver, selector):
        try:
            if not await el.is_disabled():
                return el
        except TransientDomError:
            continue
    return None


async def _is_current(el: Element) -> bool:
    if (await el.attribute("aria-current") or "").lower() in ("page", "true"):
        return True
    classes = (await el.attribute("class") or "").lower().split()
    return "active" in classes or "current" in classes


# ---- controller --------------------------------------------------------------


class PaginationController:
    def __init__(
        self,
        driver: PageDriver,
        resolver: SelectorResolver,
        config: HarvestConfig,
        *,
        item_candidate: SelectorCandidate,
        container_candidate: SelectorCandidate | None = None,
        mode: str = "button",
        platform: str = "",
        sleep: Sleep | None = None,
        fingerprints: FingerprintGenerator | None = None,
    ) -> None:
        self.driver = driver
        self.resolver = resolver
        self.config = config
        self.item_candidate = item_candidate
        self.container_candidate = container_candidate
        self.platform = platform
        self._sleep: Sleep = sleep or asyncio.sleep
        self._fingerprints = fingerprints or FingerprintGenerator(driver, resolver, item_role=item_candidate.role)
        self._scope: str | None = None
        self._aborted = False

        self.session = PaginationSession(
            max_pages=config.max_pages,
            max_consecutive_duplicate_pages=config.max_consecutive_duplicate_pages,
            mode=config.mode or mode,
        )
        self.history = FingerprintHistory(height_tolerance=config.height_tolerance)
        self.first_match: SelectorMatch | None = None
        self.scrolls = 0
        self.stalls = 0

    # ---- public API ----------------------------------------------------------

    def abort(self) -> None:
        """Stop at the next transition boundary; accumulated results are kept."""
        self._aborted = True

    @property
    def aborted(self) -> bool:
        return self._aborted

    async def run(self, handle_page: PageHandler) -> list[Any]:
        s = self.session
        results: list[Any] = []
        s.move(PaginationState.IDLE)
        self._log("session_start", mode=s.mode, max_pages=s.max_pages)

        if self._aborted:
            return self._finish(PaginationState.ABORTED, results)

        # IDLE -> EXTRACTING
        await self._resolve_scope()
        s.move(PaginationState.EXTRACTING)
        await self._saturate()

        while True:
            if self._aborted:
                return self._finish(PaginationState.ABORTED, results)

            # ---- EXTRACTING ----
            match = await self.resolver.ensure(self.item_candidate)
            if self.first_match is None:
                self.first_match = match
            nodes = await self._nodes(match)
            new_items = list(await handle_page(nodes))
            results.extend(new_items)

            fp = await self._fingerprints.generate(self._scope)
            if not new_items and self.history.seen(fp):
                s.consecutive_duplicate_pages += 1
                # Stagnation: maybe the active item selector went stale
                if len(self.item_candidate.selectors) > 1:
                    self.resolver.rotate(self.item_candidate)
            else:
                s.consecutive_duplicate_pages = 0
            self.history.add(fp)
            self._log(
                "page",
                page=s.current_page,
                selector=match.selector,
                nodes=len(nodes),
                new=len(new_items),
                duplicate_pages=s.consecutive_duplicate_pages,
            )

            # ---- EXTRACTING -> EXHAUSTED ----
            reason = self._exhausted_reason()
            if reason:
                s.exhausted_reason = reason
                return self._finish(PaginationState.EXHAUSTED, results)

            if self._aborted:
                return self._finish(PaginationState.ABORTED, results)

            # ---- EXTRACTING -> NAVIGATING ----
            control: Element | None = None
            if s.mode == "button":
                found = await find_next_control(self.driver)
                if found is None:
                    s.exhausted_reason = "no_next_control"
                    return self._finish(PaginationState.EXHAUSTED, results)
                control, strategy = found
                LOG.debug("next control via %s", strategy)

            s.move(PaginationState.NAVIGATING)
            before = fp
            s.current_page += 1
            s.navigations += 1
            navigated = await self._navigate(control)

            # ---- NAVIGATING -> WAITING_FOR_CHANGE ----
            s.move(PaginationState.WAITING_FOR_CHANGE)
            changed, waited = (await self._wait_for_change(before)) if navigated else (False, 0.0)
            if changed:
                s.move(PaginationState.EXTRACTING)
                continue

            # ---- WAITING_FOR_CHANGE -> STALLED ----
            s.current_page -= 1
            self.stalls += 1
            self._log_stall(NavigationStallError(s.current_page + 1, waited))
            if self._aborted:
                return self._finish(PaginationState.ABORTED, results)

            if not self._fallback_available():
                s.exhausted_reason = "navigation_stalled"
                return self._finish(PaginationState.EXHAUSTED, results)

            # one retry via scrolling before giving up
            s.move(PaginationState.NAVIGATING)
            s.current_page += 1
            s.navigations += 1
            self._log("fallback_scroll", page=s.current_page)
            navigated = await self._navigate(None)
            s.move(PaginationState.WAITING_FOR_CHANGE)
            changed, waited = (await self._wait_for_change(before)) if navigated else (False, 0.0)
            if changed:
                s.mode = "infinite-scroll"
                s.move(PaginationState.EXTRACTING)
                continue

            s.current_page -= 1
            self._log_stall(NavigationStallError(s.current_page + 1, waited))
            return self._finish(PaginationState.STALLED, results)

    # ---- transitions ---------------------------------------------------------

    def _exhausted_reason(self) -> str:
        s = self.session
        if s.current_page >= s.max_pages or s.navigations >= s.max_pages:
            return "max_pages"
        if s.consecutive_duplicate_pages >= s.max_consecutive_duplicate_pages:
            return "duplicate_pages"
        if not self.config.auto_paginate:
            return "auto_paginate_off"
        return ""

    def _fallback_available(self) -> bool:
        s = self.session
        return (
            self.config.infinite_scroll_fallback
            and s.mode == "button"
            and getattr(self.driver, "dynamic", True)
            and s.navigations < s.max_pages
        )

    def _finish(self, state: PaginationState, results: list[Any]) -> list[Any]:
        s = self.session
        s.move(state)
        self._log(
            "session_end",
            outcome=state.value,
            reason=s.exhausted_reason,
            pages=s.current_page,
            navigations=s.navigations,
            scrolls=self.scrolls,
            stalls=self.stalls,
            records=len(results),
        )
        return results

    # ---- steps ---------------------------------------------------------------

    async def _resolve_scope(self) -> None:
        if self.container_candidate is None:
            return
        match = await self.resolver.resolve(self.container_candidate)
        self._scope = match.selector if match.match_count > 0 else None

    async def _saturate(self) -> None:
        """Scroll until the fingerprint stops changing (bounded by max_scrolls)."""
        if not getattr(self.driver, "dynamic", True):
            return
        before = await self._fingerprints.generate(self._scope)
        unchanged = 0
        for _ in range(self.config.max_scrolls):
            if self._aborted:
                return
            try:
                await self.driver.scroll_to_bottom()
            except TransientDomError as e:
                LOG.debug("scroll failed during saturation: %s", e)
                return
            self.scrolls += 1
            await self._sleep(self.config.scroll_delay)
            after = await self._fingerprints.generate(self._scope)
            if has_changed(before, after, self.config.height_tolerance):
                unchanged = 0
                before = after
            else:
                unchanged += 1
                if unchanged >= self.config.scroll_stall_limit:
                    return

    async def _nodes(self, match: SelectorMatch) -> list[Element]:
        if match.match_count <= 0:
            return []
        try:
            return await asyncio.wait_for(self.driver.query_all(match.selector), timeout=self.config.query_timeout)
        except (TransientDomError, asyncio.TimeoutError) as e:
            LOG.debug("item query %r failed: %r", match.selector, e)
            return []

    async def _navigate(self, control: Element | None) -> bool:
        try:
            if control is not None:
                await control.click()
            else:
                await self.driver.scroll_to_bottom()
            return True
        except TransientDomError as e:
            logging_bridge.error({
                "component": "opportunity_harvest.pagination",
                "op": "navigate",
                "platform": self.platform,
                "page": self.session.current_page,
                "fatal": False,
                "error": repr(e),
            })
            return False

    async def _wait_for_change(self, before: ContentFingerprint) -> tuple[bool, float]:
        """
        Progressive-backoff poll (short intervals first) capped by wait_budget.
        Returns (changed, seconds_waited).
        """
        budget = self.config.wait_budget
        waited = 0.0
        for attempts, interval in self.config.wait_phases:
            for _ in range(attempts):
                if self._aborted:
                    return False, waited
                step = min(interval, budget - waited)
                if step <= 0:
                    return False, waited
                await self._sleep(step)
                waited += step
                fp = await self._fingerprints.generate(self._scope)
                if has_changed(before, fp, self.config.height_tolerance):
                    return True, waited
        return False, waited

    # ---- logging -------------------------------------------------------------

    def _log(self, op: str, **fields: Any) -> None:
        logging_bridge.activity({
            "component": "opportunity_harvest.pagination",
            "op": op,
            "platform": self.platform,
            "ts": time.time(),
            **fields,
        })

    def _log_stall(self, err: NavigationStallError) -> None:
        logging_bridge.error({
            "component": "opportunity_harvest.pagination",
            "op": "stalled",
            "platform": self.platform,
            "page": err.page,
            "waited_s": round(err.waited_s, 3),
            "fatal": False,
            "error": str(err),
        })
