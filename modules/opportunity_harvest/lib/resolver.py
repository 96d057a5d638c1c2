from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from . import logging_bridge
from .errors import TransientDomError
from .models import SelectorCandidate, SelectorMatch

if TYPE_CHECKING:
    from .drivers.base import PageDriver

LOG = logging.getLogger(__name__)


class SelectorResolver:
    """
    Picks, among alternative CSS queries for a role, the one that currently
    matches the MOST nodes (ties -> earlier candidate). The choice is cached
    per role as the session's active selector until invalidated.
    """

    def __init__(self, driver: PageDriver, *, query_timeout: float = 5.0) -> None:
        self._driver = driver
        self._query_timeout = query_timeout
        self._active: dict[str, str] = {}
        self.last_counts: dict[str, dict[str, int]] = {}

    # ---- resolution ----------------------------------------------------------

    async def resolve(self, candidate: SelectorCandidate) -> SelectorMatch:
        if not candidate.selectors:
            raise ValueError(f"selector candidate {candidate.role!r} has no queries")

        counts: dict[str, int] = {}
        for selector in candidate.selectors:
            counts[selector] = await self._safe_count(selector)
        # max() returns the first maximal item, so ties keep the earlier candidate
        top = max(candidate.selectors, key=lambda sel: counts[sel])
        best = SelectorMatch(top, counts[top])
        self._active[candidate.role] = best.selector
        self.last_counts[candidate.role] = counts
        LOG.debug("resolve[%s] -> %r (%d) counts=%s", candidate.role, best.selector, best.match_count, counts)
        return best

    async def ensure(self, candidate: SelectorCandidate) -> SelectorMatch:
        """
        Return the active selector for the role if it still matches anything;
        otherwise (none cached, or it went stale) resolve again.
        """
        current = self._active.get(candidate.role)
        if current is not None:
            n = await self._safe_count(current)
            if n > 0:
                return SelectorMatch(current, n)
            LOG.debug("active selector for %s stopped matching: %r", candidate.role, current)
        return await self.resolve(candidate)

    # ---- rotation --------------------------------------------------------------

    @staticmethod
    def cycle(candidate: SelectorCandidate, current: str | None) -> str:
        """Next query after `current`, wrapping; the first one if `current` is unknown."""
        if not candidate.selectors:
            raise ValueError(f"selector candidate {candidate.role!r} has no queries")
        try:
            idx = candidate.selectors.index(current)  # type: ignore[arg-type]
        except ValueError:
            return candidate.selectors[0]
        return candidate.selectors[(idx + 1) % len(candidate.selectors)]

    def rotate(self, candidate: SelectorCandidate) -> str:
        """Advance the cached active selector (stagnation suspected)."""
        nxt = self.cycle(candidate, self._active.get(candidate.role))
        self._active[candidate.role] = nxt
        logging_bridge.activity({
            "component": "opportunity_harvest.resolver",
            "op": "rotate",
            "role": candidate.role,
            "selector": nxt,
        })
        return nxt

    # ---- cache -------------------------------------------------------------------

    def active(self, role: str) -> str | None:
        return self._active.get(role)

    def invalidate(self, role: str) -> None:
        self._active.pop(role, None)

    # ---- internal ----------------------------------------------------------------

    async def _safe_count(self, selector: str) -> int:
        """Matches for one query; bad syntax, DOM errors and timeouts all count as 0."""
        try:
            return await asyncio.wait_for(self._driver.count(selector), timeout=self._query_timeout)
        except (TransientDomError, asyncio.TimeoutError) as e:
            LOG.debug("selector %r skipped: %r", selector, e)
            return 0
