"""
Page-state fingerprints for change detection.

A fingerprint bundles five cheap, independently computed signals:

  content_hash      rolling hash over the first 2000 chars of rendered text
  item_count        nodes matching the active item selector
  pagination_label  text of the first pagination indicator ("Page 3 of 9")
  page_query_param  ?page= / ?p= from the current URL
  document_height   total scroll height (infinite-scroll growth)

Two comparisons are built on top:

  is_same_state  hash equal, or >= 2 of {item_count, height within tolerance,
                 pagination_label} equal. Used against the bounded history to
                 spot navigation loops.
  has_changed    hash differs, or >= 2 of {item_count, height beyond tolerance,
                 pagination_label, page_query_param} differ. Used to confirm
                 that a navigation or scroll actually did something.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlparse

from . import logging_bridge
from .errors import TransientDomError
from .models import ContentFingerprint
from .utils import clean_text, rolling_hash

if TYPE_CHECKING:
    from .drivers.base import PageDriver
    from .resolver import SelectorResolver

HASH_WINDOW = 2000
HISTORY_SIZE = 5
DEFAULT_HEIGHT_TOLERANCE = 50
PAGINATION_INDICATORS = '.pagination, [aria-label*="pagination" i], nav[role="navigation"]'


class FingerprintGenerator:
    def __init__(
        self,
        driver: PageDriver,
        resolver: SelectorResolver | None = None,
        *,
        item_role: str = "item",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._driver = driver
        self._resolver = resolver
        self._item_role = item_role
        self._clock = clock

    async def generate(self, scope: str | None = None) -> ContentFingerprint:
        """
        Fingerprint `scope` (a container selector; whole page when None).
        Never raises: on failure returns a degraded, timestamp-seeded fingerprint.
        """
        captured_at = self._clock()
        try:
            text = clean_text(await self._driver.text(scope))
            content_hash = rolling_hash(text[:HASH_WINDOW])
            height = int(await self._driver.scroll_height())
            item_count = await self._item_count()
            label = await self._pagination_label()
            page_param = page_param_from_url(self._driver.url)
        except Exception as e:
            logging_bridge.error({
                "component": "opportunity_harvest.fingerprint",
                "op": "generate",
                "fatal": False,
                "scope": scope,
                "error": repr(e),
            })
            return degraded_fingerprint(captured_at)

        return ContentFingerprint(
            content_hash=content_hash,
            item_count=item_count,
            pagination_label=label,
            page_query_param=page_param,
            document_height=height,
            captured_at=captured_at,
        )

    async def _item_count(self) -> int:
        selector = self._resolver.active(self._item_role) if self._resolver else None
        if not selector:
            return 0
        try:
            return await self._driver.count(selector)
        except TransientDomError:
            return 0

    async def _pagination_label(self) -> str:
        try:
            found = await self._driver.query_all(PAGINATION_INDICATORS)
            return clean_text(await found[0].text()) if found else ""
        except TransientDomError:
            return ""


def degraded_fingerprint(captured_at: float) -> ContentFingerprint:
    """A fingerprint that compares unequal to any real page state."""
    return ContentFingerprint(
        content_hash=f"t{captured_at!r}",
        item_count=0,
        pagination_label="",
        page_query_param="",
        document_height=0,
        captured_at=captured_at,
        degraded=True,
    )


def page_param_from_url(url: str) -> str:
    try:
        qs = parse_qs(urlparse(url or "").query)
    except ValueError:
        return ""
    for name in ("page", "p"):
        values = qs.get(name)
        if values and values[0].strip():
            return values[0].strip()
    return ""


# ---- comparisons -------------------------------------------------------------


def is_same_state(
    a: ContentFingerprint, b: ContentFingerprint, height_tolerance: int = DEFAULT_HEIGHT_TOLERANCE
) -> bool:
    if a.degraded or b.degraded:
        return False
    if a.content_hash == b.content_hash:
        return True
    matches = sum((
        a.item_count == b.item_count,
        abs(a.document_height - b.document_height) < height_tolerance,
        a.pagination_label == b.pagination_label,
    ))
    return matches >= 2


def has_changed(
    before: ContentFingerprint, after: ContentFingerprint, height_tolerance: int = DEFAULT_HEIGHT_TOLERANCE
) -> bool:
    if before.content_hash != after.content_hash:
        return True
    differing = sum((
        before.item_count != after.item_count,
        abs(before.document_height - after.document_height) > height_tolerance,
        before.pagination_label != after.pagination_label,
        before.page_query_param != after.page_query_param,
    ))
    return differing >= 2


class FingerprintHistory:
    """Last N fingerprints of a pagination session (oldest dropped first)."""

    def __init__(self, maxlen: int = HISTORY_SIZE, height_tolerance: int = DEFAULT_HEIGHT_TOLERANCE) -> None:
        self._items: deque[ContentFingerprint] = deque(maxlen=maxlen)
        self.height_tolerance = height_tolerance

    def add(self, fp: ContentFingerprint) -> None:
        self._items.append(fp)

    def seen(self, fp: ContentFingerprint) -> bool:
        """True if `fp` matches ANY retained fingerprint, not just the latest."""
        return any(is_same_state(fp, old, self.height_tolerance) for old in self._items)

    @property
    def last(self) -> ContentFingerprint | None:
        return self._items[-1] if self._items else None

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[ContentFingerprint]:
        return iter(self._items)
