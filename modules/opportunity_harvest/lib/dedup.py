"""
Memory-bounded duplicate filter for the record stream.

Two tiers:
  1. identity: exact (source_platform, external_id)
  2. content similarity, only for records whose id is missing or synthetic:
     case-insensitive title containment (either direction) AND matching
     description prefixes.

The cache is a recency window: once it holds more than `max_cached_ids`
keys, entries are sorted by last-seen time and only the newest survive.
Forgetting old keys can let a genuine duplicate through again; it can never
drop a new record.
"""

from __future__ import annotations

import itertools
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from .models import OpportunityRecord
from .utils import clean_text


@dataclass(frozen=True)
class _Content:
    platform: str
    title: str
    description: str


class DedupCache:
    def __init__(
        self,
        max_cached_ids: int = 5000,
        *,
        similarity_enabled: bool = True,
        similarity_prefix: int = 40,
        similarity_min_title: int = 8,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_cached_ids < 1:
            raise ValueError("max_cached_ids must be >= 1")
        self.max_cached_ids = max_cached_ids
        self.similarity_enabled = similarity_enabled
        self.similarity_prefix = similarity_prefix
        self.similarity_min_title = similarity_min_title
        self._clock = clock
        self._seq = itertools.count()
        # key -> (last_seen_at, insertion sequence); the sequence breaks timestamp ties
        self._seen: dict[tuple[str, str], tuple[float, int]] = {}
        self._content: dict[tuple[str, str], _Content] = {}
        self.evicted = 0

    # ---- public API ----------------------------------------------------------

    def is_duplicate(self, record: OpportunityRecord) -> bool:
        """True if already seen; otherwise registers the record and returns False."""
        key = _cache_key(record)
        if key in self._seen:
            self._touch(key)
            return True

        if self.similarity_enabled and (record.synthetic_id or not record.external_id):
            match = self._find_similar(record)
            if match is not None:
                self._touch(match)
                return True

        self._register(key, record)
        return False

    def seed(self, records: Iterable[OpportunityRecord]) -> int:
        """Register prior scrapes, oldest first so the newest survive eviction. Returns new keys."""
        added = 0
        for r in sorted(records, key=lambda r: r.extracted_at):
            if not self.is_duplicate(r):
                added += 1
        return added

    def clear(self) -> None:
        self._seen.clear()
        self._content.clear()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, key: object) -> bool:
        return key in self._seen

    def keys_by_recency(self) -> list[tuple[str, str]]:
        """Oldest first."""
        return [k for k, _ in sorted(self._seen.items(), key=lambda kv: kv[1])]

    # ---- internal ------------------------------------------------------------

    def _touch(self, key: tuple[str, str]) -> None:
        self._seen[key] = (self._clock(), next(self._seq))

    def _register(self, key: tuple[str, str], record: OpportunityRecord) -> None:
        self._touch(key)
        self._content[key] = _Content(
            platform=record.source_platform,
            title=clean_text(record.title).lower(),
            description=clean_text(record.description).lower(),
        )
        if len(self._seen) > self.max_cached_ids:
            self._evict()

    def _evict(self) -> None:
        ranked = sorted(self._seen.items(), key=lambda kv: kv[1], reverse=True)
        keep = dict(ranked[: self.max_cached_ids])
        for key, _ in ranked[self.max_cached_ids :]:
            self._content.pop(key, None)
        self.evicted += len(ranked) - len(keep)
        self._seen = keep

    def _find_similar(self, record: OpportunityRecord) -> tuple[str, str] | None:
        title = clean_text(record.title).lower()
        desc = clean_text(record.description).lower()
        for key, c in self._content.items():
            if c.platform != record.source_platform:
                continue
            if self._titles_match(title, c.title) and self._prefixes_match(desc, c.description):
                return key
        return None

    def _titles_match(self, a: str, b: str) -> bool:
        if not a or not b:
            return False
        if a == b:
            return True
        shorter, longer = (a, b) if len(a) <= len(b) else (b, a)
        # Short generic titles ("Update", "Expert") would match almost anything
        if len(shorter) < self.similarity_min_title:
            return False
        return shorter in longer

    def _prefixes_match(self, a: str, b: str) -> bool:
        pa, pb = a[: self.similarity_prefix], b[: self.similarity_prefix]
        if not pa or not pb:
            return pa == pb
        shorter, longer = (pa, pb) if len(pa) <= len(pb) else (pb, pa)
        return longer.startswith(shorter)


def _cache_key(record: OpportunityRecord) -> tuple[str, str]:
    if record.external_id:
        return record.key
    # No identity at all: key on content so the same listing still collapses.
    return (record.source_platform, "content:" + clean_text(record.title).lower())
