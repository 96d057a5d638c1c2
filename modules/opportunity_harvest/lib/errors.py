from __future__ import annotations


class HarvestError(Exception):
    """Base exception for harvesting failures."""


class TransientDomError(HarvestError):
    """A selector or DOM query failed (bad syntax, detached node, timeout)."""

    def __init__(self, selector: str, reason: str = "") -> None:
        self.selector = selector
        self.reason = reason
        super().__init__(f"query {selector!r} failed: {reason}" if reason else f"query {selector!r} failed")


class NavigationStallError(HarvestError):
    """No qualifying fingerprint change was observed after a navigation."""

    def __init__(self, page: int, waited_s: float) -> None:
        self.page = page
        self.waited_s = waited_s
        super().__init__(f"no content change after navigating to page {page} (waited {waited_s:.1f}s)")


class StorageWriteError(HarvestError):
    """A write to the persisted key-value store failed."""

    def __init__(self, key: str, reason: str = "") -> None:
        self.key = key
        super().__init__(f"write to {key!r} failed: {reason}" if reason else f"write to {key!r} failed")


class InvalidRecordError(HarvestError):
    """A raw extracted record is missing required fields."""

    def __init__(self, platform: str, missing: list[str]) -> None:
        self.platform = platform
        self.missing = list(missing)
        super().__init__(f"{platform}: record missing {', '.join(self.missing)}")


class NoContentError(HarvestError):
    """None of the item selector candidates matched anything."""

    def __init__(self, platform: str, selectors: tuple[str, ...] | list[str]) -> None:
        self.platform = platform
        self.selectors = tuple(selectors)
        super().__init__(f"{platform}: no content matched any of {len(self.selectors)} selector candidate(s)")


class RegistryError(HarvestError):
    """Merge registry misuse (merging before registering, bad handles)."""
