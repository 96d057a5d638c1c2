from __future__ import annotations

from .base import Element, PageDriver
from .static import StaticDriver, StaticElement

__all__ = ["Element", "PageDriver", "StaticDriver", "StaticElement", "make_driver"]


def make_driver(kind: str, *, headless: bool = True, storage_state: str | None = None) -> PageDriver:
    """
    Build a driver by name. The Playwright import stays lazy so static-only
    runs (and tests) never need a browser installed.
    """
    if kind == "static":
        return StaticDriver()
    if kind == "browser":
        from .browser import BrowserDriver

        return BrowserDriver(headless=headless, storage_state=storage_state)
    raise ValueError(f"unknown driver kind {kind!r}")
