"""
Live page driver on the Playwright async API (headless Chromium).

One driver == one browser + context + page. Launch is lazy (first goto),
and close() tears everything down in reverse order. Featured and Qwoted
listings need a signed-in session: pass `storage_state`, a file saved with
`context.storage_state(path=...)`, to reuse one.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from playwright.async_api import Browser, BrowserContext, ElementHandle, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from ..errors import TransientDomError
from ..http_client import DEFAULT_USER_AGENT
from .base import Element, PageDriver

LOG = logging.getLogger(__name__)

_LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-dev-shm-usage",
]


class BrowserElement(Element):
    def __init__(self, handle: ElementHandle, click_timeout_ms: int) -> None:
        self._h = handle
        self._click_timeout_ms = click_timeout_ms

    async def text(self) -> str:
        try:
            return (await self._h.inner_text()).strip()
        except PlaywrightError as e:
            raise TransientDomError("<element>", str(e)) from e

    async def attribute(self, name: str) -> str | None:
        try:
            return await self._h.get_attribute(name)
        except PlaywrightError as e:
            raise TransientDomError(f"[{name}]", str(e)) from e

    async def query_all(self, selector: str) -> list[Element]:
        try:
            handles = await self._h.query_selector_all(selector)
        except PlaywrightError as e:
            raise TransientDomError(selector, str(e)) from e
        return [BrowserElement(h, self._click_timeout_ms) for h in handles]

    async def click(self) -> None:
        try:
            await self._h.scroll_into_view_if_needed(timeout=self._click_timeout_ms)
            await self._h.click(timeout=self._click_timeout_ms)
        except PlaywrightError as e:
            raise TransientDomError("<click>", str(e)) from e


class BrowserDriver(PageDriver):
    def __init__(
        self,
        *,
        headless: bool = True,
        user_agent: str = DEFAULT_USER_AGENT,
        navigation_timeout_ms: int = 30_000,
        click_timeout_ms: int = 5_000,
        storage_state: str | None = None,
    ) -> None:
        self.headless = headless
        self.user_agent = user_agent
        self.navigation_timeout_ms = navigation_timeout_ms
        self.click_timeout_ms = click_timeout_ms
        self.storage_state = storage_state
        self._pw: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None

    @property
    def url(self) -> str:
        return self._page.url if self._page is not None else ""

    async def _ensure_page(self) -> Page:
        if self._page is not None:
            return self._page
        self._pw = await async_playwright().start()
        self._browser = await self._pw.chromium.launch(headless=self.headless, args=_LAUNCH_ARGS)
        self._context = await self._browser.new_context(
            user_agent=self.user_agent,
            viewport={"width": 1366, "height": 900},
            locale="en-US",
            storage_state=self._storage_state_path(),
        )
        self._page = await self._context.new_page()
        LOG.info("Playwright chromium launched (headless=%s)", self.headless)
        return self._page

    def _storage_state_path(self) -> str | None:
        if not self.storage_state:
            return None
        if not os.path.isfile(self.storage_state):
            LOG.warning("storage_state %s not found; starting a signed-out session", self.storage_state)
            return None
        return self.storage_state

    async def goto(self, url: str) -> None:
        page = await self._ensure_page()
        try:
            await page.goto(url, wait_until="networkidle", timeout=self.navigation_timeout_ms)
        except PlaywrightError as e:
            raise TransientDomError(url, str(e)) from e

    async def query_all(self, selector: str) -> list[Element]:
        page = await self._ensure_page()
        try:
            handles = await page.query_selector_all(selector)
        except PlaywrightError as e:
            raise TransientDomError(selector, str(e)) from e
        return [BrowserElement(h, self.click_timeout_ms) for h in handles]

    async def text(self, scope: str | None = None) -> str:
        page = await self._ensure_page()
        try:
            value: Any = await page.evaluate(
                """(sel) => {
                    let el = null;
                    try { el = sel ? document.querySelector(sel) : null; } catch (e) { el = null; }
                    el = el || document.body;
                    return el ? el.innerText : "";
                }""",
                scope,
            )
        except PlaywrightError as e:
            raise TransientDomError(scope or "body", str(e)) from e
        return str(value or "")

    async def scroll_height(self) -> int:
        page = await self._ensure_page()
        try:
            return int(await page.evaluate("() => document.body ? document.body.scrollHeight : 0") or 0)
        except PlaywrightError as e:
            raise TransientDomError("document.body.scrollHeight", str(e)) from e

    async def scroll_to_bottom(self) -> None:
        page = await self._ensure_page()
        try:
            await page.evaluate("window.scrollTo(0, document.body.scrollHeight)")
        except PlaywrightError as e:
            raise TransientDomError("window.scrollTo", str(e)) from e

    async def close(self) -> None:
        # Reverse order of creation; each step independent of the others.
        for name, closer in (
            ("context", self._context.close if self._context else None),
            ("browser", self._browser.close if self._browser else None),
            ("playwright", self._pw.stop if self._pw else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except PlaywrightError:
                LOG.debug("Playwright %s close failed", name, exc_info=True)
        self._page = self._context = self._browser = self._pw = None
