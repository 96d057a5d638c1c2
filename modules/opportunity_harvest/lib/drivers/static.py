"""
Static page driver: requests + BeautifulSoup.

Good for server-rendered listings (SourceBottle) and for replaying saved
snapshots. There is no script execution, so:
  - clicking a node with an href loads that URL (button pagination works),
  - scroll_to_bottom is a no-op,
  - scroll_height is the document length, a stand-in that still changes
    whenever the content does.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup, Tag

from ..errors import TransientDomError
from ..http_client import HttpClient
from .base import Element, PageDriver

LOG = logging.getLogger(__name__)


class StaticElement(Element):
    def __init__(self, tag: Tag, driver: StaticDriver) -> None:
        self._tag = tag
        self._driver = driver

    async def text(self) -> str:
        return self._tag.get_text(" ", strip=True)

    async def attribute(self, name: str) -> str | None:
        value = self._tag.get(name)
        if value is None:
            return None
        if isinstance(value, list):  # bs4 returns multi-valued attrs (class) as lists
            return " ".join(value)
        return str(value)

    async def query_all(self, selector: str) -> list[Element]:
        return [StaticElement(t, self._driver) for t in _select(self._tag, selector)]

    async def click(self) -> None:
        href = self._tag.get("href") or self._tag.get("data-href")
        if not href or str(href).startswith(("#", "javascript:")):
            LOG.debug("click on <%s> without a navigable href is a no-op", self._tag.name)
            return
        await self._driver.goto(urljoin(self._driver.url, str(href)))


class StaticDriver(PageDriver):
    dynamic = False

    def __init__(
        self,
        fetch: Callable[[str], str] | None = None,
        *,
        client: HttpClient | None = None,
        parser: str = "html.parser",
    ) -> None:
        self._client = client if fetch is None else None
        if fetch is None and self._client is None:
            self._client = HttpClient()
        self._fetch = fetch or self._client.get_text  # type: ignore[union-attr]
        self._parser = parser
        self._url = ""
        self._html = ""
        self._soup = BeautifulSoup("", parser)

    @property
    def url(self) -> str:
        return self._url

    async def goto(self, url: str) -> None:
        try:
            html = await asyncio.to_thread(self._fetch, url)
        except (requests.RequestException, OSError) as e:
            raise TransientDomError(url, f"fetch failed: {e!r}") from e
        self.load(url, html)

    def load(self, url: str, html: str) -> None:
        """Swap in a document directly (used by goto and by snapshot replays)."""
        self._url = url
        self._html = html or ""
        self._soup = BeautifulSoup(self._html, self._parser)

    async def query_all(self, selector: str) -> list[Element]:
        return [StaticElement(t, self) for t in _select(self._soup, selector)]

    async def text(self, scope: str | None = None) -> str:
        root: Tag | BeautifulSoup = self._soup
        if scope:
            try:
                found = _select(self._soup, scope)
            except TransientDomError:
                found = []
            if found:
                root = found[0]
        elif self._soup.body is not None:
            root = self._soup.body
        return root.get_text(" ", strip=True)

    async def scroll_height(self) -> int:
        return len(self._html)

    async def scroll_to_bottom(self) -> None:
        return None

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()


def _select(root: Tag | BeautifulSoup, selector: str) -> list[Tag]:
    try:
        return list(root.select(selector))
    except Exception as e:  # soupsieve raises SelectorSyntaxError / ValueError subclasses
        raise TransientDomError(selector, str(e)) from e
