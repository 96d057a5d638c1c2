from __future__ import annotations

from abc import ABC, abstractmethod

from ..errors import TransientDomError


class Element(ABC):
    """
    A handle to one DOM node. Concrete drivers wrap Playwright handles or
    BeautifulSoup tags; the engine and adapters only see this interface.
    """

    @abstractmethod
    async def text(self) -> str:
        """Rendered text, whitespace-stripped."""

    @abstractmethod
    async def attribute(self, name: str) -> str | None: ...

    @abstractmethod
    async def query_all(self, selector: str) -> list[Element]:
        """Descendants matching `selector`. Raises TransientDomError on bad syntax."""

    @abstractmethod
    async def click(self) -> None: ...

    # ---- conveniences (never raise) ------------------------------------------

    async def query(self, selector: str) -> Element | None:
        try:
            found = await self.query_all(selector)
        except TransientDomError:
            return None
        return found[0] if found else None

    async def text_of(self, selector: str) -> str:
        el = await self.query(selector)
        if el is None:
            return ""
        try:
            return await el.text()
        except TransientDomError:
            return ""

    async def attr_of(self, selector: str, attr: str) -> str:
        el = await self.query(selector)
        if el is None:
            return ""
        try:
            return (await el.attribute(attr)) or ""
        except TransientDomError:
            return ""

    async def is_disabled(self) -> bool:
        """disabled attribute, a 'disabled' class, or aria-disabled="true"."""
        if await self.attribute("disabled") is not None:
            return True
        classes = (await self.attribute("class") or "").split()
        if "disabled" in classes:
            return True
        return (await self.attribute("aria-disabled") or "").strip().lower() == "true"


class PageDriver(ABC):
    """Async access to one live page (browser tab or fetched document)."""

    # False when scrolling can never load more content (no script execution)
    dynamic = True

    @property
    @abstractmethod
    def url(self) -> str: ...

    @abstractmethod
    async def goto(self, url: str) -> None:
        """Load `url`. Raises TransientDomError when the page cannot be fetched."""

    @abstractmethod
    async def query_all(self, selector: str) -> list[Element]:
        """Document-wide query. Raises TransientDomError on bad syntax or failure."""

    @abstractmethod
    async def text(self, scope: str | None = None) -> str:
        """Rendered text of the first `scope` match, or the whole body when None/unmatched."""

    @abstractmethod
    async def scroll_height(self) -> int: ...

    @abstractmethod
    async def scroll_to_bottom(self) -> None: ...

    async def count(self, selector: str) -> int:
        return len(await self.query_all(selector))

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> PageDriver:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
