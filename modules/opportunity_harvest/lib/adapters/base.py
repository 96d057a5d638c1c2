from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import parse_qs, urljoin, urlparse

from ..drivers.base import Element
from ..errors import TransientDomError
from ..models import SelectorCandidate

LOG = logging.getLogger(__name__)

_ID_ATTRIBUTES = ("data-id", "id", "data-opportunity-id", "data-item-id")


class ExtractionAdapter(ABC):
    """
    Platform-specific field extraction.

    The engine gives an adapter the nodes matched by the active item selector
    and gets back raw field maps ({"title", "description", "url", "deadline",
    "category", "externalId"?}). Everything else (fingerprints, pagination,
    dedup, persistence) happens outside.

    Concrete subclasses MUST set `kind` and `item_candidates`.
    """

    kind: str = ""
    platform: str = ""  # defaults to kind
    start_url: str = ""
    default_mode: str = "button"  # "button" | "infinite-scroll"
    driver: str = "browser"  # "browser" | "static"
    item_candidates: SelectorCandidate = SelectorCandidate("item", ())
    container_candidates: SelectorCandidate | None = None

    def __init__(self, *, platform: str | None = None, start_url: str | None = None) -> None:
        self.platform = (platform or self.platform or self.kind).strip().lower()
        if start_url:
            self.start_url = start_url
        self.failed_nodes = 0

    async def extract(self, nodes: list[Element]) -> list[dict[str, Any]]:
        """Extract every node in isolation; one broken node never sinks the page."""
        out: list[dict[str, Any]] = []
        for index, node in enumerate(nodes):
            try:
                raw = await self.extract_one(node, index)
            except TransientDomError as e:
                self.failed_nodes += 1
                LOG.debug("%s: node %d failed: %s", self.platform, index, e)
                continue
            if raw:
                out.append(raw)
        return out

    @abstractmethod
    async def extract_one(self, node: Element, index: int) -> dict[str, Any] | None:
        """Raw field map for one node, or None to skip it."""

    # ---- helpers shared by adapters -------------------------------------------

    def absolute(self, href: str, base: str | None = None) -> str:
        if not href:
            return ""
        return urljoin(base or self.start_url, href)

    async def get_external_id(self, node: Element, href: str = "") -> str:
        """
        Stable id for a node: id-ish attributes first, then the link's ?id=
        parameter, then the link path slugified.
        """
        for attr in _ID_ATTRIBUTES:
            value = (await node.attribute(attr) or "").strip()
            if value:
                return value
        if not href:
            return ""
        parsed = urlparse(href)
        ids = parse_qs(parsed.query).get("id")
        if ids and ids[0].strip():
            return ids[0].strip()
        slug = "".join(ch if ch.isalnum() else "-" for ch in parsed.path.strip("/"))
        return slug.strip("-")
