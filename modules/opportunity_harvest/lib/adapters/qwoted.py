# modules/opportunity_harvest/lib/adapters/qwoted.py
from __future__ import annotations

import re
from typing import Any

from ..drivers.base import Element
from ..errors import TransientDomError
from ..models import SelectorCandidate
from .base import ExtractionAdapter
from .registry import register

_REQUEST_ID_RE = re.compile(r"/source_requests/(\d+)")
_SEEKING_RE = re.compile(r"(?:looking for|seeking|need|wanted|searching for)[^.]*", re.I)
_DEADLINE_RE = re.compile(
    r"(?:due|deadline):\s*\S+(?:\s+\S+)?|\d{1,2}/\d{1,2}/\d{2,4}|"
    r"\d{1,2}\s+(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\s+\d{2,4}",
    re.I,
)


@register
class QwotedAdapter(ExtractionAdapter):
    """
    Qwoted source requests: bootstrap cards with classic next/prev pagination.

    Card anatomy (div.card-body.position-relative):
      h6.fw-bold > a                      brand / outlet
      > a[href^="/source_requests/"]      request title + canonical link (id in path)
      p.small                             request snippet
      .source-request-deadline            deadline countdown
      .text-uppercase.font-size-12px      request type ("EXPERT REQUEST")
      a.badge                             hashtags
    """

    kind = "qwoted"
    start_url = "https://app.qwoted.com/source_requests"
    default_mode = "button"
    driver = "browser"
    item_candidates = SelectorCandidate(
        "item",
        (
            "section#results div.card-body.position-relative",
            "div.card-body.position-relative",
            ".opportunity-card, .request-card",
            ".card",
            "tr, .source-request-item, .request-item, .list-group-item",
        ),
    )
    container_candidates = SelectorCandidate("container", ("section#results", "main", "#content"))

    async def extract_one(self, node: Element, index: int) -> dict[str, Any] | None:
        title = await node.text_of('a[href^="/source_requests/"]') or await node.text_of(
            ".ais-Highlight, h3, h4, .fw-bold"
        )
        if not title:
            m = _SEEKING_RE.search(await node.text())
            title = m.group(0).strip() if m else ""
        if not title:
            return None

        brand = await node.text_of("h6.fw-bold > a")
        href = await node.attr_of('a[href^="/source_requests/"]', "href") or await self._any_request_link(node)
        url = self.absolute(href) if href else self.start_url

        external_id = ""
        m = _REQUEST_ID_RE.search(href or "")
        if m:
            external_id = m.group(1)
        else:
            external_id = await self.get_external_id(node, href if href else "")

        deadline = await node.text_of(".source-request-deadline")
        if not deadline:
            dm = _DEADLINE_RE.search(await node.text())
            deadline = dm.group(0) if dm else ""

        tags = [t for t in [await b.text() for b in await self._safe_all(node, "a.badge")] if t]
        category = await node.text_of(".text-uppercase.font-size-12px") or (tags[0].lstrip("#") if tags else "")

        snippet = await node.text_of("p.small")
        description = " ".join(p for p in (f"{brand}:" if brand else "", snippet) if p)
        return {
            "externalId": external_id,
            "title": title,
            "description": description,
            "url": url,
            "deadline": deadline,
            "category": category.title() if category.isupper() else category,
        }

    async def _any_request_link(self, node: Element) -> str:
        links = await self._safe_all(node, "a[href]")
        hrefs = [await a.attribute("href") or "" for a in links]
        for h in hrefs:
            if "source_requests" in h or "opportunit" in h:
                return h
        return hrefs[0] if hrefs else ""

    @staticmethod
    async def _safe_all(node: Element, selector: str) -> list[Element]:
        try:
            return await node.query_all(selector)
        except TransientDomError:
            return []
