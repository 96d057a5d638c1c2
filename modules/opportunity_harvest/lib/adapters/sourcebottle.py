# modules/opportunity_harvest/lib/adapters/sourcebottle.py
from __future__ import annotations

import re
from typing import Any

from ..drivers.base import Element
from ..models import SelectorCandidate
from .base import ExtractionAdapter
from .registry import register

CATEGORY_BY_ID = {
    "54": "Samples & Prizes",
    "61": "Business & Finance",
    "62": "Environment",
    "63": "General",
    "64": "Health & Wellbeing",
    "65": "Lifestyle, Food & Fashion",
    "66": "Parenting & Education",
    "67": "Professional Services",
    "68": "Property",
    "69": "PR, Media & Marketing",
    "70": "Technology",
    "71": "Travel & Leisure",
}

_CATID_RE = re.compile(r"[?&]catid=(\d+)", re.I)
_DEADLINE_RE = re.compile(r"Deadline:\s*(.+)", re.I)


@register
class SourceBottleAdapter(ExtractionAdapter):
    """
    SourceBottle call-outs: server-rendered `div.result` blocks, paginated
    with ?p=N links. Works with the static driver (no browser needed).
    """

    kind = "sourcebottle"
    start_url = "https://www.sourcebottle.com/industry-list-results.asp"
    default_mode = "button"
    driver = "static"
    item_candidates = SelectorCandidate("item", ("div.result", ".results .result", "article.result", "li.result"))
    container_candidates = SelectorCandidate("container", ("#results", ".results", "main"))

    async def extract_one(self, node: Element, index: int) -> dict[str, Any] | None:
        title = await node.text_of("h4 a")
        href = await node.attr_of("h4 a", "href")
        if not title or not href:
            return None
        url = self.absolute(href)

        deadline = ""
        m = _DEADLINE_RE.search(await node.text_of(".result-deadline"))
        if m:
            deadline = m.group(1).strip()

        return {
            "externalId": url.rstrip("/").rsplit("/", 1)[-1],
            "title": title,
            "description": await node.text_of(".result-description"),
            "url": url,
            "deadline": deadline,
            "category": await self._category(node, url),
        }

    @staticmethod
    async def _category(node: Element, url: str) -> str:
        m = _CATID_RE.search(url)
        if m:
            return CATEGORY_BY_ID.get(m.group(1), "General")
        for cls in (await node.attribute("class") or "").split():
            if cls.startswith("cat-"):
                return CATEGORY_BY_ID.get(cls[4:], "General")
        return "General"
