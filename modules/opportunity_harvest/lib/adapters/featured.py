# modules/opportunity_harvest/lib/adapters/featured.py
from __future__ import annotations

import re
from typing import Any

from ..drivers.base import Element
from ..models import SelectorCandidate
from .base import ExtractionAdapter
from .registry import register

# First match wins; whole words only so "ai" does not fire on "said".
_CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Business & Finance", ("business", "finance", "startup", "investing")),
    ("Health & Wellbeing", ("health", "wellness", "medical", "fitness")),
    ("Technology", ("tech", "ai", "software", "saas")),
    ("Lifestyle, Food & Fashion", ("food", "recipe", "fashion", "beauty")),
    ("Travel & Leisure", ("travel", "vacation", "tourism")),
    ("Environment", ("environment", "climate", "sustainability")),
    ("Parenting & Education", ("education", "school", "parent", "parenting")),
    ("PR, Media & Marketing", ("marketing", "brand", "pr", "media")),
)
_CATEGORY_RES = [(name, re.compile(r"\b(" + "|".join(words) + r")\b", re.I)) for name, words in _CATEGORY_KEYWORDS]


def categorize(text: str) -> str:
    for name, rx in _CATEGORY_RES:
        if rx.search(text or ""):
            return name
    return "General"


@register
class FeaturedAdapter(ExtractionAdapter):
    """
    Featured.com expert questions: a table whose rows load as you scroll.

    Columns: 2 = question, 3 = publication, 4 = relative deadline, 5 = close date.
    Rows carry no stable id, so records usually get synthetic ids and lean on
    the dedup cache's content-similarity tier.
    """

    kind = "featured"
    start_url = "https://featured.com/experts/questions"
    default_mode = "infinite-scroll"
    driver = "browser"
    item_candidates = SelectorCandidate(
        "item",
        (
            "table.w-full.caption-bottom.text-sm > tbody > tr",
            ".data-table tr",
            "table > tbody > tr",
            "div#data-table tr",
            ".card",
            ".item",
        ),
    )
    container_candidates = SelectorCandidate(
        "container",
        ("div#data-table", ".data-table", "main", "#content", ".infinite-scroll-component", ".content-area"),
    )

    async def extract_one(self, node: Element, index: int) -> dict[str, Any] | None:
        question = await node.text_of("td:nth-child(2) span.whitespace-pre-line") or await node.text_of(
            "td:nth-child(2)"
        )
        if not question:
            return None

        publication = await node.text_of('td:nth-child(3) a[href*="/publication-source"] span.truncate')
        if not publication:
            publication = await node.text_of("td:nth-child(3)")
        deadline = await node.text_of("td:nth-child(5) span") or await node.text_of("td:nth-child(4) span")

        href = await node.attr_of('a[href*="/questions/"]', "href")
        url = self.absolute(href) if href else self.start_url

        description = f"{question} (Publication: {publication})" if publication else question
        return {
            "externalId": await self.get_external_id(node, href),
            "title": question[:100],
            "description": description,
            "url": url,
            "deadline": deadline,
            "category": categorize(question),
        }
