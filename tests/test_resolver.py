# tests/test_resolver.py
import asyncio

import pytest

from modules.opportunity_harvest.lib.models import SelectorCandidate
from modules.opportunity_harvest.lib.resolver import SelectorResolver

URL = "https://x.test/list"


def _cards(n):
    return [(str(i), f"Opportunity {i}") for i in range(n)]


def _ready(fake_page, html):
    page = fake_page({URL: html})
    asyncio.run(page.goto(URL))
    return page


def test_resolve_picks_the_candidate_with_most_matches(fake_page, listing):
    page = _ready(fake_page, listing(_cards(12)))
    resolver = SelectorResolver(page)
    cand = SelectorCandidate("item", ("table.missing tr", "div.card", "h4"))

    match = asyncio.run(resolver.resolve(cand))

    # div.card and h4 both match 12; the earlier candidate wins the tie
    assert match.selector == "div.card"
    assert match.match_count == 12
    assert resolver.active("item") == "div.card"
    assert resolver.last_counts["item"] == {"table.missing tr": 0, "div.card": 12, "h4": 12}


def test_resolve_prefers_strictly_more_matches(fake_page, listing):
    page = _ready(fake_page, listing(_cards(3)))
    resolver = SelectorResolver(page)
    cand = SelectorCandidate("item", ("div.card", "div.card, h4"))

    match = asyncio.run(resolver.resolve(cand))
    assert match.selector == "div.card, h4"
    assert match.match_count == 6


def test_invalid_selectors_count_as_zero(fake_page, listing):
    page = _ready(fake_page, listing(_cards(2)))
    resolver = SelectorResolver(page)

    match = asyncio.run(resolver.resolve(SelectorCandidate("item", ("div[", "div.card"))))
    assert match.selector == "div.card"
    assert resolver.last_counts["item"]["div["] == 0


def test_nothing_matches_returns_first_candidate_with_zero(fake_page, listing):
    page = _ready(fake_page, listing([]))
    resolver = SelectorResolver(page)

    match = asyncio.run(resolver.resolve(SelectorCandidate("item", (".a", ".b"))))
    assert match.selector == ".a"
    assert match.match_count == 0


def test_empty_candidate_is_rejected(fake_page):
    resolver = SelectorResolver(fake_page())
    with pytest.raises(ValueError):
        asyncio.run(resolver.resolve(SelectorCandidate("item", ())))


def test_ensure_keeps_a_live_selector_and_reresolves_a_stale_one(fake_page, listing):
    page = _ready(fake_page, listing(_cards(2)))
    resolver = SelectorResolver(page)
    cand = SelectorCandidate("item", ("div.card", "li.card"))

    first = asyncio.run(resolver.ensure(cand))
    assert first.selector == "div.card"

    # Markup changes under us: cards are now list items
    page.set_html("<html><body><ul><li class='card'>x</li><li class='card'>y</li></ul></body></html>")
    second = asyncio.run(resolver.ensure(cand))
    assert second.selector == "li.card"
    assert resolver.active("item") == "li.card"


def test_cycle_wraps_and_falls_back_to_first():
    cand = SelectorCandidate("item", ("a", "b", "c"))
    assert SelectorResolver.cycle(cand, "a") == "b"
    assert SelectorResolver.cycle(cand, "c") == "a"
    assert SelectorResolver.cycle(cand, "not-a-candidate") == "a"
    assert SelectorResolver.cycle(cand, None) == "a"


def test_rotate_and_invalidate(fake_page):
    resolver = SelectorResolver(fake_page())
    cand = SelectorCandidate("item", ("a", "b"))

    assert resolver.rotate(cand) == "a"  # nothing active yet
    assert resolver.rotate(cand) == "b"
    assert resolver.active("item") == "b"

    resolver.invalidate("item")
    assert resolver.active("item") is None


def test_candidates_accept_lists():
    cand = SelectorCandidate("item", ["x", "y"])
    assert cand.selectors == ("x", "y")
