# tests/test_fingerprint.py
import asyncio

from modules.opportunity_harvest.lib.fingerprint import (
    FingerprintGenerator,
    FingerprintHistory,
    has_changed,
    is_same_state,
    page_param_from_url,
)
from modules.opportunity_harvest.lib.models import ContentFingerprint, SelectorCandidate
from modules.opportunity_harvest.lib.resolver import SelectorResolver
from modules.opportunity_harvest.lib.utils import clean_text, rolling_hash


def _fp(content_hash="h1", item_count=10, label="Page 1", param="1", height=1000, degraded=False):
    return ContentFingerprint(
        content_hash=content_hash,
        item_count=item_count,
        pagination_label=label,
        page_query_param=param,
        document_height=height,
        captured_at=0.0,
        degraded=degraded,
    )


# ----------------------------------------------------------------------
# generate()
# ----------------------------------------------------------------------
def test_generate_collects_every_signal(fake_page, listing):
    url = "https://x.test/list?page=3"
    page = fake_page({url: listing([("1", "Alpha story"), ("2", "Beta story")], label="Page 3 of 9")})
    resolver = SelectorResolver(page)

    async def go():
        await page.goto(url)
        await resolver.resolve(SelectorCandidate("item", ("div.card",)))
        fp = await FingerprintGenerator(page, resolver, clock=lambda: 42.0).generate()
        return fp, await page.text()

    fp, body_text = asyncio.run(go())

    assert fp.content_hash == rolling_hash(clean_text(body_text)[:2000])
    assert fp.item_count == 2
    assert fp.pagination_label == "Page 3 of 9"
    assert fp.page_query_param == "3"
    assert fp.document_height == len(page.html)
    assert fp.captured_at == 42.0
    assert fp.degraded is False


def test_item_count_is_zero_without_an_active_selector(fake_page, listing):
    page = fake_page({"https://x.test/": listing([("1", "Alpha story")])})

    async def go():
        await page.goto("https://x.test/")
        return await FingerprintGenerator(page, SelectorResolver(page)).generate()

    assert asyncio.run(go()).item_count == 0


def test_hash_only_covers_the_first_2000_characters(fake_page, listing):
    head = "A" * 2100
    page = fake_page({
        "https://x.test/a": listing([("1", head), ("2", "Tail one")]),
        "https://x.test/b": listing([("1", head), ("3", "Tail two")]),
    })
    gen = FingerprintGenerator(page)

    async def go():
        await page.goto("https://x.test/a")
        a = await gen.generate()
        await page.goto("https://x.test/b")
        b = await gen.generate()
        return a, b

    a, b = asyncio.run(go())
    assert a.content_hash == b.content_hash


def test_generate_degrades_instead_of_raising(fake_page, monkeypatch):
    page = fake_page()

    async def boom(scope=None):
        raise RuntimeError("target closed")

    monkeypatch.setattr(page, "text", boom)
    fp = asyncio.run(FingerprintGenerator(page, clock=lambda: 7.5).generate())

    assert fp.degraded is True
    assert fp.captured_at == 7.5
    # A degraded fingerprint never matches anything, itself included
    assert not is_same_state(fp, fp)
    assert not is_same_state(fp, _fp())


def test_page_param_from_url():
    assert page_param_from_url("https://x.test/list?page=4") == "4"
    assert page_param_from_url("https://x.test/list?q=ai&p=2") == "2"
    assert page_param_from_url("https://x.test/list") == ""
    assert page_param_from_url("") == ""


# ----------------------------------------------------------------------
# Comparisons
# ----------------------------------------------------------------------
def test_same_state_when_hash_matches_even_if_everything_else_differs():
    a = _fp(item_count=10, height=1000, label="Page 1")
    b = _fp(item_count=99, height=9000, label="Page 7")
    assert is_same_state(a, b)


def test_same_state_on_two_of_three_secondary_signals():
    a = _fp(content_hash="h1", item_count=10, height=1000, label="Page 1")
    b = _fp(content_hash="h2", item_count=10, height=1030, label="Page 2")
    assert is_same_state(a, b, height_tolerance=50)

    c = _fp(content_hash="h3", item_count=11, height=1030, label="Page 2")
    assert not is_same_state(a, c, height_tolerance=50)


def test_has_changed_on_hash_alone():
    assert has_changed(_fp(content_hash="h1"), _fp(content_hash="h2"))


def test_has_changed_needs_two_secondary_signals():
    before = _fp(item_count=10, height=1000, label="Page 1", param="1")
    one = _fp(item_count=11, height=1000, label="Page 1", param="1")
    two = _fp(item_count=11, height=1000, label="Page 2", param="1")
    assert not has_changed(before, one)
    assert has_changed(before, two)


def test_height_change_must_exceed_tolerance():
    before = _fp(item_count=10, height=1000)
    at_tolerance = _fp(item_count=11, height=1050)
    beyond = _fp(item_count=11, height=1051)
    assert not has_changed(before, at_tolerance, height_tolerance=50)
    assert has_changed(before, beyond, height_tolerance=50)


# ----------------------------------------------------------------------
# History
# ----------------------------------------------------------------------
def test_history_matches_any_retained_entry_and_drops_the_oldest():
    hist = FingerprintHistory(maxlen=2)
    a = _fp(content_hash="a", item_count=1, height=100, label="A")
    b = _fp(content_hash="b", item_count=2, height=5000, label="B")
    c = _fp(content_hash="c", item_count=3, height=9000, label="C")

    hist.add(a)
    hist.add(b)
    assert hist.seen(a)  # not just the latest
    hist.add(c)

    assert len(hist) == 2
    assert not hist.seen(a)
    assert hist.seen(b)
    assert hist.last is c
