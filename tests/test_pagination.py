# tests/test_pagination.py
import asyncio

from modules.opportunity_harvest.lib.config import HarvestConfig
from modules.opportunity_harvest.lib.drivers.static import StaticDriver
from modules.opportunity_harvest.lib.models import PaginationState, SelectorCandidate
from modules.opportunity_harvest.lib.pagination import PaginationController, find_next_control
from modules.opportunity_harvest.lib.resolver import SelectorResolver
from service import logging_utils

ITEMS = SelectorCandidate("item", ("div.card",))
P1 = "https://x.test/list?page=1"
P2 = "https://x.test/list?page=2"
P3 = "https://x.test/list?page=3"


def _cards(*ids):
    return [(str(i), f"Opportunity {i}") for i in ids]


def _cfg(**overrides):
    base = {
        "max_pages": 10,
        "max_scrolls": 3,
        "scroll_stall_limit": 1,
        "scroll_delay": 0.5,
        "wait_budget": 1.0,
        "wait_phases": ((2, 0.2),),
        "max_consecutive_duplicate_pages": 2,
    }
    base.update(overrides)
    return HarvestConfig(**base)


def _controller(page, config, *, mode="button", candidate=ITEMS, sleep=None):
    return PaginationController(
        page,
        SelectorResolver(page),
        config,
        item_candidate=candidate,
        mode=mode,
        platform="test",
        sleep=sleep,
    )


def _collector():
    """Page handler yielding the data-id of every card not seen before."""
    seen = set()

    async def handle(nodes):
        fresh = []
        for node in nodes:
            cid = await node.attribute("data-id")
            if cid and cid not in seen:
                seen.add(cid)
                fresh.append(cid)
        return fresh

    return handle


def _run(page, ctrl, handler=None, start=P1):
    async def go():
        await page.goto(start)
        return await ctrl.run(handler or _collector())

    return asyncio.run(go())


# ----------------------------------------------------------------------
# Button pagination
# ----------------------------------------------------------------------
def test_button_pagination_stops_at_max_pages(fake_page, listing, no_sleep):
    page = fake_page({
        P1: listing(_cards(1, 2), next_href="?page=2"),
        P2: listing(_cards(3, 4), next_href="?page=3"),
        P3: listing(_cards(5, 6)),
    })
    ctrl = _controller(page, _cfg(max_pages=2), sleep=no_sleep)

    results = _run(page, ctrl)

    s = ctrl.session
    assert results == ["1", "2", "3", "4"]
    assert s.state is PaginationState.EXHAUSTED
    assert s.exhausted_reason == "max_pages"
    assert s.navigations == 1
    assert page.goto_calls == [P1, P2]
    assert s.transitions == [
        PaginationState.IDLE,
        PaginationState.EXTRACTING,
        PaginationState.NAVIGATING,
        PaginationState.WAITING_FOR_CHANGE,
        PaginationState.EXTRACTING,
        PaginationState.EXHAUSTED,
    ]


def test_navigation_loop_ends_after_consecutive_duplicate_pages(fake_page, listing, no_sleep):
    # Page 2 links back to page 1: the site loops forever
    page = fake_page({
        P1: listing(_cards(1, 2), next_href="?page=2"),
        P2: listing(_cards(3, 4), next_href="?page=1"),
    })
    ctrl = _controller(page, _cfg(max_pages=10, max_consecutive_duplicate_pages=2), sleep=no_sleep)

    results = _run(page, ctrl)

    s = ctrl.session
    assert results == ["1", "2", "3", "4"]
    assert s.state is PaginationState.EXHAUSTED
    assert s.exhausted_reason == "duplicate_pages"
    assert s.consecutive_duplicate_pages == 2
    assert s.navigations == 3


def test_duplicate_page_rotates_item_selector(fake_page, listing, no_sleep):
    page = fake_page({
        P1: listing(_cards(1, 2), next_href="?page=2"),
        P2: listing(_cards(3, 4), next_href="?page=1"),
    })
    candidate = SelectorCandidate("item", ("div.card", "div.card h4"))
    ctrl = _controller(page, _cfg(max_consecutive_duplicate_pages=2), candidate=candidate, sleep=no_sleep)

    _run(page, ctrl)

    rotations = [r["selector"] for r in logging_utils.read_log(component="opportunity_harvest.resolver", op="rotate")]
    assert rotations == ["div.card h4", "div.card"]


def test_no_next_control_exhausts_after_first_page(fake_page, listing, no_sleep):
    page = fake_page({P1: listing(_cards(1, 2))})
    ctrl = _controller(page, _cfg(), sleep=no_sleep)

    results = _run(page, ctrl)

    assert results == ["1", "2"]
    assert ctrl.session.state is PaginationState.EXHAUSTED
    assert ctrl.session.exhausted_reason == "no_next_control"
    assert ctrl.session.navigations == 0


def test_auto_paginate_off_reads_one_page(fake_page, listing, no_sleep):
    page = fake_page({P1: listing(_cards(1, 2), next_href="?page=2")})
    ctrl = _controller(page, _cfg(auto_paginate=False), sleep=no_sleep)

    results = _run(page, ctrl)

    assert results == ["1", "2"]
    assert ctrl.session.exhausted_reason == "auto_paginate_off"
    assert page.goto_calls == [P1]


# ----------------------------------------------------------------------
# Stalls and the scroll fallback
# ----------------------------------------------------------------------
def test_stalled_click_falls_back_to_scrolling(fake_page, listing, no_sleep):
    def on_scroll(n, html):
        # 1: saturation pass (nothing new), 2: fallback scroll loads more, 3+: nothing
        if n == 2:
            return listing(_cards(1, 2, 3, 4), next_button=True)
        return None

    page = fake_page({P1: listing(_cards(1, 2), next_button=True)}, on_scroll=on_scroll)
    ctrl = _controller(page, _cfg(), sleep=no_sleep)

    results = _run(page, ctrl)

    s = ctrl.session
    assert results == ["1", "2", "3", "4"]
    assert s.mode == "infinite-scroll"
    # The later scroll found nothing and there is no further fallback
    assert s.state is PaginationState.EXHAUSTED
    assert s.exhausted_reason == "navigation_stalled"
    assert s.current_page == 2  # reverted after the final stall
    assert ctrl.stalls == 2
    assert page.scroll_calls == 3
    assert no_sleep.calls == [0.5, 0.2, 0.2, 0.2, 0.2, 0.2]

    stalls = logging_utils.read_log("error", op="stalled")
    assert [r["page"] for r in stalls] == [2, 3]
    assert all(r["fatal"] is False for r in stalls)


def test_failed_fallback_ends_stalled_with_partial_results(fake_page, listing, no_sleep):
    page = fake_page({P1: listing(_cards(1, 2), next_button=True)})
    ctrl = _controller(page, _cfg(), sleep=no_sleep)

    results = _run(page, ctrl)

    assert results == ["1", "2"]
    assert ctrl.session.state is PaginationState.STALLED
    assert ctrl.session.current_page == 1


def test_static_driver_never_scrolls(listing, no_sleep):
    html = listing(_cards(1, 2), next_button=True)
    page = StaticDriver(fetch=lambda url: html)
    ctrl = _controller(page, _cfg(), sleep=no_sleep)

    results = _run(page, ctrl)

    assert results == ["1", "2"]
    assert ctrl.scrolls == 0
    assert ctrl.session.state is PaginationState.EXHAUSTED
    assert ctrl.session.exhausted_reason == "navigation_stalled"
    # only the post-click wait; no saturation delay, no fallback
    assert no_sleep.calls == [0.2, 0.2]


def test_wait_never_exceeds_budget(fake_page, listing, no_sleep):
    page = fake_page({P1: listing(_cards(1), next_button=True)})
    config = _cfg(wait_budget=0.5, wait_phases=((3, 0.2), (5, 1.0)), infinite_scroll_fallback=False)
    ctrl = _controller(page, config, sleep=no_sleep)

    _run(page, ctrl)

    waits = no_sleep.calls[1:]  # first entry is the saturation scroll delay
    assert abs(sum(waits) - 0.5) < 1e-9
    assert ctrl.session.exhausted_reason == "navigation_stalled"


# ----------------------------------------------------------------------
# Infinite scroll
# ----------------------------------------------------------------------
def test_infinite_scroll_saturates_until_growth_stops(fake_page, listing, no_sleep):
    def on_scroll(n, html):
        if n <= 3:
            return listing(_cards(*range(2 + 2 * n)))
        return None

    page = fake_page({P1: listing(_cards(0, 1))}, on_scroll=on_scroll)
    ctrl = _controller(page, _cfg(max_scrolls=10, scroll_stall_limit=2), mode="infinite-scroll", sleep=no_sleep)

    results = _run(page, ctrl)

    assert results == [str(i) for i in range(8)]
    assert ctrl.scrolls == 5  # 3 that grew + 2 unchanged
    assert page.scroll_calls == 6  # + one navigation scroll that found nothing
    assert ctrl.session.exhausted_reason == "navigation_stalled"


def test_saturation_is_bounded_by_max_scrolls(fake_page, listing, no_sleep):
    def on_scroll(n, html):
        return listing(_cards(*range(2 + 2 * n)))  # the feed never ends

    page = fake_page({P1: listing(_cards(0, 1))}, on_scroll=on_scroll)
    ctrl = _controller(page, _cfg(max_scrolls=4, max_pages=1), mode="infinite-scroll", sleep=no_sleep)

    results = _run(page, ctrl)

    assert page.scroll_calls == 4
    assert len(results) == 10
    assert ctrl.session.exhausted_reason == "max_pages"


# ----------------------------------------------------------------------
# Abort
# ----------------------------------------------------------------------
def test_abort_mid_session_keeps_results(fake_page, listing, no_sleep):
    page = fake_page({
        P1: listing(_cards(1, 2), next_href="?page=2"),
        P2: listing(_cards(3, 4)),
    })
    ctrl = _controller(page, _cfg(), sleep=no_sleep)
    inner = _collector()

    async def handler(nodes):
        out = await inner(nodes)
        ctrl.abort()
        return out

    results = _run(page, ctrl, handler)

    assert results == ["1", "2"]
    assert ctrl.aborted
    assert ctrl.session.state is PaginationState.ABORTED
    assert page.goto_calls == [P1]


def test_abort_before_start(fake_page, listing, no_sleep):
    page = fake_page({P1: listing(_cards(1))})
    ctrl = _controller(page, _cfg(), sleep=no_sleep)
    ctrl.abort()

    assert _run(page, ctrl) == []
    assert ctrl.session.transitions == [PaginationState.IDLE, PaginationState.ABORTED]


# ----------------------------------------------------------------------
# Next-control discovery
# ----------------------------------------------------------------------
def _find(fake_page, body):
    page = fake_page({P1: f"<html><body>{body}</body></html>"})

    async def go():
        await page.goto(P1)
        return await find_next_control(page)

    return asyncio.run(go())


def test_find_next_prefers_explicit_markers(fake_page):
    found = _find(fake_page, '<a href="?page=9">Next</a><a rel="next" href="?page=2">›</a>')
    assert found is not None
    assert found[1] == 'explicit:a[rel="next"]'


def test_find_next_by_aria_label(fake_page):
    found = _find(fake_page, '<button aria-label="Next page">›</button>')
    assert found is not None
    assert found[1].startswith("aria:")


def test_find_next_by_text(fake_page):
    found = _find(fake_page, '<a href="/o/1">Opportunity 1</a><a href="?page=2">Next »</a>')
    assert found is not None
    assert found[1] == "text"


def test_find_next_by_arrow_icon(fake_page):
    found = _find(fake_page, '<button class="btn-right"><svg class="chevron-right"></svg></button>')
    assert found is not None
    assert found[1] == "icon"


def test_find_next_last_sibling_in_pagination_container(fake_page):
    found = _find(
        fake_page,
        '<div class="pagination"><a class="current" href="?page=1">1</a><a href="?page=2">2</a></div>',
    )
    assert found is not None
    assert found[1] == "last-sibling:.pagination"


def test_disabled_controls_are_ignored(fake_page):
    body = (
        '<a rel="next" class="disabled" href="#">Next</a>'
        '<button aria-disabled="true">Load more</button>'
    )
    assert _find(fake_page, body) is None
