# tests/conftest.py
import json
import os
import tempfile

import pytest
from freezegun import freeze_time

from modules.opportunity_harvest.lib.drivers.static import StaticDriver
from modules.opportunity_harvest.lib.models import OpportunityRecord
from modules.opportunity_harvest.lib.store import KeyValueStore


# ---------------------------------------------------------------------
# Live tests are opt-in: use --live or RUN_LIVE_TESTS=1
# ---------------------------------------------------------------------
def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--live",
        action="store_true",
        default=False,
        help="Run tests marked as 'live' (real browsers or network calls).",
    )


def pytest_configure(config: pytest.Config) -> None:
    # Marker registration (so pytest --markers shows it)
    config.addinivalue_line(
        "markers",
        "live: marks tests that launch a browser or hit the network (skipped by default).",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_live = config.getoption("--live") or os.getenv("RUN_LIVE_TESTS") == "1"
    if run_live:
        return
    skip_live = pytest.mark.skip(reason="live tests disabled (use --live or RUN_LIVE_TESTS=1)")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------
# Test-wide env defaults (autouse, function-scoped)
# ---------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _env_defaults(monkeypatch):
    # Write logs to a throwaway dir so real logs stay clean (per test)
    tmp_logs = tempfile.mkdtemp(prefix="oh-pytest-logs-")
    monkeypatch.setenv("LOG_DIR", tmp_logs)
    monkeypatch.setenv("ACTIVITY_LOG_PREFIX", "activity-test")
    monkeypatch.setenv("ERROR_LOG_PREFIX", "error-test")
    monkeypatch.setenv("HARVEST_HEADLESS", "1")
    monkeypatch.delenv("SQLITE_PATH", raising=False)
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    yield


@pytest.fixture
def frozen_utc():
    with freeze_time("2025-01-01T00:00:00Z"):
        yield


@pytest.fixture
def write_min_config(tmp_path, monkeypatch):
    cfg = {
        "timezone": "UTC",
        "jobs": [
            {
                "id": "opps-merge-never",
                "module": "modules.opportunity_harvest",
                "trigger": {"date": "2099-01-01T00:00:00Z"},
                "kwargs": {"op": "merge", "sqlite_path": str(tmp_path / "opps.db")},
                "summary": "pytest config",
            }
        ],
    }
    p = tmp_path / "config.json"
    p.write_text(json.dumps(cfg), encoding="utf-8")
    monkeypatch.setenv("CONFIG_PATH", str(p))
    return p


@pytest.fixture
def store(tmp_path):
    return KeyValueStore(str(tmp_path / "opps.db"))


@pytest.fixture
def no_sleep():
    """Async sleep stand-in that records requested delays instead of waiting."""
    calls = []

    async def _sleep(seconds):
        calls.append(seconds)

    _sleep.calls = calls
    return _sleep


# ---------------------------------------------------------------------
# Page fakes
# ---------------------------------------------------------------------
class FakePage(StaticDriver):
    """
    In-memory page: URLs resolve from `routes`, clicks on links follow them,
    and `on_scroll(n, html)` may return replacement HTML to simulate content
    loading below the fold.
    """

    dynamic = True

    def __init__(self, routes=None, *, on_scroll=None):
        super().__init__(fetch=lambda url: "")
        self.routes = dict(routes or {})
        self.on_scroll = on_scroll
        self.goto_calls = []
        self.scroll_calls = 0
        self.closed = False

    @property
    def html(self):
        return self._html

    async def goto(self, url):
        self.goto_calls.append(url)
        self.load(url, self.routes.get(url, ""))

    def set_html(self, html):
        self.load(self.url, html)

    async def scroll_to_bottom(self):
        self.scroll_calls += 1
        if self.on_scroll is not None:
            html = self.on_scroll(self.scroll_calls, self._html)
            if html is not None:
                self.load(self.url, html)

    async def close(self):
        self.closed = True


def listing_html(cards, *, next_href=None, label=None, next_button=False):
    """
    Build a listing page. `cards` is a list of (id, title) pairs rendered as
    div.card blocks with a /o/<id> link.
    """
    blocks = "".join(
        f'<div class="card" data-id="{cid}"><h4><a href="/o/{cid}">{title}</a></h4>'
        f'<p class="desc">About {title}</p></div>'
        for cid, title in cards
    )
    nav = ""
    if label:
        nav += f'<nav class="pagination">{label}</nav>'
    if next_href:
        nav += f'<a rel="next" href="{next_href}">Next</a>'
    if next_button:
        nav += '<button class="next">Next</button>'
    return f"<html><body><main>{blocks}</main>{nav}</body></html>"


@pytest.fixture
def fake_page():
    return FakePage


@pytest.fixture
def listing():
    return listing_html


@pytest.fixture
def make_record():
    def _make(external_id, *, platform="featured", title=None, extracted_at="2025-01-01T00:00:00Z", **extra):
        return OpportunityRecord(
            external_id=external_id,
            title=title or f"Opportunity {external_id}",
            description=extra.pop("description", f"Details for {external_id}"),
            url=extra.pop("url", f"https://example.com/{platform}/{external_id}"),
            deadline=extra.pop("deadline", ""),
            category=extra.pop("category", "General"),
            source_platform=platform,
            extracted_at=extracted_at,
            **extra,
        )

    return _make
