# tests/test_runner.py
import re
import threading

import pytest

from modules.opportunity_harvest.lib.config import ConfigError
from service import logging_utils, runner


def _last_activity():
    return logging_utils.read_log(limit=1)[0]


def test_runner_runs_merge_and_returns_html(store, make_record):
    store.append_records("featured", [make_record("1", title="Podcast guests wanted")])

    html, run_id = runner.run_module_once(
        module="modules.opportunity_harvest",
        kwargs={"op": "merge", "sqlite_path": store.sqlite_path, "report_all": "true"},
        trigger_type="adhoc",
    )

    assert re.match(r"^[a-f0-9]{32}$", run_id)
    assert "Podcast guests wanted" in html

    rec = _last_activity()
    assert rec["run_id"] == run_id
    assert rec["ok"] is True
    assert rec["has_html"] is True
    assert rec["subject"] == "Opportunity Harvest: 1 on file"
    assert rec["kwargs"]["report_all"] is True
    assert rec["context"]["trigger_type"] == "adhoc"


def test_runner_returns_none_when_nothing_to_report(tmp_path):
    html, run_id = runner.run_module_once(
        module="modules.opportunity_harvest",
        kwargs={"op": "merge", "sqlite_path": str(tmp_path / "empty.db")},
        job_context={"job_id": "opps-merge", "run_id": "ignored"},
    )
    assert html is None

    rec = _last_activity()
    assert rec["context"]["job_id"] == "opps-merge"
    assert rec["context"]["run_id"] == run_id  # job context never overrides runner fields


def test_runner_reraises_module_errors(tmp_path):
    with pytest.raises(ConfigError):
        runner.run_module_once(
            module="modules.opportunity_harvest",
            kwargs={"op": "explode", "sqlite_path": str(tmp_path / "o.db")},
        )
    rec = _last_activity()
    assert rec["ok"] is False
    assert rec["meta"]["exception_type"] == "ConfigError"


def test_runner_times_out(monkeypatch):
    release = threading.Event()

    def _slow(**kwargs):
        release.wait(5)

    monkeypatch.setattr(runner, "_resolve_callable", lambda module: _slow)
    try:
        with pytest.raises(TimeoutError):
            runner.run_module_once("modules.slow", timeout_sec=1)
    finally:
        release.set()
    assert _last_activity()["meta"] == {"timeout_sec": 1}


def test_unknown_module_is_an_import_error():
    with pytest.raises(ModuleNotFoundError):
        runner.run_module_once("modules.does_not_exist")


def test_normalize_kwargs_types(monkeypatch):
    monkeypatch.setenv("FEATURED_SESSION", "state.json")
    out = runner._normalize_kwargs_types({
        "skip_network": "yes",
        "max_threads": "3",
        "harvest": '{"maxPages": 2}',
        "only": '["featured"]',
        "storage_state_env": "FEATURED_SESSION",
        "platform": "qwoted",
        "broken": "{nope",
    })
    assert out == {
        "skip_network": True,
        "max_threads": 3,
        "harvest": {"maxPages": 2},
        "only": ["featured"],
        "storage_state_env": "state.json",
        "platform": "qwoted",
        "broken": "{nope",
    }


def test_coerce_result_shapes():
    r = runner._coerce_result(("<p>x</p>", {"message": "2 new", "subject": "S"}))
    assert (r.html, r.message, r.subject) == ("<p>x</p>", "2 new", "S")

    r = runner._coerce_result({"html": "<p>y</p>", "meta": {"subject": "T"}})
    assert (r.html, r.subject) == ("<p>y</p>", "T")

    assert runner._coerce_result(None).html is None
    assert runner._coerce_result({"message": "meta only"}).message == "meta only"
    with pytest.raises(TypeError):
        runner._coerce_result(42)
