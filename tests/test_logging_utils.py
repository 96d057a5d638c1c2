# tests/test_logging_utils.py
import os

import pytest

from service import logging_utils


def test_records_are_redacted_and_stamped():
    logging_utils.write_activity_log({
        "component": "opportunity_harvest.browser",
        "op": "login",
        "storage_state": {"cookies": ["abc"]},
        "headers": {"Authorization": "Bearer s3cr3t", "Accept": "text/html"},
        "note": "Bearer abc.def",
    })
    rec = logging_utils.read_log()[-1]
    assert rec["storage_state"] == "***REDACTED***"
    assert rec["headers"] == {"Authorization": "***REDACTED***", "Accept": "text/html"}
    assert rec["note"] == "Bearer ***REDACTED***"
    assert rec["_meta"]["pid"] == os.getpid()


def test_log_location_follows_env_at_call_time(tmp_path, monkeypatch):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    monkeypatch.setenv("ERROR_LOG_PREFIX", "harvest-errors")
    logging_utils.write_error_log({"component": "opportunity_harvest.engine", "op": "harvester_run"})

    path = logging_utils.get_error_log_path()
    assert os.path.dirname(path) == str(tmp_path)
    assert os.path.basename(path).startswith("harvest-errors-")
    assert logging_utils.read_log("error")[0]["op"] == "harvester_run"


def test_read_log_filters(monkeypatch):
    for comp, op in [
        ("opportunity_harvest.pagination", "transition"),
        ("opportunity_harvest.pagination", "stalled"),
        ("opportunity_harvest.resolver", "rotate"),
        ("opportunity_harvest_extra", "transition"),
    ]:
        logging_utils.write_activity_log({"component": comp, "op": op})

    assert len(logging_utils.read_log(component="opportunity_harvest")) == 3
    assert [r["op"] for r in logging_utils.read_log(component="opportunity_harvest.pagination")] == [
        "transition",
        "stalled",
    ]
    assert [r["component"] for r in logging_utils.read_log(op="transition", limit=1)] == ["opportunity_harvest_extra"]
    with pytest.raises(ValueError):
        logging_utils.read_log("debug")


def test_read_log_skips_garbage_and_missing_files(tmp_path, monkeypatch):
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "fresh"))
    assert logging_utils.read_log() == []

    logging_utils.write_activity_log({"component": "x", "op": "ok"})
    with open(logging_utils.get_activity_log_path(), "a", encoding="utf-8") as f:
        f.write("{truncated\n[1, 2]\n")
    assert [r["op"] for r in logging_utils.read_log()] == ["ok"]


def test_size_rotation(tmp_path, monkeypatch):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    monkeypatch.setenv("ACTIVITY_LOG_MAX_BYTES", "10")
    logging_utils.write_activity_log({"op": "first"})
    logging_utils.write_activity_log({"op": "second"})

    assert [r["op"] for r in logging_utils.read_log()] == ["second"]
    assert len(os.listdir(tmp_path)) == 2
