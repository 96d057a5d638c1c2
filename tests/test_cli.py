# tests/test_cli.py
import argparse
import json

import pytest

from modules.opportunity_harvest.lib.store import MERGED_KEY, KeyValueStore
from service import cli


def test_merge_prints_html_of_everything_on_file(store, make_record, capsys):
    store.append_records("qwoted", [make_record("7", platform="qwoted", title="Expert needed on tariffs")])

    rc = cli.main(["merge", "--sqlite-path", store.sqlite_path, "--print-html"])

    assert rc == 0
    out, _ = capsys.readouterr()
    assert "----- HTML OUTPUT -----" in out
    assert "Expert needed on tariffs" in out
    assert "SUCCESS" in out
    assert [r.external_id for r in store.load_records(MERGED_KEY)] == ["7"]


def test_merge_on_empty_store_is_done_not_success(tmp_path, capsys):
    rc = cli.main(["merge", "--sqlite-path", str(tmp_path / "empty.db")])
    assert rc == 0
    assert "DONE" in capsys.readouterr().out


def test_compact_keeps_newest(store, make_record, capsys):
    store.append_records("featured", [
        make_record("old", extracted_at="2025-01-01T00:00:00Z"),
        make_record("new", extracted_at="2025-06-01T00:00:00Z"),
    ])
    assert cli.main(["merge", "--sqlite-path", store.sqlite_path]) == 0

    assert cli.main(["compact", "--keep", "1", "--sqlite-path", store.sqlite_path]) == 0
    assert [r.external_id for r in KeyValueStore(store.sqlite_path).load_records(MERGED_KEY)] == ["new"]


def test_compact_with_bad_keep_fails(store, capsys):
    rc = cli.main(["compact", "--keep", "0", "--sqlite-path", store.sqlite_path])
    assert rc == 1
    assert "FAILURE" in capsys.readouterr().err


def test_sources_set_and_list(store, capsys):
    rc = cli.main([
        "sources", "--sqlite-path", store.sqlite_path,
        "--set", "featured", "priority=5", "enabled=false", "displayColor=#123456",
    ])
    assert rc == 0
    out, _ = capsys.readouterr()
    assert "featured" in out
    assert "#123456 priority=5 enabled=false" in out

    cfg = store.load_source_configs()["featured"]
    assert (cfg.priority, cfg.enabled) == (5, False)


def test_sources_rejects_unknown_field(store, capsys):
    rc = cli.main(["sources", "--sqlite-path", store.sqlite_path, "--set", "featured", "colour=red"])
    assert rc == 1
    assert "ERROR" in capsys.readouterr().err


def test_sources_on_empty_store(store, capsys):
    assert cli.main(["sources", "--sqlite-path", store.sqlite_path]) == 0
    assert "No sources registered yet." in capsys.readouterr().out


def test_harvest_with_skip_network_runs_nothing(tmp_path, capsys):
    rc = cli.main([
        "harvest", "--source", "featured",
        "--kwargs", "skip_network=true", f"sqlite_path={tmp_path / 'o.db'}", 'sources=["featured","qwoted"]',
    ])
    assert rc == 0
    assert "DONE" in capsys.readouterr().out


def test_run_surfaces_module_errors(tmp_path, capsys):
    rc = cli.main(["run", "modules.opportunity_harvest", "--kwargs", "op=bogus"])
    assert rc == 1
    assert "FAILURE" in capsys.readouterr().err


def test_validate_config_ok(write_min_config, capsys):
    assert cli.main(["validate-config"]) == 0
    assert "OK" in capsys.readouterr().out


def test_validate_config_reports_errors(tmp_path, capsys):
    p = tmp_path / "bad.json"
    p.write_text('{"jobs": [{"module": "modules.opportunity_harvest", "kwargs": {"op": "compact"}, '
                 '"interval": {"hours": 1}}]}', encoding="utf-8")
    assert cli.main(["--config", str(p), "validate-config"]) == 1
    assert "compact_keep" in capsys.readouterr().err


def test_list_jobs_shows_op_store_and_next_run(write_min_config, tmp_path, capsys):
    assert cli.main(["list-jobs"]) == 0
    out, _ = capsys.readouterr()
    assert "opps-merge-never" in out
    assert f"merge @ {tmp_path / 'opps.db'}" in out
    assert "next: 2099-01-01T00:00:00+00:00" in out
    assert "pytest config" in out


def test_parse_kv_pairs():
    assert cli._parse_kv_pairs(["a=1", "b=true", "c=hello", 'd=["x"]']) == {
        "a": 1,
        "b": True,
        "c": "hello",
        "d": ["x"],
    }
    with pytest.raises(argparse.ArgumentTypeError):
        cli._parse_kv_pairs(["novalue"])


def test_activity_filters_by_component_and_op(tmp_path, capsys):
    assert cli.main(["merge", "--sqlite-path", str(tmp_path / "empty.db")]) == 0
    capsys.readouterr()

    assert cli.main(["activity", "--component", "opportunity_harvest", "--op", "summary"]) == 0
    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert [r["component"] for r in lines] == ["opportunity_harvest.engine"]
    assert lines[0]["run_op"] == "merge"
    assert "_meta" not in lines[0]


def test_activity_on_quiet_error_log(capsys):
    assert cli.main(["activity", "--errors"]) == 0
    assert "No matching log records today." in capsys.readouterr().out
