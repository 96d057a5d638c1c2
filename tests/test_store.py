# tests/test_store.py
import pytest

from modules.opportunity_harvest.lib.errors import StorageWriteError
from modules.opportunity_harvest.lib.models import SourceConfig
from modules.opportunity_harvest.lib.store import (
    MERGED_KEY,
    SOURCE_CONFIGS_KEY,
    KeyValueStore,
    collection_key,
    reset_db,
)


def test_collection_keys_are_namespaced():
    assert collection_key("featured") == "featuredOpportunities"
    assert collection_key(" Qwoted ") == "qwotedOpportunities"
    assert MERGED_KEY == "opportunities"
    assert SOURCE_CONFIGS_KEY == "scraper_source_configs"


def test_get_set_delete(store):
    assert store.get("missing", default=[]) == []
    store.set("k", {"a": [1, 2]})
    assert store.get("k") == {"a": [1, 2]}
    assert store.keys() == ["k"]
    store.delete("k")
    assert store.get("k") is None


def test_append_records_adds_only_unknown_identities(store, make_record, frozen_utc):
    assert store.append_records("featured", [make_record("1"), make_record("2")]) == 2
    added = store.append_records("featured", [make_record("2", title="Changed"), make_record("3")])

    assert added == 1
    rows = store.load_records(collection_key("featured"))
    assert [r.external_id for r in rows] == ["1", "2", "3"]
    assert rows[1].title == "Opportunity 2"  # existing row wins
    assert store.get("featuredOpportunities_lastUpdated") == "2025-01-01T00:00:00Z"


def test_append_nothing_new_writes_nothing(store, make_record):
    assert store.append_records("featured", []) == 0
    assert store.keys() == []


def test_load_records_skips_malformed_rows(store):
    store.set("featuredOpportunities", [{"externalId": "1", "title": "T", "url": "u"}, "junk", 7])
    rows = store.load_records("featuredOpportunities")
    assert len(rows) == 1
    assert rows[0].category == "General"


def test_source_configs_live_under_their_own_key(store, make_record):
    store.save_records(MERGED_KEY, [make_record("1")])
    store.save_source_configs({"featured": SourceConfig(display_color="#123456", priority=5)})

    store.delete(MERGED_KEY)

    cfgs = store.load_source_configs()
    assert cfgs["featured"].display_color == "#123456"
    assert cfgs["featured"].priority == 5


def test_write_failure_raises_storage_write_error(store):
    with pytest.raises(StorageWriteError) as ei:
        store.set("k", {"not-json": object()})
    assert ei.value.key == "k"


def test_empty_path_is_rejected():
    with pytest.raises(ValueError):
        KeyValueStore("  ")


def test_reset_db_is_safe_when_missing(tmp_path):
    p = tmp_path / "gone.db"
    reset_db(str(p))
    s = KeyValueStore(str(p))
    s.set("k", 1)
    assert p.exists()
    reset_db(str(p))
    assert not p.exists()
