# tests/test_normalize.py
import pytest

from modules.opportunity_harvest.lib.errors import InvalidRecordError
from modules.opportunity_harvest.lib.models import OpportunityRecord
from modules.opportunity_harvest.lib.normalize import normalize_record
from modules.opportunity_harvest.lib.utils import rolling_hash


def test_fields_are_cleaned_and_defaulted(frozen_utc):
    rec = normalize_record(
        {
            "externalId": " 123 ",
            "title": "  Seeking   sleep experts\n",
            "description": None,
            "url": "https://example.com/q/123",
        },
        "Featured",
    )
    assert rec.external_id == "123"
    assert rec.title == "Seeking sleep experts"
    assert rec.description == ""
    assert rec.deadline == ""
    assert rec.category == "General"
    assert rec.source_platform == "featured"
    assert rec.extracted_at == "2025-01-01T00:00:00Z"
    assert rec.synthetic_id is False
    assert rec.saved is False


def test_id_falls_back_to_alternate_keys():
    rec = normalize_record({"id": "77", "title": "T", "url": "u"}, "qwoted", extracted_at="x")
    assert rec.external_id == "77"
    assert rec.extracted_at == "x"


def test_missing_id_gets_a_stable_synthetic_one():
    raw = {"title": "Need travel tips", "url": "https://featured.com/experts/questions"}
    a = normalize_record(raw, "featured")
    b = normalize_record(dict(raw), "featured")

    assert a.synthetic_id is True
    assert a.external_id == b.external_id
    assert a.external_id == "featured-" + rolling_hash("Need travel tips|https://featured.com/experts/questions")


@pytest.mark.parametrize(
    "raw, missing",
    [
        ({"url": "u"}, ["title"]),
        ({"title": "   ", "url": "u"}, ["title"]),
        ({"title": "T"}, ["url"]),
        ({}, ["title", "url"]),
    ],
)
def test_required_fields(raw, missing):
    with pytest.raises(InvalidRecordError) as ei:
        normalize_record(raw, "featured")
    assert ei.value.missing == missing


def test_dict_form_tolerates_older_rows():
    rec = OpportunityRecord.from_dict({"id": "9", "title": "T", "url": "u", "source": "SourceBottle"})
    assert rec.external_id == "9"
    assert rec.source_platform == "sourcebottle"
    assert rec.key == ("sourcebottle", "9")
    assert rec.to_dict()["externalId"] == "9"


def test_rolling_hash_is_signed_hex():
    assert rolling_hash("") == "0"
    assert rolling_hash("a") == "61"
    assert rolling_hash("hello") == "5e918d2"
    # 32-bit overflow wraps into negative values
    assert rolling_hash("polygenelubricants") == "-80000000"
