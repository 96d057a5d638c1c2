from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .errors import InvalidRecordError
from .models import OpportunityRecord
from .utils import clean_text, now_iso, rolling_hash

REQUIRED_FIELDS = ("title", "url")
DEFAULT_CATEGORY = "General"


def normalize_record(raw: Mapping[str, Any], platform: str, *, extracted_at: str | None = None) -> OpportunityRecord:
    """
    Turn an adapter's raw field map into an OpportunityRecord.

      - None/missing -> "", all strings whitespace-collapsed
      - externalId: raw externalId, then raw id, else a synthetic
        "<platform>-<hash(title|url)>" flagged synthetic_id=True
      - extractedAt stamped now (UTC) unless given
      - category defaults to "General"

    Raises InvalidRecordError when title or url is empty.
    """
    platform = clean_text(platform).lower()
    fields = {k: clean_text(raw.get(k)) for k in ("title", "description", "url", "deadline", "category")}

    missing = [f for f in REQUIRED_FIELDS if not fields[f]]
    if missing:
        raise InvalidRecordError(platform, missing)

    external_id = clean_text(raw.get("externalId")) or clean_text(raw.get("external_id")) or clean_text(raw.get("id"))
    synthetic = False
    if not external_id:
        external_id = f"{platform}-{rolling_hash(fields['title'] + '|' + fields['url'])}"
        synthetic = True

    return OpportunityRecord(
        external_id=external_id,
        title=fields["title"],
        description=fields["description"],
        url=fields["url"],
        deadline=fields["deadline"],
        category=fields["category"] or DEFAULT_CATEGORY,
        source_platform=platform,
        extracted_at=extracted_at or now_iso(),
        synthetic_id=synthetic,
    )
