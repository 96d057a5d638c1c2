from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class OpportunityRecord:
    """
    A single harvested opportunity.

    Identity is (source_platform, external_id); external_id is only unique
    within its platform. Records are never mutated after persisting; the
    `saved` flag is flipped by building a replacement via dataclasses.replace.
    """

    external_id: str
    title: str
    description: str
    url: str
    deadline: str
    category: str
    source_platform: str
    extracted_at: str
    saved: bool = False
    synthetic_id: bool = False  # external_id was generated, not read from the page

    @property
    def key(self) -> tuple[str, str]:
        return (self.source_platform, self.external_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "externalId": self.external_id,
            "title": self.title,
            "description": self.description,
            "url": self.url,
            "deadline": self.deadline,
            "category": self.category,
            "sourcePlatform": self.source_platform,
            "extractedAt": self.extracted_at,
            "saved": self.saved,
            "syntheticId": self.synthetic_id,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> OpportunityRecord:
        """Inverse of to_dict; tolerates older rows keyed by 'id'/'source'."""

        def _s(*keys: str, default: str = "") -> str:
            for k in keys:
                v = d.get(k)
                if v is not None:
                    return str(v)
            return default

        return cls(
            external_id=_s("externalId", "external_id", "id"),
            title=_s("title"),
            description=_s("description"),
            url=_s("url"),
            deadline=_s("deadline"),
            category=_s("category", default="General") or "General",
            source_platform=_s("sourcePlatform", "source_platform", "source").lower(),
            extracted_at=_s("extractedAt", "extracted_at", "scrapedAt"),
            saved=bool(d.get("saved", False)),
            synthetic_id=bool(d.get("syntheticId", d.get("synthetic_id", False))),
        )


@dataclass(frozen=True)
class ContentFingerprint:
    """Composite signature of the visible page state, used for change detection."""

    content_hash: str
    item_count: int
    pagination_label: str
    page_query_param: str
    document_height: int
    captured_at: float
    degraded: bool = False


@dataclass(frozen=True)
class SelectorCandidate:
    """Ordered alternative CSS queries for one logical role ("item", "container", ...)."""

    role: str
    selectors: tuple[str, ...]

    def __post_init__(self) -> None:
        # Accept lists from config files
        if not isinstance(self.selectors, tuple):
            object.__setattr__(self, "selectors", tuple(self.selectors))


@dataclass(frozen=True)
class SelectorMatch:
    selector: str
    match_count: int


@dataclass(frozen=True)
class SourceConfig:
    """Per-platform display metadata; persisted apart from the records."""

    display_color: str = "#4361ee"
    display_icon: str = "📋"
    priority: int = 100
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "displayColor": self.display_color,
            "displayIcon": self.display_icon,
            "priority": self.priority,
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> SourceConfig:
        base = cls()
        return cls(
            display_color=str(d.get("displayColor", d.get("color", base.display_color))),
            display_icon=str(d.get("displayIcon", d.get("icon", base.display_icon))),
            priority=int(d.get("priority", base.priority)),
            enabled=bool(d.get("enabled", base.enabled)),
        )


class PaginationState(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    NAVIGATING = "navigating"
    WAITING_FOR_CHANGE = "waiting_for_change"
    EXHAUSTED = "exhausted"
    STALLED = "stalled"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({PaginationState.EXHAUSTED, PaginationState.STALLED, PaginationState.ABORTED})


@dataclass
class PaginationSession:
    """Mutable bookkeeping for one controller run. Lives only as long as the harvester."""

    max_pages: int
    max_consecutive_duplicate_pages: int
    mode: str = "button"  # "button" | "infinite-scroll"
    current_page: int = 1
    consecutive_duplicate_pages: int = 0
    navigations: int = 0
    state: PaginationState = PaginationState.IDLE
    exhausted_reason: str = ""
    transitions: list[PaginationState] = field(default_factory=list)

    def move(self, state: PaginationState) -> None:
        self.state = state
        self.transitions.append(state)


@dataclass
class HarvestResult:
    """
    Summary of one harvester run (one per platform).
    - records: only the records that were new to the dedup cache.
    """

    platform: str
    records: list[OpportunityRecord] = field(default_factory=list)
    pages: int = 0
    outcome: str = ""
    invalid_count: int = 0
    errors: list[str] = field(default_factory=list)
    duration_us: int = 0

    @property
    def new_count(self) -> int:
        return len(self.records)
