# modules/opportunity_harvest/lib/__init__.py
from __future__ import annotations

# Importing the adapters package registers the built-in platforms
from . import adapters as _adapters
from .config import ConfigError, HarvestConfig, Settings, SourceSpec
from .dedup import DedupCache
from .engine import run_once
from .harvester import Harvester
from .merge import MergeRegistry
from .models import ContentFingerprint, HarvestResult, OpportunityRecord, SelectorCandidate, SourceConfig
from .store import KeyValueStore

__all__ = [
    "ConfigError",
    "ContentFingerprint",
    "DedupCache",
    "HarvestConfig",
    "HarvestResult",
    "Harvester",
    "KeyValueStore",
    "MergeRegistry",
    "OpportunityRecord",
    "SelectorCandidate",
    "Settings",
    "SourceConfig",
    "SourceSpec",
    "run_once",
]
