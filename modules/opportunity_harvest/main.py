from __future__ import annotations

from typing import Any

from .lib.config import Settings
from .lib.engine import run_once as _run_engine
from .lib.logging_bridge import activity as log_activity


def run(**kwargs: Any) -> tuple[str, dict] | None:
    """
    Entry point for the 'opportunity_harvest' module.

    Accepts kwargs (from scheduler/runner), including:
      op: "harvest" | "merge" | "compact" = "harvest"
      sqlite_path: str = "/app/local/state/opportunities.db"
      sources_path: str = "/app/local/config/opportunity_sources.json"
      sources: list[str | dict]   # inline instead of sources_path
      only: list[str] | str       # restrict to these platforms
      harvest: dict               # HarvestConfig overrides (maxPages, waitBudget, ...)
      max_threads: int = 4
      skip_network: bool = False
      headless: bool = True
      compact_keep: int | None
      report_all: bool = False

    Returns:
      - None (nothing new to report), or
      - (html: str, meta: dict)
    """
    settings = Settings.from_env_and_kwargs(kwargs)

    log_activity({
        "component": "opportunity_harvest.main",
        "op": "start",
        "run_op": settings.op,
        "platforms": [s.platform for s in settings.selected_sources()],
        "flags": {
            "skip_network": settings.skip_network,
            "headless": settings.headless,
            "report_all": settings.report_all,
            "compact_keep": settings.compact_keep,
        },
    })

    return _run_engine(settings)
