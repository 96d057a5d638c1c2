# service/config_schema.py
from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any

import yaml

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the config is invalid."""


@dataclass
class _LoadResult:
    cfg: dict[str, Any]
    source: str


_TRIGGER_FIELDS = ("cron", "interval", "date", "daily_time")
_DAILY_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
_HARVEST_OPS = ("harvest", "merge", "compact")


def load_config(path: str | None = None) -> dict[str, Any]:
    """
    Load the service configuration.

    Resolution order:
      1) Explicit `path` argument (if provided)
      2) os.environ['CONFIG_PATH'] (if set)
      3) Internal default (empty config with empty jobs list)

    Returns:
        dict with at least {"jobs": [...], "timezone": ...}.
    """
    resolved_path = path or os.environ.get("CONFIG_PATH")
    if not resolved_path:
        logger.info("CONFIG_PATH not provided; using empty default config.")
        cfg: dict[str, Any] = {"jobs": []}
        _apply_top_level_defaults(cfg)
        return cfg

    cfg = _read_any(resolved_path).cfg
    _apply_top_level_defaults(cfg)
    return cfg


def validate(cfg: dict[str, Any]) -> None:
    """
    Validate the configuration. Raise ConfigError on any problem.
    No prints, no sys.exit().
    """
    if not isinstance(cfg, dict):
        raise ConfigError("Config must be a dict.")

    jobs = cfg.get("jobs")
    if jobs is None:
        raise ConfigError("Missing required top-level 'jobs' list.")
    if not isinstance(jobs, list):
        raise ConfigError("'jobs' must be a list.")

    tz = cfg.get("timezone")
    if tz is not None and not isinstance(tz, str):
        raise ConfigError("'timezone' must be a string if provided.")
    report_dir = cfg.get("report_dir")
    if report_dir is not None and (not isinstance(report_dir, str) or not report_dir.strip()):
        raise ConfigError("'report_dir' must be a non-empty string if provided.")

    seen_ids: set[str] = set()
    for idx, job in enumerate(jobs):
        if not isinstance(job, dict):
            raise ConfigError(f"Job at index {idx} must be an object/dict.")

        module = job.get("module")
        if not isinstance(module, str) or not module.strip():
            raise ConfigError(f"Job {idx}: 'module' is required and must be a non-empty string.")

        # id | name | module → id
        job_id = _derive_job_id(job, idx)
        if job_id in seen_ids:
            raise ConfigError(f"Duplicate job id '{job_id}'.")
        seen_ids.add(job_id)

        # Exactly one trigger, nested under "trigger": {...} or at job top-level
        trigger_container = job.get("trigger", job)
        if "trigger" in job and not isinstance(trigger_container, dict):
            raise ConfigError(f"Job '{job_id}': 'trigger' must be an object when present.")
        if "trigger" in job:
            also_top_level = [k for k in _TRIGGER_FIELDS if k in job]
            if also_top_level:
                raise ConfigError(
                    f"Job '{job_id}': do not mix top-level triggers {also_top_level} with nested 'trigger'."
                )

        present_triggers = [k for k in _TRIGGER_FIELDS if k in trigger_container]
        if len(present_triggers) != 1:
            raise ConfigError(f"Job '{job_id}': exactly one trigger required among {', '.join(_TRIGGER_FIELDS)}.")
        _validate_trigger(present_triggers[0], trigger_container[present_triggers[0]], job_id)

        _require_optional_bool(job, "coalesce", job_id)
        _require_optional_int(job, "timeout_sec", job_id, allow_zero=True)
        _require_optional_int(job, "max_instances", job_id, allow_zero=False)
        _require_optional_int(job, "misfire_grace_time", job_id, allow_zero=True)

        if "kwargs" in job and not isinstance(job["kwargs"], dict):
            raise ConfigError(f"Job '{job_id}': 'kwargs' must be a dict if provided.")
        if module.strip() == "modules.opportunity_harvest":
            _validate_harvest_kwargs(job.get("kwargs") or {}, job_id)

        for opt_str in ("summary", "description"):
            if opt_str in job and not isinstance(job[opt_str], str):
                raise ConfigError(f"Job '{job_id}': '{opt_str}' must be a string if provided.")


def _apply_top_level_defaults(cfg: dict[str, Any]) -> None:
    if "jobs" not in cfg or not isinstance(cfg["jobs"], list):
        cfg["jobs"] = []

    # Resolve timezone now so scheduler can use cfg['timezone']
    tz = cfg.get("timezone")
    if not isinstance(tz, str) or not tz.strip():
        cfg["timezone"] = os.environ.get("TZ", "UTC")

    normalized_jobs: list[dict[str, Any]] = []
    for idx, job in enumerate(cfg["jobs"]):
        if not isinstance(job, dict):
            raise ConfigError(f"Job at index {idx} must be an object/dict.")

        job_copy = dict(job)
        job_copy["id"] = _derive_job_id(job_copy, idx)

        if "coalesce" in job_copy:
            job_copy["coalesce"] = _to_bool(job_copy["coalesce"], field="coalesce", job_id=job_copy["id"])
        for n, allow_zero in (("timeout_sec", True), ("max_instances", False), ("misfire_grace_time", True)):
            if n in job_copy:
                job_copy[n] = _to_int(job_copy[n], field=n, job_id=job_copy["id"], allow_zero=allow_zero)

        normalized_jobs.append(job_copy)

    cfg["jobs"] = normalized_jobs


def _derive_job_id(job: dict[str, Any], idx: int) -> str:
    for key in ("id", "name", "module"):
        v = job.get(key)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return f"job_{idx}"


def _validate_trigger(kind: str, value: Any, job_id: str) -> None:
    """Shape checks only; the scheduler does the full parse."""
    if kind == "interval":
        if not isinstance(value, dict):
            raise ConfigError(f"Job '{job_id}': interval must be an object of time kwargs.")
        _validate_int_map({k: v for k, v in value.items() if k not in ("timezone", "start_date", "end_date")}, job_id)
    elif kind == "cron":
        if not isinstance(value, (str, dict)):
            raise ConfigError(f"Job '{job_id}': cron must be a crontab string or an object.")
    elif kind == "date":
        run_at = value.get("run_at") if isinstance(value, dict) else value
        if isinstance(run_at, str):
            if not run_at.strip():
                raise ConfigError(f"Job '{job_id}': date must be a non-empty ISO-8601 string.")
        elif not isinstance(run_at, (int, float)) or isinstance(run_at, bool):
            raise ConfigError(f"Job '{job_id}': date must be an ISO-8601 string or epoch seconds.")
    elif kind == "daily_time":
        times = value.get("time") if isinstance(value, dict) else value
        if isinstance(times, str):
            times = [times]
        if not isinstance(times, list) or not times:
            raise ConfigError(f"Job '{job_id}': daily_time needs 'HH:MM' or a list of them.")
        for t in times:
            _validate_daily_time(t, job_id)


def _validate_daily_time(dt: Any, job_id: str) -> None:
    if not isinstance(dt, str):
        raise ConfigError(f"Job '{job_id}': 'daily_time' must be a string like 'HH:MM'.")
    m = _DAILY_TIME_RE.match(dt.strip())
    if not m:
        raise ConfigError(f"Job '{job_id}': 'daily_time' must match HH:MM[:SS] (24h).")
    hour, minute, second = int(m.group(1)), int(m.group(2)), int(m.group(3) or 0)
    if not (0 <= hour <= 23 and 0 <= minute <= 59 and 0 <= second <= 59):
        raise ConfigError(f"Job '{job_id}': 'daily_time' out of range (00:00..23:59).")


def _validate_harvest_kwargs(kwargs: dict[str, Any], job_id: str) -> None:
    op = kwargs.get("op", "harvest")
    if op not in _HARVEST_OPS:
        raise ConfigError(f"Job '{job_id}': kwargs.op must be one of {', '.join(_HARVEST_OPS)}.")
    if op == "compact" and "compact_keep" not in kwargs:
        raise ConfigError(f"Job '{job_id}': op=compact requires kwargs.compact_keep.")
    if "compact_keep" in kwargs:
        _to_int(kwargs["compact_keep"], field="kwargs.compact_keep", job_id=job_id, allow_zero=False)
    if "sources" in kwargs and not isinstance(kwargs["sources"], list):
        raise ConfigError(f"Job '{job_id}': kwargs.sources must be a list.")


def _require_optional_bool(job: dict[str, Any], field: str, job_id: str) -> None:
    if field in job:
        _to_bool(job[field], field=field, job_id=job_id)


def _require_optional_int(job: dict[str, Any], field: str, job_id: str, *, allow_zero: bool) -> None:
    if field in job:
        _to_int(job[field], field=field, job_id=job_id, allow_zero=allow_zero)


def _validate_int_map(m: dict[str, Any], job_id: str) -> None:
    for k, v in m.items():
        _to_int(v, field=f"interval.{k}", job_id=job_id, allow_zero=True)


def _to_bool(value: Any, *, field: str, job_id: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"1", "true", "yes", "on"}:
            return True
        if v in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"Job '{job_id}': '{field}' must be a boolean (or boolean-like string).")


def _to_int(value: Any, *, field: str, job_id: str, allow_zero: bool) -> int:
    try:
        iv = int(value)
    except (TypeError, ValueError) as err:
        raise ConfigError(f"Job '{job_id}': '{field}' must be an integer.") from err
    if iv < 0 or (iv == 0 and not allow_zero):
        raise ConfigError(f"Job '{job_id}': '{field}' must be >= {'0' if allow_zero else '1'} (got {iv}).")
    return iv


def _read_any(path: str) -> _LoadResult:
    lower = path.lower()
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read()
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {path}: {e}") from e

    if lower.endswith(".json"):
        try:
            return _LoadResult(cfg=json.loads(text), source=path)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e

    if lower.endswith(".yml") or lower.endswith(".yaml"):
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("Top-level YAML must be a mapping/object.")
        return _LoadResult(cfg=data, source=path)

    # Unknown extension: JSON, then YAML
    try:
        return _LoadResult(cfg=json.loads(text), source=path)
    except json.JSONDecodeError:
        pass
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError:
        data = None
    if isinstance(data, dict):
        return _LoadResult(cfg=data, source=path)

    raise ConfigError(f"Unsupported config format for {path}. Use .json or .yml/.yaml.")
