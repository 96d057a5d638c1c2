# service/scheduler.py
"""
APScheduler wiring for opportunity-harvest jobs.

Every configured job runs one module through ``runner.run_module_once``.
Jobs that point at the same opportunities store take turns: a harvest, merge
or compact job that finds its store busy is skipped and logged, never queued
behind the running one. When a run produces an HTML report and a report
directory is configured, the report is archived there as
``<job_id>-<run_id>.html``.
"""

from __future__ import annotations

import logging
import os
import threading
import time as _time
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from datetime import tzinfo as _dt_tzinfo
from typing import Any
from zoneinfo import ZoneInfo

import pytz
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from modules.opportunity_harvest.lib.config import DEFAULT_SQLITE_PATH

from . import config_schema, runner
from .logging_utils import write_activity_log, write_error_log

LOG = logging.getLogger(__name__)

HARVEST_MODULE = "modules.opportunity_harvest"
TRIGGER_KINDS = ("interval", "cron", "date", "daily_time")

_STORE_LOCKS: dict[str, threading.Lock] = {}
_STORE_LOCKS_GUARD = threading.Lock()


# ---- Internal structures ----------------------------------------------------


@dataclass(frozen=True, slots=True)
class JobSpec:
    id: str
    trigger: Any  # "apscheduler.triggers.base.BaseTrigger"
    module: str
    kwargs: dict[str, Any]
    timeout_sec: int | None
    max_instances: int
    coalesce: bool
    misfire_grace_time: int | None
    summary: str | None
    op: str | None = None
    store_path: str | None = None
    report_dir: str | None = None


# ---- Public controller ------------------------------------------------------


class SchedulerController:
    """
    A small façade around APScheduler so the CLI can manage lifecycle cleanly.
    """

    def __init__(self, scheduler: BackgroundScheduler, specs: list[JobSpec] | None = None) -> None:
        self._scheduler = scheduler
        self._specs = {s.id: s for s in specs or []}
        self._stopped_evt = threading.Event()

    def stop(self) -> None:
        """Shut down APScheduler; in-flight harvests are allowed to finish."""
        if self._scheduler.running:
            LOG.info("Shutting down scheduler...")
            self._scheduler.shutdown(wait=False)
        self._stopped_evt.set()
        LOG.info("Scheduler shut down complete.")

    def join(self, timeout: float | None = None) -> bool:
        """
        Block until the scheduler is fully stopped (or timeout).
        Returns True if stopped before timeout, else False.
        """
        return self._stopped_evt.wait(timeout=timeout)

    def get_job_ids(self) -> Iterable[str]:
        return (job.id for job in self._scheduler.get_jobs())

    def run_now(self, job_id: str) -> str:
        """Run a registered job immediately in the calling thread."""
        spec = self._specs.get(job_id)
        if spec is None:
            raise KeyError(f"unknown job id: {job_id!r}")
        return run_job(spec)


# ---- Module API -------------------------------------------------------------


def start(config_path: str | None = None) -> SchedulerController:
    """
    Load configuration, build an APScheduler instance, add jobs, and start.

    APScheduler 3.x prefers a pytz scheduler timezone; individual triggers
    are built with zoneinfo and coerced by APScheduler.
    """
    cfg = config_schema.load_config(config_path)
    tz = resolve_timezone(cfg)
    report_dir = cfg.get("report_dir") or os.getenv("REPORT_DIR") or None

    job_defaults = {"coalesce": True, "max_instances": 1}
    scheduler = BackgroundScheduler(
        timezone=tz,
        job_defaults=job_defaults,
        executors={"default": ThreadPoolExecutor(_int_or(cfg.get("executor_workers"), 10))},
        jobstores={"default": MemoryJobStore()},
    )

    specs: list[JobSpec] = []
    for raw in cfg.get("jobs", []):
        try:
            spec = make_job_spec(raw, job_defaults, tz=tz, report_dir=report_dir)
        except (ValueError, KeyError) as e:
            LOG.error("Skipping job due to config error: %s (%r)", e, raw)
            write_error_log({"source": "scheduler", "event": "job_config", "job": raw, "error": repr(e)})
            continue
        _add_job(scheduler, spec)
        specs.append(spec)

    scheduler.start()
    LOG.info("Scheduler started with %d job(s).", len(scheduler.get_jobs()))
    return SchedulerController(scheduler, specs)


def make_job_spec(
    raw: dict[str, Any],
    job_defaults: dict[str, Any] | None = None,
    *,
    tz: Any = None,
    report_dir: str | None = None,
) -> JobSpec:
    """
    Convert a raw config job dict into a JobSpec with a built trigger.

    The trigger may be nested under "trigger" or given at the top level of
    the job. Harvest-module jobs also carry their op and the resolved path
    of the store they write to.
    """
    defaults = job_defaults or {}
    module = _require(raw, "module")
    jid = str(raw.get("id") or raw.get("name") or module)
    kwargs = dict(raw.get("kwargs") or {})

    container = raw.get("trigger")
    if container is None:
        container = {k: raw[k] for k in TRIGGER_KINDS if k in raw}
    trigger = _build_trigger(container, str(tz) if tz is not None else None)

    op = store_path = None
    if module == HARVEST_MODULE:
        op = str(kwargs.get("op") or "harvest")
        store_path = os.path.abspath(str(kwargs.get("sqlite_path") or os.getenv("SQLITE_PATH") or DEFAULT_SQLITE_PATH))

    return JobSpec(
        id=jid,
        trigger=trigger,
        module=module,
        kwargs=kwargs,
        timeout_sec=_int_or(raw.get("timeout_sec"), None),
        max_instances=_int_or(raw.get("max_instances"), defaults.get("max_instances", 1)),
        coalesce=bool(raw.get("coalesce", defaults.get("coalesce", True))),
        misfire_grace_time=_int_or(raw.get("misfire_grace_time"), None),
        summary=raw.get("summary") or raw.get("description"),
        op=op,
        store_path=store_path,
        report_dir=report_dir,
    )


def run_job(spec: JobSpec) -> str:
    """
    Run one job through the runner.

    Returns "ok", "error" or "busy" (another job holds the same store).
    """
    lock = _store_lock(spec.store_path) if spec.store_path else None
    if lock is not None and not lock.acquire(blocking=False):
        LOG.warning("Job[%s] skipped: store %s is busy", spec.id, spec.store_path)
        _write_activity(spec, status="busy", duration_s=0.0)
        return "busy"

    started = _time.monotonic()
    LOG.info("Job[%s] starting (module=%s, op=%s)", spec.id, spec.module, spec.op)
    try:
        html, run_id = runner.run_module_once(
            spec.module,
            kwargs=dict(spec.kwargs),
            timeout_sec=spec.timeout_sec,
            trigger_type="scheduled",
            job_context=_build_job_context(spec),
        )
    except Exception as e:
        LOG.exception("Job[%s] raised an exception.", spec.id)
        _write_activity(spec, status="error", duration_s=_time.monotonic() - started, error=repr(e))
        return "error"
    finally:
        if lock is not None:
            lock.release()

    duration = _time.monotonic() - started
    report_path = _archive_report(spec, html, run_id) if html else None
    LOG.info("Job[%s] finished in %.3fs (report=%s)", spec.id, duration, report_path or "none")
    _write_activity(spec, status="ok", duration_s=duration, run_id=run_id, report_path=report_path)
    return "ok"


def preview_trigger(trigger, tz, count: int = 6, start=None) -> list[datetime]:
    """
    Next `count` fire times of a trigger.

    With `start`, the lookup is seeded as if the trigger last fired at `start`;
    without it, the first lookup asks for the real next run (so one-shot date
    triggers still show their run date). `now` moves 1µs past each hit.
    """
    now = start or datetime.now(tz=tz)
    prev = start
    times = []
    for _ in range(count):
        nxt = trigger.get_next_fire_time(prev, now)
        if nxt is None:
            break
        times.append(nxt)
        prev = nxt
        now = nxt + timedelta(microseconds=1)
    return times


# ---- Triggers ---------------------------------------------------------------


def _build_trigger(trig_def: dict[str, Any], tz: str | None) -> Any:
    """
    Build an APScheduler trigger from a dict.

    Supported shapes:
      {"interval": {weeks|days|hours|minutes|seconds, jitter?, start_date?, end_date?, timezone?}}
      {"cron":     {second?, minute?, hour?, day?, day_of_week?, month?, jitter?, start_date?, end_date?, timezone?}}
      {"cron":     "*/15 * * * *"}
      {"date":     {"run_at": ISO|epoch|datetime, timezone?}} or a bare scalar
      {"daily_time": {"time": "HH:MM[:SS]" | [...], day_of_week?, timezone?}}

    A block's own 'timezone' wins over the scheduler tz; a naive
    'date.run_at' is read in the scheduler tz.
    """
    if not isinstance(trig_def, dict):
        raise ValueError("trigger spec must be a dict")

    present = [k for k in TRIGGER_KINDS if trig_def.get(k) is not None]
    if len(present) != 1:
        raise ValueError("exactly one of {'interval','cron','date','daily_time'} must be provided")
    kind = present[0]
    builder = {
        "interval": _interval_trigger,
        "cron": _cron_trigger,
        "date": _date_trigger,
        "daily_time": _daily_time_trigger,
    }[kind]
    return builder(trig_def[kind], _tz(tz))


def _tz(z: Any):
    if not z:
        return None
    if isinstance(z, _dt_tzinfo):
        return z
    return ZoneInfo(str(z))


def _check_fields(kind: str, spec: dict[str, Any], allowed: set[str]) -> None:
    unknown = set(spec) - allowed
    if unknown:
        raise ValueError(f"{kind} has unknown field(s): {sorted(unknown)}")


def _interval_trigger(spec: Any, default_tz) -> IntervalTrigger:
    if not isinstance(spec, dict):
        raise ValueError("interval must be an object with time fields")
    units = ("weeks", "days", "hours", "minutes", "seconds")
    _check_fields("interval", spec, {*units, "jitter", "timezone", "start_date", "end_date"})

    def _non_negative(name: str) -> int:
        try:
            v = int(spec.get(name, 0))
        except (TypeError, ValueError) as err:
            raise ValueError(f"interval.{name} must be an integer") from err
        if v < 0:
            raise ValueError(f"interval.{name} must be >= 0")
        return v

    amounts = {u: _non_negative(u) for u in units}
    kwargs: dict[str, Any] = {u: v for u, v in amounts.items() if v}
    if not kwargs:
        raise ValueError("interval must be greater than 0 (provide at least one nonzero time field)")
    jitter = _non_negative("jitter")
    if jitter:
        kwargs["jitter"] = jitter
    for bound in ("start_date", "end_date"):
        if bound in spec:
            kwargs[bound] = spec[bound]
    return IntervalTrigger(timezone=_tz(spec.get("timezone")) or default_tz, **kwargs)


def _cron_trigger(spec: Any, default_tz) -> CronTrigger:
    if isinstance(spec, str):
        fields = spec.split()
        if len(fields) not in (5, 6):
            raise ValueError(f"cron string must have 5 or 6 fields (got {len(fields)}): {spec!r}")
        return CronTrigger.from_crontab(spec, timezone=default_tz)
    if not isinstance(spec, dict):
        raise ValueError("cron must be a crontab string or an object")
    _check_fields(
        "cron",
        spec,
        {"second", "minute", "hour", "day", "day_of_week", "month", "timezone", "start_date", "end_date", "jitter"},
    )
    return CronTrigger(
        second=spec.get("second", 0),
        minute=spec.get("minute", 0),
        hour=spec.get("hour", 0),
        day=spec.get("day"),
        day_of_week=spec.get("day_of_week"),
        month=spec.get("month"),
        start_date=spec.get("start_date"),
        end_date=spec.get("end_date"),
        jitter=spec.get("jitter"),
        timezone=_tz(spec.get("timezone")) or default_tz,
    )


def _date_trigger(spec: Any, default_tz) -> DateTrigger:
    if isinstance(spec, dict):
        run_at = spec.get("run_at")
        tzinfo = _tz(spec.get("timezone")) or default_tz
    else:
        run_at, tzinfo = spec, default_tz
    if run_at is None:
        raise ValueError("date trigger requires 'run_at' (or non-empty scalar value)")

    if isinstance(run_at, datetime):
        dt = run_at if run_at.tzinfo else run_at.replace(tzinfo=tzinfo)
    elif isinstance(run_at, (int, float)):
        dt = datetime.fromtimestamp(run_at, tz=tzinfo or timezone.utc)
    else:
        try:
            dt = datetime.fromisoformat(str(run_at).replace("Z", "+00:00"))
        except ValueError as e:
            raise ValueError(f"Invalid date.run_at: {run_at!r}") from e
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=tzinfo)
    return DateTrigger(run_date=dt, timezone=dt.tzinfo or tzinfo)


def _parse_clock(s: str) -> tuple[int, int, int]:
    parts = s.split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"daily_time.time must be 'HH:MM' or 'HH:MM:SS', got {s!r}")
    try:
        hh, mm, ss = int(parts[0]), int(parts[1]), int(parts[2]) if len(parts) == 3 else 0
    except ValueError as err:
        raise ValueError(f"daily_time.time must contain integers: {s!r}") from err
    time(hh, mm, ss)  # range check
    return hh, mm, ss


def _daily_time_trigger(spec: Any, default_tz):
    """One CronTrigger per distinct clock time; several are OR-ed (never cross-multiplied)."""
    if not isinstance(spec, dict):
        raise ValueError("daily_time must be an object")
    _check_fields("daily_time", spec, {"time", "day_of_week", "timezone"})

    times = spec.get("time")
    if times is None:
        raise ValueError("daily_time requires 'time'")
    if isinstance(times, str):
        times = [times]
    if not isinstance(times, Iterable):
        raise ValueError("daily_time.time must be a string or list of strings")

    tzinfo = _tz(spec.get("timezone")) or default_tz
    triggers = [
        CronTrigger(second=s, minute=m, hour=h, day_of_week=spec.get("day_of_week"), timezone=tzinfo)
        for h, m, s in sorted({_parse_clock(str(t)) for t in times})
    ]
    if not triggers:
        raise ValueError("daily_time requires at least one time")
    return triggers[0] if len(triggers) == 1 else OrTrigger(triggers)


# ---- Helpers ----------------------------------------------------------------


def resolve_timezone(cfg: dict[str, Any]):
    """pytz timezone from config['timezone'], then env TZ, else UTC."""
    tz_name = cfg.get("timezone") or os.getenv("TZ") or "UTC"
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        LOG.warning("Falling back to UTC timezone (invalid tz '%s')", tz_name)
        return pytz.UTC


def _store_lock(path: str) -> threading.Lock:
    with _STORE_LOCKS_GUARD:
        return _STORE_LOCKS.setdefault(path, threading.Lock())


def _add_job(scheduler: BackgroundScheduler, spec: JobSpec) -> None:
    scheduler.add_job(
        func=run_job,
        args=[spec],
        trigger=spec.trigger,
        id=spec.id,
        max_instances=spec.max_instances,
        coalesce=spec.coalesce,
        misfire_grace_time=spec.misfire_grace_time,
        replace_existing=True,
    )

    if os.getenv("SCHEDULER_PREVIEW") == "1":
        upcoming = preview_trigger(spec.trigger, scheduler.timezone, count=int(os.getenv("SCHEDULER_PREVIEW_COUNT", "6")))
        LOG.info("PREVIEW[%s]: %s", spec.id, ", ".join(t.isoformat() for t in upcoming) or "(none)")

    job = scheduler.get_job(spec.id)
    nrt = getattr(job, "next_run_time", None)
    LOG.info(
        "Registered job[%s] (module=%s, op=%s, store=%s) next_run_time=%s",
        spec.id,
        spec.module,
        spec.op,
        spec.store_path,
        nrt.isoformat() if nrt else None,
    )


def _archive_report(spec: JobSpec, html: str, run_id: str) -> str | None:
    if not spec.report_dir:
        return None
    path = os.path.join(spec.report_dir, f"{spec.id}-{run_id}.html")
    try:
        os.makedirs(spec.report_dir, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(html)
    except OSError as e:
        LOG.error("Job[%s] could not archive report to %s: %s", spec.id, path, e)
        write_error_log({"source": "scheduler", "event": "report_archive", "job_id": spec.id, "error": repr(e)})
        return None
    return path


def _write_activity(spec: JobSpec, status: str, duration_s: float, **extra: Any) -> None:
    """Best-effort activity record for one job run."""
    fields = {
        "job_id": spec.id,
        "module": spec.module,
        "op": spec.op,
        "store": spec.store_path,
        "status": status,
        "duration_ms": int(duration_s * 1000),
        "summary": spec.summary,
        **extra,
    }
    try:
        write_activity_log({"ts": runner.now_iso(), "source": "scheduler", "event": "job_run", "fields": fields})
    except OSError:
        LOG.debug("write_activity_log failed for job[%s]", spec.id, exc_info=True)


def _require(d: dict[str, Any], key: str) -> Any:
    if key not in d or d[key] in (None, ""):
        raise ValueError(f"Missing required key: {key}")
    return d[key]


def _int_or(v: Any, default: int | None) -> int | None:
    """Return int(v) or default if v is None/invalid (lenient for config)."""
    try:
        return int(v) if v is not None else default
    except (TypeError, ValueError):
        return default


def _build_job_context(spec: JobSpec) -> dict:
    ctx = {
        "job_id": spec.id,
        "module": spec.module,
        "now_iso": datetime.now(timezone.utc).isoformat(),
    }
    if spec.op:
        ctx["op"] = spec.op
    return ctx
