# service/cli.py
"""
User-facing command-line entrypoints for the container.

Subcommands
-----------
serve
    - Starts the APScheduler service loop via service.scheduler.start()
    - Registers signal handlers for graceful shutdown

run MODULE [--kwargs k=v ...] [--print-html]
    - Executes a module ad-hoc via runner.run_module_once(...)
    - Displays a concise success/failure summary

harvest [--source KIND ...] [--kwargs k=v ...] [--print-html]
merge [--sqlite-path PATH] [--print-html]
compact --keep N [--sqlite-path PATH]
    - Shortcuts for `run modules.opportunity_harvest` with op=harvest/merge/compact

sources [--sqlite-path PATH] [--set NAME key=value ...]
    - Prints the per-platform display configs, optionally updating one first

activity [--component NAME] [--op OP] [--limit N] [--errors]
    - Prints today's JSONL log records, filtered

list-jobs
    - Prints configured jobs with their op, store and next fire time

validate-config
    - Loads/validates config and returns nonzero on error
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Iterable
from datetime import datetime
from types import SimpleNamespace
from typing import Any

from service import config_schema as _config_schema
from service import logging_utils as L
from service import runner as _runner
from service import scheduler as _scheduler

LOG = logging.getLogger("service.cli")

HARVEST_MODULE = "modules.opportunity_harvest"


# ----------------------------- Logging setup ---------------------------------
def _ensure_logging() -> None:
    """Initialize a reasonable logging setup if none exists yet."""
    root = logging.getLogger()
    if not root.handlers:
        level = os.getenv("LOG_LEVEL", "INFO").upper()
        logging.basicConfig(
            level=getattr(logging, level, logging.INFO),
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )


# -------------------------- Utility / glue code ------------------------------
def _parse_kv_pairs(pairs: Iterable[str], *, flag: str = "--kwargs") -> dict[str, Any]:
    """
    Parse key=value strings into a dict.
    - Values that look like JSON (true/false/null/number/object/array) are parsed.
    - Otherwise keep as raw strings.
    """
    out: dict[str, Any] = {}
    for raw in pairs:
        if "=" not in raw:
            raise argparse.ArgumentTypeError(f"{flag} item must be key=value (got {raw!r})")
        k, v = raw.split("=", 1)
        k = k.strip()
        v = v.strip()
        if not k:
            raise argparse.ArgumentTypeError(f"Invalid key in {flag} item {raw!r}")
        try:
            out[k] = json.loads(v)
        except json.JSONDecodeError:
            out[k] = v
    return out


def _print_table(rows: Iterable[tuple[str, str]], headers: tuple[str, str] = ("ID", "DETAILS")) -> None:
    """Very simple two-column table printer."""
    rows = list(rows)
    w0 = max(len(headers[0]), *(len(r[0]) for r in rows)) if rows else len(headers[0])
    w1 = max(len(headers[1]), *(len(r[1]) for r in rows)) if rows else len(headers[1])
    sep = f"+-{'-' * w0}-+-{'-' * w1}-+"
    print(sep)
    print(f"| {headers[0].ljust(w0)} | {headers[1].ljust(w1)} |")
    print(sep)
    for c0, c1 in rows:
        print(f"| {c0.ljust(w0)} | {c1.ljust(w1)} |")
    print(sep)


def _extract_jobs_from_config(cfg: dict[str, Any]) -> Iterable[tuple[str, str]]:
    """Rows for list-jobs: (id, "op @ store | next: <fire time> | summary")."""
    jobs = cfg.get("jobs") or []
    tz = _scheduler.resolve_timezone(cfg)

    out = []
    for idx, j in enumerate(jobs):
        jid = str(j.get("id") or j.get("name") or idx)
        try:
            spec = _scheduler.make_job_spec(j, tz=tz)
        except ValueError as e:
            out.append((jid, f"INVALID: {e}"))
            continue
        upcoming = _scheduler.preview_trigger(spec.trigger, tz, count=1)
        parts = [f"{spec.op} @ {spec.store_path}" if spec.op else spec.module]
        parts.append(f"next: {upcoming[0].isoformat() if upcoming else 'never'}")
        if spec.summary:
            parts.append(spec.summary)
        out.append((jid, " | ".join(parts)))
    return out


def _now_iso():
    return datetime.now().astimezone().isoformat()


def _default_sqlite_path() -> str:
    from modules.opportunity_harvest.lib.config import DEFAULT_SQLITE_PATH

    return os.getenv("SQLITE_PATH") or DEFAULT_SQLITE_PATH


# ------------------------------ Subcommands ----------------------------------
def cmd_validate_config(args: argparse.Namespace) -> int:
    try:
        cfg = _config_schema.load_config(args.config)
        _config_schema.validate(cfg)
        print("OK: configuration is valid.")
        return 0
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        LOG.exception("Configuration validation failed: %s", e)
        print(f"ERROR: configuration invalid: {e}", file=sys.stderr)
        return 1


def cmd_list_jobs(args: argparse.Namespace) -> int:
    try:
        cfg = _config_schema.load_config(args.config)
        rows = list(_extract_jobs_from_config(cfg))
        if not rows:
            print("No jobs found in config.")
            return 0
        _print_table(rows, headers=("JOB", "DETAILS"))
        return 0
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        LOG.exception("Failed to list jobs: %s", e)
        print(f"ERROR: failed to list jobs: {e}", file=sys.stderr)
        return 1


def _run_and_report(module: str, kwargs: dict[str, Any], *, print_html: bool, event: str) -> int:
    """Shared body of run/harvest/merge/compact: run once, log, print a status line."""
    start_time = time.monotonic()
    LOG.debug("Run module %s with kwargs=%s", module, kwargs)
    try:
        html, run_id = _runner.run_module_once(module=module, kwargs=kwargs, trigger_type="adhoc")
        L.write_activity_log({
            "ts": _now_iso(),
            "event": event,
            "run_id": run_id,
            "module": module,
            "trigger_type": "adhoc",
            "kwargs": kwargs,
            "duration_ms": int((time.monotonic() - start_time) * 1000),
        })

        status_line = "DONE: Module run completed."
        if html:
            status_line = "SUCCESS: HTML returned."
            if print_html:
                print("\n----- HTML OUTPUT -----\n")
                print(html)
        print(status_line)
        return 0

    except KeyboardInterrupt:
        return 130
    except Exception as e:
        print(f"FAILURE: {e}", file=sys.stderr)
        L.write_error_log({
            "ts": _now_iso(),
            "where": f"cli.{event}",
            "module": module,
            "kwargs": kwargs,
            "error": repr(e),
            "duration_ms": int((time.monotonic() - start_time) * 1000),
        })
        return 1


def cmd_run(args: argparse.Namespace) -> int:
    kwargs = _parse_kv_pairs(args.kwargs or [])
    return _run_and_report(args.module, kwargs, print_html=args.print_html, event="cli_run")


def cmd_harvest(args: argparse.Namespace) -> int:
    kwargs = _parse_kv_pairs(args.kwargs or [])
    kwargs["op"] = "harvest"
    if args.source:
        kwargs["only"] = list(args.source)
    return _run_and_report(HARVEST_MODULE, kwargs, print_html=args.print_html, event="cli_harvest")


def cmd_merge(args: argparse.Namespace) -> int:
    kwargs: dict[str, Any] = {"op": "merge", "report_all": bool(args.print_html)}
    if args.sqlite_path:
        kwargs["sqlite_path"] = args.sqlite_path
    return _run_and_report(HARVEST_MODULE, kwargs, print_html=args.print_html, event="cli_merge")


def cmd_compact(args: argparse.Namespace) -> int:
    kwargs: dict[str, Any] = {"op": "compact", "compact_keep": args.keep}
    if args.sqlite_path:
        kwargs["sqlite_path"] = args.sqlite_path
    return _run_and_report(HARVEST_MODULE, kwargs, print_html=False, event="cli_compact")


def cmd_sources(args: argparse.Namespace) -> int:
    from modules.opportunity_harvest.lib.errors import HarvestError
    from modules.opportunity_harvest.lib.merge import MergeRegistry
    from modules.opportunity_harvest.lib.store import KeyValueStore

    registry = MergeRegistry(KeyValueStore(args.sqlite_path or _default_sqlite_path()))
    try:
        if args.set:
            name, *pairs = args.set
            overrides = _parse_kv_pairs(pairs, flag="--set")
            cfg = registry.register_source(name, **overrides)
            L.write_activity_log({
                "ts": _now_iso(),
                "event": "cli_sources_set",
                "platform": name.lower(),
                "config": cfg.to_dict(),
            })
        configs = registry.get_all_source_configs()
        rows = [
            (
                name,
                f"{configs[name].display_icon} {configs[name].display_color} "
                f"priority={configs[name].priority} enabled={str(configs[name].enabled).lower()}",
            )
            for name in registry.get_all_sources()
        ]
    except (HarvestError, argparse.ArgumentTypeError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    if not rows:
        print("No sources registered yet.")
        return 0
    _print_table(rows, headers=("SOURCE", "CONFIG"))
    return 0


def cmd_activity(args: argparse.Namespace) -> int:
    """Print today's harvest log records as JSON lines, newest last."""
    try:
        records = L.read_log(
            "error" if args.errors else "activity",
            component=args.component,
            op=args.op,
            limit=args.limit,
        )
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    if not records:
        print("No matching log records today.")
        return 0
    for rec in records:
        rec.pop("_meta", None)
        print(json.dumps(rec, ensure_ascii=False, default=str))
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """
    Run the scheduler loop until a termination signal is received.
    """
    L.write_activity_log({"ts": _now_iso(), "event": "serve_start"})

    stop_event = threading.Event()
    running = SimpleNamespace(sched=None)

    def _graceful_shutdown(signum=None, frame=None):
        LOG.info("Signal %s received; initiating shutdown...", signum)
        stop_event.set()
        _safe_stop("scheduler", getattr(running, "sched", None))

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _graceful_shutdown)

    try:
        running.sched = _scheduler.start(config_path=args.config)
        LOG.info("Scheduler started: %r", running.sched)

        # Main wait loop (respond quickly to signals)
        while not stop_event.is_set():
            time.sleep(0.3)

        _safe_stop("scheduler", running.sched)
        L.write_activity_log({"ts": _now_iso(), "event": "serve_stop"})
        return 0

    except KeyboardInterrupt:
        _graceful_shutdown("KeyboardInterrupt")
        return 130
    except Exception as e:
        LOG.exception("Fatal error in serve: %s", e)
        _graceful_shutdown("UnhandledException")
        return 1


def _safe_stop(name: str, handle: Any) -> None:
    """Best-effort stop & join for a scheduler-like object."""
    if handle is None:
        return
    try:
        stop = getattr(handle, "stop", None)
        if callable(stop):
            stop()
    except Exception:  # pragma: no cover
        LOG.exception("Error stopping %s", name)

    try:
        join = getattr(handle, "join", None)
        if callable(join):
            join(timeout=10.0)
    except Exception:  # pragma: no cover
        LOG.exception("Error joining %s", name)


# ------------------------------- Argparse ------------------------------------
def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="python -m service.cli",
        description="Service command-line tools",
    )
    p.add_argument(
        "--config",
        help="Path to config file (fallbacks to CONFIG_PATH env or module default).",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    # serve
    sp = sub.add_parser("serve", help="Run the main scheduler loop.")
    sp.set_defaults(func=cmd_serve)

    # run
    sp = sub.add_parser("run", help="Execute a module ad-hoc via runner.run_module_once().")
    sp.add_argument("module", help="Module to run (e.g., modules.opportunity_harvest).")
    sp.add_argument(
        "--kwargs",
        metavar="k=v",
        nargs="*",
        help="Extra keyword arguments for the module (JSON values supported).",
    )
    sp.add_argument("--print-html", action="store_true", help="If the module returns HTML, print it to stdout.")
    sp.set_defaults(func=cmd_run)

    # harvest
    sp = sub.add_parser("harvest", help="Harvest opportunities now, then merge.")
    sp.add_argument(
        "--source",
        metavar="KIND",
        action="append",
        help="Only harvest this platform (repeatable). Default: every configured source.",
    )
    sp.add_argument("--kwargs", metavar="k=v", nargs="*", help="Extra module kwargs (JSON values supported).")
    sp.add_argument("--print-html", action="store_true", help="Print the HTML summary of new records.")
    sp.set_defaults(func=cmd_harvest)

    # merge
    sp = sub.add_parser("merge", help="Merge every platform collection into the shared one.")
    sp.add_argument("--sqlite-path", help="Store path (default $SQLITE_PATH or the module default).")
    sp.add_argument("--print-html", action="store_true", help="Print every merged record as HTML.")
    sp.set_defaults(func=cmd_merge)

    # compact
    sp = sub.add_parser("compact", help="Keep only the newest N merged records per platform.")
    sp.add_argument("--keep", type=int, required=True, metavar="N", help="Records to keep per platform.")
    sp.add_argument("--sqlite-path", help="Store path (default $SQLITE_PATH or the module default).")
    sp.set_defaults(func=cmd_compact)

    # sources
    sp = sub.add_parser("sources", help="Show (and optionally update) per-platform display configs.")
    sp.add_argument("--sqlite-path", help="Store path (default $SQLITE_PATH or the module default).")
    sp.add_argument(
        "--set",
        nargs="+",
        metavar="NAME key=value",
        help="Update a platform's config, e.g. --set featured priority=5 enabled=false",
    )
    sp.set_defaults(func=cmd_sources)

    # activity
    sp = sub.add_parser("activity", help="Show today's activity (or error) log records.")
    sp.add_argument("--component", help="Component or dotted prefix, e.g. opportunity_harvest.pagination")
    sp.add_argument("--op", help="Only records with this op (e.g. stalled, rotate, summary).")
    sp.add_argument("--limit", type=int, metavar="N", help="Only the newest N records.")
    sp.add_argument("--errors", action="store_true", help="Read the error log instead.")
    sp.set_defaults(func=cmd_activity)

    # list-jobs
    sp = sub.add_parser("list-jobs", help="Print all jobs from config.")
    sp.set_defaults(func=cmd_list_jobs)

    # validate-config
    sp = sub.add_parser("validate-config", help="Verify configuration correctness.")
    sp.set_defaults(func=cmd_validate_config)

    return p


# --------------------------------- Main --------------------------------------
def main(argv: Iterable[str] | None = None) -> int:
    _ensure_logging()
    parser = _build_parser()
    args = parser.parse_args(args=list(argv) if argv is not None else None)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
