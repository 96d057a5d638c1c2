# service/runner.py
from __future__ import annotations

import importlib
import json
import logging
import os
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

# -----------------------------------------------------------------------------
# Config / Environment
# -----------------------------------------------------------------------------
# Local JSONL sink used only if logging_utils cannot write
ACTIVITY_LOG_PATH = os.getenv("ACTIVITY_LOG_PATH", "/app/local/activity.log")

# -----------------------------------------------------------------------------
# Optional imports (graceful fallback)
# -----------------------------------------------------------------------------
_write_activity_log = None

try:
    _write_activity_log = importlib.import_module("service.logging_utils").write_activity_log  # type: ignore[attr-defined]
except Exception:
    _write_activity_log = None

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
log = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def now_iso() -> str:
    return datetime.now(timezone.utc).astimezone().isoformat(timespec="seconds")


def _maybe_bool(v: Any) -> Any:
    if isinstance(v, str):
        low = v.strip().lower()
        if low in ("true", "t", "yes", "y", "1"):
            return True
        if low in ("false", "f", "no", "n", "0"):
            return False
    return v


def _maybe_number(v: Any) -> Any:
    if isinstance(v, str):
        s = v.strip()
        if s and (s.isdigit() or (s.startswith("-") and s[1:].isdigit())):
            return int(s)
        try:
            return float(s)
        except ValueError:
            pass
    return v


def _normalize_kwargs_types(kwargs: dict[str, object] | None) -> dict[str, object]:
    """
    Normalize job kwargs right before module.run(**kwargs):

      • Keys ending with "_env": the string value is an ENV VAR NAME; it is
        replaced with os.getenv(<name>, "") and not coerced further.

      • Everything else: strings that look like JSON ({...} or [...]) are
        parsed, then common bool/number string forms are coerced. Non-strings
        pass through unchanged.
    """
    if not kwargs:
        return {}

    normalized: dict[str, object] = {}
    for k, v in kwargs.items():
        if isinstance(k, str) and k.endswith("_env") and isinstance(v, str):
            normalized[k] = os.getenv(v.strip(), "")
            continue

        if isinstance(v, str):
            s = v.strip()
            if (s.startswith("{") and s.endswith("}")) or (s.startswith("[") and s.endswith("]")):
                try:
                    normalized[k] = json.loads(s)
                    continue
                except json.JSONDecodeError:
                    pass
            normalized[k] = _maybe_number(_maybe_bool(s))
        else:
            normalized[k] = v

    return normalized


def _resolve_callable(module_path: str) -> Callable[..., Any]:
    """Import module and return its `run` callable."""
    mod = importlib.import_module(module_path)
    if not hasattr(mod, "run") or not callable(mod.run):
        raise AttributeError(f"Module {module_path!r} does not define a callable `run(**kwargs)`.")
    return mod.run  # type: ignore[no-any-return]


def _emit_activity_jsonl(record: dict[str, Any]) -> None:
    """Write a structured activity record either via logging_utils or to a JSONL file."""
    if _write_activity_log:
        try:
            _write_activity_log(record)  # type: ignore[misc]
            return
        except Exception as e:
            log.warning("logging_utils.write_activity_log failed: %s", e)
    try:
        os.makedirs(os.path.dirname(ACTIVITY_LOG_PATH), exist_ok=True)
        with open(ACTIVITY_LOG_PATH, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
    except OSError as e:
        log.error("Failed to write activity JSONL: %s", e)


@dataclass
class RunResult:
    ok: bool
    message: str
    html: str | None = None
    meta: dict[str, Any] | None = None
    subject: str | None = None


def _coerce_result(value: Any) -> RunResult:
    """
    Normalize module return into a RunResult.

    Acceptable shapes:
      - str                          -> HTML
      - None                         -> no output
      - (str, dict)                  -> HTML + meta (may include 'message', 'subject')
      - {'html': str, 'meta': dict}  -> convenience wrapper
      - dict                         -> treated as meta-only (no HTML)
    """
    if isinstance(value, dict) and "html" not in value:
        return RunResult(ok=True, message=value.get("message", "OK"), meta=value, subject=value.get("subject"))

    if isinstance(value, str):
        return RunResult(ok=True, message="OK", html=value)

    if value is None:
        return RunResult(ok=True, message="OK")

    if isinstance(value, dict) and "html" in value:
        html = value.get("html") if isinstance(value.get("html"), str) else None
        meta = value.get("meta") if isinstance(value.get("meta"), dict) else {}
        return RunResult(
            ok=True,
            message=(meta or {}).get("message", "OK"),
            html=html,
            meta=meta or None,
            subject=(meta or {}).get("subject"),
        )

    if isinstance(value, tuple) and len(value) == 2 and isinstance(value[0], str) and isinstance(value[1], dict):
        meta = value[1]
        return RunResult(
            ok=True,
            message=meta.get("message", "OK"),
            html=value[0],
            meta=meta,
            subject=meta.get("subject"),
        )

    raise TypeError("Module return must be one of: str, None, (str, dict), or {'html':..., 'meta':...}")


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------
def run_module_once(
    module: str,
    kwargs: dict[str, object] | None = None,
    trigger_type: str = "scheduled",
    job_context: dict[str, object] | None = None,  # e.g., {"job_id": "...", "module": "...", "now_iso": "..."}
    timeout_sec: int | None = None,
) -> tuple[str | None, str]:
    """
    Execute a module's run(**kwargs) once.

    Returns:
        (html_or_none, run_id)
    Raises:
        Propagates exceptions from module execution (caller/CLI will catch and log).
    """
    run_id = uuid.uuid4().hex
    started_at = now_iso()

    context: dict[str, Any] = {
        "run_id": run_id,
        "module": module,
        "trigger_type": trigger_type,
        "started_at": started_at,
    }
    if job_context:
        context.update({k: v for k, v in job_context.items() if k not in context})

    kw = _normalize_kwargs_types(kwargs)
    run_callable = _resolve_callable(module)

    # Execute with timeout in a worker thread
    result: RunResult
    exc: BaseException | None = None
    duration_ms: int | None = None

    def _invoke() -> Any:
        return run_callable(**kw)

    t0 = datetime.now()
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="runner")
    try:
        fut = pool.submit(_invoke)
        value = fut.result(timeout=timeout_sec) if timeout_sec else fut.result()
        result = _coerce_result(value)
    except FutureTimeout:
        exc = TimeoutError(f"Module run timed out after {timeout_sec}s")
        result = RunResult(ok=False, message=str(exc), meta={"timeout_sec": timeout_sec})
    except BaseException as e:
        exc = e
        result = RunResult(ok=False, message=str(e), meta={"exception_type": type(e).__name__})
    finally:
        # A timed-out run keeps its thread; do not block on it
        pool.shutdown(wait=False)
        duration_ms = int((datetime.now() - t0).total_seconds() * 1000)

    record: dict[str, Any] = {
        "ts": now_iso(),
        "run_id": run_id,
        "module": module,
        "trigger_type": trigger_type,
        "ok": result.ok,
        "message": result.message,
        "subject": result.subject,
        "duration_ms": duration_ms,
        "has_html": bool(result.html),
        "context": context,
        "kwargs": kw,
        "meta": result.meta or {},
    }
    _emit_activity_jsonl(record)

    # Re-raise so the CLI / scheduler can handle exit code and logging
    if exc:
        raise exc

    return result.html, run_id
