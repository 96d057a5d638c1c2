# service/logging_utils.py
from __future__ import annotations

import contextlib
import datetime as _dt
import json
import os
import socket
from collections.abc import Iterable
from typing import Any

# ---- Configuration (env-driven, read on every write) ------------------------
#
#   LOG_DIR                 base directory for logs (default /app/local/logs)
#   ACTIVITY_LOG_PREFIX     activity file prefix (default "activity")
#   ERROR_LOG_PREFIX        error file prefix (default "error")
#   ACTIVITY_LOG_MAX_BYTES  size-based rotation threshold; <=0 disables it.
#                           Date-based rotation always applies via YYYY-MM-DD filenames.

_DEFAULT_LOG_DIR = "/app/local/logs"

# Keys/substrings to redact (case-insensitive, substring match)
_DEFAULT_REDACT_KEYS = {
    "password",
    "token",
    "apikey",
    "api_key",
    "secret",
    "authorization",
    "cookie",
    "set-cookie",
    "storage_state",
}

# Host + process metadata (fixed per-process)
_HOSTNAME = socket.gethostname()
_PID = os.getpid()


# ---- Public API --------------------------------------------------------------


def write_activity_log(record: dict[str, Any]) -> None:
    """
    Persist a single structured activity record (JSON-safe).

    May raise on unrecoverable I/O/serialization errors.
    Never mutates the passed-in dict.
    """
    _write_jsonl(_log_path_for_today(_activity_prefix()), record)


def write_error_log(record: dict[str, Any]) -> None:
    """Persist a single structured error record (JSON-safe), parallel to activity log."""
    _write_jsonl(_log_path_for_today(_error_prefix()), record)


def get_activity_log_path() -> str:
    """Return the current day's activity log path (YYYY-MM-DD.jsonl)."""
    return _log_path_for_today(_activity_prefix())


def get_error_log_path() -> str:
    return _log_path_for_today(_error_prefix())


def read_log(
    kind: str = "activity",
    *,
    component: str | None = None,
    op: str | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """
    Today's records from the activity or error log, oldest first.

    `component` matches exactly or as a dotted prefix ("opportunity_harvest"
    matches "opportunity_harvest.pagination"). `limit` keeps the newest N.
    Unparseable lines are skipped; a missing file reads as empty.
    """
    if kind not in ("activity", "error"):
        raise ValueError(f"kind must be 'activity' or 'error' (got {kind!r})")
    path = get_activity_log_path() if kind == "activity" else get_error_log_path()

    out: list[dict[str, Any]] = []
    try:
        with open(path, encoding="utf-8") as f:
            for line in f:
                try:
                    rec = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(rec, dict):
                    continue
                comp = str(rec.get("component") or "")
                if component and comp != component and not comp.startswith(component + "."):
                    continue
                if op and rec.get("op") != op:
                    continue
                out.append(rec)
    except FileNotFoundError:
        return []
    return out[-limit:] if limit else out


def redact(record: dict[str, Any], keys: set[str] | None = None) -> dict[str, Any]:
    """
    Produce a redacted deep copy of `record` by scrubbing values whose KEYS
    contain any of the substrings in `keys` (case-insensitive). Does not mutate input.
    """
    return _redact_deep(record, keys or _DEFAULT_REDACT_KEYS)


# ---- Internal helpers --------------------------------------------------------


def _log_dir() -> str:
    return os.getenv("LOG_DIR") or _DEFAULT_LOG_DIR


def _activity_prefix() -> str:
    return os.getenv("ACTIVITY_LOG_PREFIX") or "activity"


def _error_prefix() -> str:
    return os.getenv("ERROR_LOG_PREFIX") or "error"


def _max_bytes() -> int:
    try:
        return int(os.getenv("ACTIVITY_LOG_MAX_BYTES", "0"))
    except ValueError:
        return 0


def _log_path_for_today(prefix: str) -> str:
    today = _dt.date.today().isoformat()  # YYYY-MM-DD
    return os.path.join(_log_dir(), f"{prefix}-{today}.jsonl")


def _ensure_dir(path: str) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)


def _should_rotate_size(path: str) -> bool:
    max_bytes = _max_bytes()
    if max_bytes <= 0:
        return False
    try:
        return os.path.getsize(path) >= max_bytes
    except FileNotFoundError:
        return False


def _rotate_file_if_needed(path: str) -> None:
    """
    Rotate the current file once it exceeds ACTIVITY_LOG_MAX_BYTES. Date
    rotation is inherent via the per-day filename.
    """
    if not _should_rotate_size(path):
        return
    ts = _dt.datetime.now().strftime("%Y%m%d-%H%M%S")
    rotated = f"{path}.{ts}"
    with contextlib.suppress(FileNotFoundError):
        os.replace(path, rotated)


def _json_dumps(obj: Any) -> str:
    # default=str keeps enums/paths/datetimes from breaking a log line
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _safe_bearer_scrub(value: str) -> str:
    """
    If a string looks like an Authorization header ("Bearer <token>") or similar,
    scrub the token part. Keeps the scheme for usefulness.
    """
    lower = value.lower()
    if "bearer " in lower:
        # Preserve scheme, replace the rest.
        try:
            scheme, _ = value.split(" ", 1)
        except ValueError:
            return "***REDACTED***"
        return f"{scheme} ***REDACTED***"
    return value


def _key_matches(name: str, patterns: Iterable[str]) -> bool:
    n = name.lower()
    return any(pat in n for pat in patterns)


def _redact_deep(value: Any, patterns: Iterable[str]) -> Any:
    """
    Deep-copy and redact dict/list structures. Keys that match patterns have their
    values replaced with "***REDACTED***". Strings that look like bearer tokens are scrubbed.
    """
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in value.items():
            if isinstance(k, str) and _key_matches(k, patterns):
                out[k] = "***REDACTED***"
            else:
                out[k] = _redact_deep(v, patterns)
        return out
    if isinstance(value, list):
        return [_redact_deep(v, patterns) for v in value]
    if isinstance(value, tuple):
        return tuple(_redact_deep(v, patterns) for v in value)
    if isinstance(value, str):
        return _safe_bearer_scrub(value)
    # Primitive (int/float/bool/None) or other JSON-safe types pass through.
    return value


def _with_metadata(copy_of_record: dict[str, Any]) -> dict[str, Any]:
    """
    Add minimal immutable metadata without mutating the passed-in structure.
    """
    # Shallow copy already made by caller; we add a tiny dict to avoid clobbering.
    meta_host = copy_of_record.get("_meta", {})
    if not isinstance(meta_host, dict):
        meta_host = {}
    meta_host = {
        **meta_host,
        "host": _HOSTNAME,
        "pid": _PID,
    }
    out = dict(copy_of_record)
    out["_meta"] = meta_host
    return out


def _write_jsonl(path: str, record: dict[str, Any]) -> None:
    """
    Core writer:
      - makes a deep redacted copy
      - enriches with host/pid
      - rotates by size (optional)
      - appends a single line atomically (POSIX O_APPEND)
      - retries once on transient OSError
    """
    _ensure_dir(path)

    # Rotate by size if configured (date-based rotation happens automatically via filename).
    _rotate_file_if_needed(path)

    # Redact and add metadata; do not mutate caller's dict.
    redacted = _redact_deep(record, _DEFAULT_REDACT_KEYS)
    payload = _with_metadata(redacted)

    # Serialize first so serialization errors surface before any file ops
    data = (_json_dumps(payload) + "\n").encode("utf-8")

    # Fast, atomic append using low-level os.open with O_APPEND.
    flags = os.O_CREAT | os.O_APPEND | os.O_WRONLY

    # 0o644 typical; umask may reduce this further
    def _append_once() -> None:
        fd = os.open(path, flags, 0o644)
        try:
            os.write(fd, data)  # Single write; O_APPEND ensures atomicity on POSIX.
        finally:
            os.close(fd)

    try:
        _append_once()
    except OSError:
        # Retry once (transient issues): re-check dir and try again.
        _ensure_dir(path)
        _rotate_file_if_needed(path)
        _append_once()
