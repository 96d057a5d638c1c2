from __future__ import annotations

import html
import re
from datetime import datetime, timezone
from typing import Any

_HTML_ESCAPE_QUOTE = True  # keep quotes escaped for attributes
_WS_RE = re.compile(r"\s+")


def esc(s: str | None) -> str:
    """
    Escape text for HTML contexts (titles, URLs). Do NOT wrap or add tags.
    """
    if s is None:
        return ""
    return html.escape(str(s), quote=_HTML_ESCAPE_QUOTE)


def truthy(v: Any) -> bool:
    """
    Normalize common truthy inputs from env/kwargs.
    Accepts bools or strings like: '1', 'true', 'yes', 'on'.
    """
    if isinstance(v, bool):
        return v
    if v is None:
        return False
    if isinstance(v, (int, float)):
        return v != 0
    s = str(v).strip().lower()
    return s in {"1", "true", "yes", "on", "y", "t"}


def now_iso() -> str:
    """
    UTC ISO-8601 timestamp with 'Z' suffix.
    """
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def clean_text(s: Any) -> str:
    """Collapse whitespace runs and strip; None -> ''."""
    if s is None:
        return ""
    return _WS_RE.sub(" ", str(s)).strip()


def rolling_hash(text: str) -> str:
    """
    Cheap order-sensitive 32-bit string hash (h*31 + c), rendered as hex.
    Collisions are fine: this is only used to notice that text changed.
    """
    h = 0
    for ch in text:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 1 << 32
    return format(h, "x") if h >= 0 else "-" + format(-h, "x")
