from __future__ import annotations

from typing import Any

from .base import ExtractionAdapter

# kind -> adapter class, filled by the @register decorator at import time
_ADAPTERS: dict[str, type[ExtractionAdapter]] = {}


def register(cls: type[ExtractionAdapter]) -> type[ExtractionAdapter]:
    """Class decorator: make an adapter available under its `kind`."""
    kind = (getattr(cls, "kind", "") or "").strip().lower()
    if not kind:
        raise ValueError(f"Cannot register adapter {cls!r}: missing/empty 'kind'.")
    if not cls.item_candidates.selectors:
        raise ValueError(f"Adapter {kind!r} declares no item selector candidates.")
    existing = _ADAPTERS.get(kind)
    if existing is not None and existing is not cls:
        raise ValueError(f"Adapter kind {kind!r} already registered to {existing!r}.")
    _ADAPTERS[kind] = cls
    return cls


def get(kind: str) -> type[ExtractionAdapter]:
    """Adapter class for `kind` (case-insensitive); KeyError if unknown."""
    key = (kind or "").strip().lower()
    try:
        return _ADAPTERS[key]
    except KeyError:
        raise KeyError(f"No adapter registered for kind {kind!r}; known: {sorted(_ADAPTERS)}") from None


def create(kind: str, **kwargs: Any) -> ExtractionAdapter:
    """Instantiate the adapter for `kind` (platform/start_url overrides pass through)."""
    return get(kind)(**kwargs)


def kinds() -> list[str]:
    return sorted(_ADAPTERS)
