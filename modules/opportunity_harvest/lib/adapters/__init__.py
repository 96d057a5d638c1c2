# modules/opportunity_harvest/lib/adapters/__init__.py
from __future__ import annotations

from .base import ExtractionAdapter
from .featured import FeaturedAdapter
from .qwoted import QwotedAdapter
from .registry import create, get, kinds, register
from .sourcebottle import SourceBottleAdapter

__all__ = [
    "ExtractionAdapter",
    "FeaturedAdapter",
    "QwotedAdapter",
    "SourceBottleAdapter",
    "create",
    "get",
    "kinds",
    "register",
]
