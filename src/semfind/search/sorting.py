"""Sort keys for search hits.

Each key is a plain function of one hit; ties fall back to the path so the
order is total and repeatable.
"""
from __future__ import annotations

from typing import Any, Callable

from ..models import SearchHit, SortKey

SortKeyFunc = Callable[[SearchHit], Any]

_KEYS: dict[SortKey, SortKeyFunc] = {
    SortKey.SCORE: lambda h: h.score,
    SortKey.NAME: lambda h: h.name.casefold(),
    SortKey.SIZE: lambda h: h.size,
    SortKey.MODIFIED: lambda h: h.modified_time,
    SortKey.PATH: lambda h: h.path,
}


def sort_key(key: SortKey) -> SortKeyFunc:
    return _KEYS[SortKey(key)]


def sort_hits(hits: list[SearchHit], key: SortKey = SortKey.SCORE, descending: bool = True) -> list[SearchHit]:
    # Stable two-pass sort: path first, then the primary key
    ordered = sorted(hits, key=lambda h: h.path)
    return sorted(ordered, key=sort_key(key), reverse=descending)
