from __future__ import annotations

from datetime import datetime
from typing import Iterable, Iterator, List, Sequence, Tuple

from src.shared.time import ensure_utc

MAX_QUERY_ROWS = 5000
IN_FILTER_CHUNK_SIZE = 100


def window_filters(column: str, start: datetime, end: datetime) -> List[Tuple[str, str]]:
    """Half-open ``[start, end)`` predicate on a timestamp column."""
    return [
        (column, f"gte.{ensure_utc(start).isoformat()}"),
        (column, f"lt.{ensure_utc(end).isoformat()}"),
    ]


def in_filter(values: Iterable[str]) -> str:
    return f"in.({','.join(values)})"


def unique_ids(values: Iterable[str | None]) -> List[str]:
    seen: dict[str, None] = {}
    for value in values:
        if value:
            seen.setdefault(str(value), None)
    return list(seen)


def chunked(values: Sequence[str], size: int = IN_FILTER_CHUNK_SIZE) -> Iterator[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]
