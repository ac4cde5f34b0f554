"""
Query helpers shared by the services.

PostgREST caps a response at 1000 rows, so large reads are paged with
.range(); long id lists are split so .in_() filters keep the URL short.
"""

import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

PAGE_SIZE = 1000


def fetch_all_rows(build_query: Callable[[], Any], page_size: int = PAGE_SIZE) -> List[Dict]:
    """
    Read every row of a query by paging with .range().

    Args:
        build_query: Returns a fresh filtered (and ordered) select builder
        page_size: Rows per request

    Returns:
        All rows
    """
    rows: List[Dict] = []
    offset = 0
    while True:
        response = build_query().range(offset, offset + page_size - 1).execute()
        batch = response.data or []
        rows.extend(batch)
        if len(batch) < page_size:
            return rows
        offset += page_size


def chunked(items: Sequence, size: int) -> Iterator[List]:
    items = list(items)
    for start in range(0, len(items), size):
        yield items[start:start + size]


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a store timestamp; naive values are taken as UTC"""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def round_half_up(value: float, digits: int = 0) -> float:
    """Round half away from zero (Python's round() is banker's rounding)"""
    factor = 10 ** digits
    scaled = abs(value) * factor
    rounded = math.floor(scaled + 0.5 + 1e-9) / factor
    return math.copysign(rounded, value) if value else 0.0
