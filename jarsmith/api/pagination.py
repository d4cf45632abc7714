"""Pagination helpers for the HTTP API."""

from __future__ import annotations

from typing import Final

MIN_PAGE_LIMIT: Final[int] = 1
DEFAULT_PAGE_LIMIT: Final[int] = 50
MAX_PAGE_LIMIT: Final[int] = 500

DEFAULT_PAGE_OFFSET: Final[int] = 0
MIN_PAGE_OFFSET: Final[int] = 0


def normalize_pagination(limit: int, offset: int, *, max_limit: int = MAX_PAGE_LIMIT) -> tuple[int, int]:
    """Clamp limit/offset values into the supported range."""

    max_limit_i = int(max_limit) if int(max_limit) > 0 else MAX_PAGE_LIMIT
    limit_i = max(MIN_PAGE_LIMIT, min(int(limit), max_limit_i))
    offset_i = max(MIN_PAGE_OFFSET, int(offset))
    return limit_i, offset_i


def next_offset(*, offset: int, returned: int, total: int) -> int | None:
    """Return the offset of the following page, or None on the last page."""

    following = offset + returned
    return following if returned and following < total else None
