"""Limit/offset pages for list endpoints.

Stores are asked for one row more than the page holds; the extra row only
tells whether another page exists and is never returned.
"""

from typing import Generic, Sequence, TypeVar

from pydantic import BaseModel

T = TypeVar("T")

DEFAULT_LIMIT = 50
MAX_LIMIT = 200


class Page(BaseModel, Generic[T]):
    items: list[T]
    limit: int
    offset: int
    has_more: bool = False


def clamp(limit: int, offset: int, max_limit: int = MAX_LIMIT) -> tuple[int, int]:
    return max(1, min(limit, max_limit)), max(0, offset)


def build_page(rows: Sequence[T], limit: int, offset: int) -> Page[T]:
    """Turn a ``limit + 1`` fetch into a page."""
    return Page(items=list(rows[:limit]), limit=limit, offset=offset, has_more=len(rows) > limit)
