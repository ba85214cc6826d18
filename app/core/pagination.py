"""Pagination helpers."""

from typing import Any, Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")

MAX_PAGE_SIZE = 200


class Page(BaseModel, Generic[T]):
    items: list[T]
    limit: int
    offset: int
    total: int | None = None

    @property
    def has_more(self) -> bool:
        return self.total is not None and self.offset + len(self.items) < self.total


def paginate(limit: int, offset: int, max_limit: int = MAX_PAGE_SIZE) -> tuple[int, int]:
    """Clamp limit/offset; return (limit, offset)."""
    limit = max(1, min(limit, max_limit))
    offset = max(0, offset)
    return limit, offset


def page_payload(page: Page[Any], key: str = "items") -> dict[str, Any]:
    """Render a page the way list endpoints return them: items under `key` plus paging info."""
    return {
        key: page.items,
        "limit": page.limit,
        "offset": page.offset,
        "total": page.total,
        "has_more": page.has_more,
    }
