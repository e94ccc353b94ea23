from dataclasses import dataclass
from typing import Optional

from fastapi import Query

from src.core.limits import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT, MAX_PAGE_OFFSET
from src.services.sanitizer import to_number


def parse_positive_int(value, default: int, minimum: int = 1, maximum: Optional[int] = None) -> int:
    """Lenient query integer: anything non-finite or below ``minimum`` means ``default``."""
    number = to_number(value)
    if number is None or number < minimum:
        return default
    number = int(number)
    return min(number, maximum) if maximum is not None else number


def parse_non_negative_int(value, default: int, maximum: Optional[int] = None) -> int:
    return parse_positive_int(value, default, 0, maximum)


def parse_order(value, default: str) -> str:
    other = "asc" if default == "desc" else "desc"
    return other if str(value or "").strip().lower() == other else default


@dataclass
class PageParams:
    limit: int
    offset: int
    order: str


def _page_dependency(default_limit: int, max_limit: int, default_order: str):
    def dependency(
        limit: Optional[str] = Query(None),
        offset: Optional[str] = Query(None),
        order: Optional[str] = Query(None),
    ) -> PageParams:
        return PageParams(
            limit=parse_positive_int(limit, default_limit, 1, max_limit),
            offset=parse_non_negative_int(offset, 0, MAX_PAGE_OFFSET),
            order=parse_order(order, default_order),
        )

    return dependency


# Списки истории, избранного и архива: новые сверху
page_params = _page_dependency(DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT, "desc")
