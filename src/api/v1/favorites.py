from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from src.api.dependencies.auth import get_board_store, get_current_user
from src.api.dependencies.pagination import PageParams, page_params
from src.core.errors import bad_request
from src.services.board_ops import paginate
from src.services.board_store import BoardStore
from src.services.sanitizer import parse_favorites_status_filter

router = APIRouter(prefix="/favorites", tags=["favorites"])


@router.get("")
async def list_favorites(
    status: Optional[str] = Query(None),
    page: PageParams = Depends(page_params),
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    """
    Favourite cards in board order

    Column cards come first in column order, then floating cards by position,
    then cards found nowhere else; ``order=desc`` reverses the whole list.
    """
    try:
        status_filter = parse_favorites_status_filter(status)
    except ValueError:
        raise bad_request("INVALID_FAVORITES_STATUS")

    entries, version = await store.list_favorites(current_user["id"], page.order, status_filter)
    favorites, pagination = paginate(entries, page.offset, page.limit, page.order)
    return {
        "ok": True,
        "favorites": favorites,
        "favoritesCount": len(entries),
        "pagination": pagination,
        "filters": {"status": status_filter or "all"},
        "version": version,
    }
