from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status

from src.api.dependencies.auth import get_board_store, get_current_user
from src.api.dependencies.pagination import PageParams, page_params
from src.core.errors import bad_request
from src.schemas.board import HistoryAppend
from src.services.board_ops import page_info
from src.services.board_store import BoardStore
from src.services.sanitizer import parse_history_kind_filter

# Create router
router = APIRouter(prefix="/history", tags=["history"])


@router.get("")
async def list_history(
    kind: Optional[str] = Query(None),
    page: PageParams = Depends(page_params),
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    """
    Board history, newest first by default, optionally filtered by kind
    """
    try:
        kind_filter = parse_history_kind_filter(kind)
    except ValueError:
        raise bad_request("INVALID_HISTORY_KIND")

    entries, total = await store.list_history(current_user["id"], kind_filter, page.order, page.offset, page.limit)
    return {
        "ok": True,
        "entries": entries,
        "historyCount": total,
        "pagination": page_info(page.limit, page.offset, len(entries), total, page.order),
        "filters": {"kind": kind_filter or "all"},
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def append_history(
    body: HistoryAppend,
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    """
    Prepend a client-side history entry (restore from the kiosk, for example)
    """
    result = await store.append_history(current_user["id"], body.entry)
    return {"ok": True, **result}


@router.delete("")
async def clear_history(
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    result = await store.clear_history(current_user["id"])
    return {"ok": True, **result}


@router.delete("/{entry_id}")
async def delete_history_entry(
    entry_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    result = await store.delete_history_entry(current_user["id"], entry_id)
    return {"ok": True, **result}
