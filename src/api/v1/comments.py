from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, status

from src.api.dependencies.auth import get_board_store, get_current_user
from src.api.dependencies.conditional import cached_json
from src.api.dependencies.pagination import PageParams, page_params, parse_non_negative_int, parse_order, parse_positive_int
from src.api.dependencies.rate_limit import COMMENT_MUTATION, rate_limited
from src.core.errors import bad_request
from src.core.limits import DEFAULT_COMMENTS_PAGE_LIMIT, MAX_CARD_COMMENTS, MAX_PAGE_OFFSET
from src.schemas.comment import CommentCreate, CommentPatch
from src.services.board_ops import page_info
from src.services.board_store import BoardStore
from src.services.comment_lifecycle import archived_comment_not_found
from src.services.etags import archive_page_etag, comments_page_etag
from src.services.sanitizer import parse_archive_reason_filter, to_int
from src.logs import debug_logger

router = APIRouter(
    prefix="/cards/{card_id}/comments",
    tags=["comments"],
)


@router.get("")
async def list_comments(
    card_id: str,
    request: Request,
    limit: Optional[str] = Query(None),
    offset: Optional[str] = Query(None),
    order: Optional[str] = Query(None),
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    """
    Live comments of a card, oldest first by default

    The page is cached by a weak ETag built from the card, the page window and
    the board version.
    """
    page_limit = parse_positive_int(limit, DEFAULT_COMMENTS_PAGE_LIMIT, 1, MAX_CARD_COMMENTS)
    page_offset = parse_non_negative_int(offset, 0, MAX_PAGE_OFFSET)
    page_order = parse_order(order, "asc")

    comments, version = await store.list_comments(current_user["id"], card_id)
    ordered = comments if page_order == "asc" else list(reversed(comments))
    page = ordered[page_offset:page_offset + page_limit]
    payload = {
        "ok": True,
        "cardId": card_id,
        "comments": page,
        "commentsCount": len(comments),
        "pagination": page_info(page_limit, page_offset, len(page), len(comments), page_order),
        "version": version,
    }
    etag = comments_page_etag(card_id, page_order, page_offset, page_limit, version)
    return cached_json(request, payload, etag)


@router.post("", status_code=status.HTTP_201_CREATED)
async def add_comment(
    card_id: str,
    body: CommentCreate,
    current_user: Dict[str, Any] = Depends(rate_limited(COMMENT_MUTATION)),
    store: BoardStore = Depends(get_board_store),
):
    """
    Add a comment; when the card goes over its limit the oldest comments are archived
    """
    result = await store.add_comment(current_user, card_id, body.text, body.images)
    if result.get("archivedCount"):
        debug_logger.debug(f"Карточка {card_id}: в архив ушло {result['archivedCount']} комментариев")
    return {"ok": True, "cardId": card_id, **result}


@router.get("/archive")
async def list_archived_comments(
    card_id: str,
    request: Request,
    reason: Optional[str] = Query(None),
    page: PageParams = Depends(page_params),
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    try:
        reason_filter = parse_archive_reason_filter(reason)
    except ValueError:
        raise bad_request("INVALID_ARCHIVE_REASON")

    entries, total = await store.list_archived_comments(
        current_user["id"], card_id, reason_filter, page.order, page.offset, page.limit
    )
    version = await store.get_version(current_user["id"])
    payload = {
        "ok": True,
        "cardId": card_id,
        "archivedComments": entries,
        "archivedCount": total,
        "pagination": page_info(page.limit, page.offset, len(entries), total, page.order),
        "filters": {"reason": reason_filter or "all"},
    }
    etag = archive_page_etag(card_id, reason_filter, page.order, page.offset, page.limit, version)
    return cached_json(request, payload, etag)


@router.post("/archive/{archive_id}/restore")
async def restore_archived_comment(
    card_id: str,
    archive_id: str,
    current_user: Dict[str, Any] = Depends(rate_limited(COMMENT_MUTATION)),
    store: BoardStore = Depends(get_board_store),
):
    """
    Bring an archived comment back; it keeps its id unless a live comment took it
    """
    number = to_int(archive_id)
    if number is None or number <= 0:
        raise archived_comment_not_found()
    result = await store.restore_archived_comment(current_user, card_id, number)
    return {"ok": True, "cardId": card_id, **result}


@router.patch("/{comment_id}")
async def edit_comment(
    card_id: str,
    comment_id: str,
    body: CommentPatch,
    current_user: Dict[str, Any] = Depends(rate_limited(COMMENT_MUTATION)),
    store: BoardStore = Depends(get_board_store),
):
    """
    Edit own comment text or images; other authors get 403 COMMENT_FORBIDDEN
    """
    patch = body.model_dump(exclude_unset=True)
    result = await store.edit_comment(current_user, card_id, comment_id, patch)
    return {"ok": True, "cardId": card_id, **result}


@router.delete("/{comment_id}")
async def delete_comment(
    card_id: str,
    comment_id: str,
    current_user: Dict[str, Any] = Depends(rate_limited(COMMENT_MUTATION)),
    store: BoardStore = Depends(get_board_store),
):
    result = await store.delete_comment(current_user, card_id, comment_id)
    return {"ok": True, "cardId": card_id, **result}
