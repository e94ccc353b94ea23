"""In-memory board mutations shared by both store backends.

The functions work on sanitised board dicts (see ``sanitize_board_state``)
and keep the placement invariant: a card id sits in exactly one column or in
the floating map. History texts are produced here so both backends log the
same wording.
"""
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from src.core.errors import ApiError, bad_request, not_found
from src.core.limits import (
    CARD_URGENCY_LEVELS,
    COLUMN_IDS,
    DEFAULT_CARD_URGENCY,
    MAX_BULK_OPERATIONS,
    MAX_CARD_DESCRIPTION_LENGTH,
    MAX_CARD_TITLE_LENGTH,
    MAX_HISTORY_ENTRIES,
    REPEATED_DELETE_ERROR_TEXT,
)
from src.services.sanitizer import (
    clamp_index,
    column_title,
    display_card_title,
    format_elapsed_hms,
    get_card_position,
    sanitize_card_favorite,
    sanitize_card_urgency,
    sanitize_history_entry,
    sanitize_text,
    to_number,
)

QUEUE_FALLBACK_TITLE = "Очередь"


# --- request validation -----------------------------------------------------------

def parse_column_id(value, default: Optional[str] = None) -> str:
    """Column id from request input; 400 ``INVALID_COLUMN`` when unknown."""
    if value is None and default is not None:
        return default
    column_id = sanitize_text(value, 16)
    if column_id not in COLUMN_IDS:
        raise bad_request("INVALID_COLUMN")
    return column_id


def parse_target_index(value) -> Optional[int]:
    """Optional insert position; None means "append to the end"."""
    if value is None:
        return None
    number = to_number(value)
    if number is None or isinstance(value, bool):
        raise bad_request("INVALID_INDEX")
    return int(number)


def parse_urgency(value, default: str = DEFAULT_CARD_URGENCY) -> str:
    if value is None:
        return default
    urgency = sanitize_card_urgency(value)
    if urgency is None:
        raise bad_request("INVALID_URGENCY", allowed=list(CARD_URGENCY_LEVELS))
    return urgency


def parse_expected_version(value) -> Optional[int]:
    """``expectedVersion`` of a board write; None when absent, 400 when not a version."""
    if value is None or value == "":
        return None
    number = to_number(value)
    if number is None or number < 0 or isinstance(value, bool):
        raise bad_request("INVALID_BOARD_VERSION")
    return int(number)


def normalize_card_id(value) -> Optional[str]:
    card_id = sanitize_text(value, 128)
    return card_id or None


def parse_bulk_operations(raw, error_code: str) -> List[Any]:
    if not isinstance(raw, list) or not raw:
        raise bad_request(error_code)
    if len(raw) > MAX_BULK_OPERATIONS:
        raise bad_request("TOO_MANY_OPERATIONS", max=MAX_BULK_OPERATIONS)
    return raw


def card_not_found(card_id: Optional[str] = None, **extra):
    if card_id is not None:
        extra["cardId"] = card_id
    return not_found("CARD_NOT_FOUND", **extra)


def repeated_delete():
    return not_found(REPEATED_DELETE_ERROR_TEXT)


# --- timer and history text ------------------------------------------------------

def apply_doing_transition(card: Dict[str, Any], from_column: Optional[str], to_column: str, now: int) -> int:
    """Update the doing timer for a move and return the elapsed delta, if any."""
    delta = 0
    if from_column == "doing" and to_column != "doing":
        started = card.get("doingStartedAt")
        if started is not None:
            delta = max(0, now - int(started))
        card["doingTotalMs"] = int(card.get("doingTotalMs") or 0) + delta
        card["doingStartedAt"] = None
    elif to_column == "doing" and from_column != "doing":
        card["doingStartedAt"] = now
    elif to_column != "doing":
        card["doingStartedAt"] = None
    return delta


def pending_doing_delta(card: Dict[str, Any], column_id: Optional[str], now: int) -> int:
    if column_id != "doing" or card.get("doingStartedAt") is None:
        return 0
    return max(0, now - int(card["doingStartedAt"]))


def _timer_suffix(from_column: Optional[str], to_column: Optional[str], delta: int) -> str:
    if to_column == "doing" and from_column != "doing":
        return " (таймер запущен)"
    if from_column == "doing" and to_column != "doing":
        return f" (таймер +{format_elapsed_hms(delta)})" if delta > 0 else " (таймер остановлен)"
    return ""


def create_history_text(title, column_id: str) -> str:
    return f'Карточка "{display_card_title(title)}" создана в "{column_title(column_id)}"'


def move_history_text(title, from_column: Optional[str], to_column: str, delta: int) -> str:
    from_title = column_title(from_column) if from_column else QUEUE_FALLBACK_TITLE
    return (
        f'Карточка "{display_card_title(title)}" перемещена: "{from_title}" → "{column_title(to_column)}"'
        + _timer_suffix(from_column, to_column, delta)
    )


def delete_history_text(title, from_column: Optional[str], delta: int) -> str:
    text = f'Карточка "{display_card_title(title)}" удалена из "{column_title(from_column)}"'
    if from_column == "doing":
        text += f" (таймер +{format_elapsed_hms(delta)})" if delta > 0 else " (таймер остановлен)"
    return text


def make_history_entry(
    kind: str,
    text: str,
    now: int,
    card_id: Optional[str] = None,
    title=None,
    from_column: Optional[str] = None,
    to_column: Optional[str] = None,
    doing_delta_ms: int = 0,
) -> Dict[str, Any]:
    return sanitize_history_entry({
        "id": str(uuid.uuid4()),
        "at": now,
        "text": text,
        "cardId": card_id,
        "kind": kind,
        "meta": {
            "title": title,
            "fromCol": from_column,
            "toCol": to_column,
            "doingDeltaMs": doing_delta_ms,
        },
    })


def prepend_history(state: Dict[str, Any], entry: Dict[str, Any]) -> None:
    state["history"] = ([entry] + list(state.get("history") or []))[:MAX_HISTORY_ENTRIES]


# --- placement ----------------------------------------------------------------------

def detach_card(state: Dict[str, Any], card_id: str) -> Tuple[Optional[str], int]:
    """Remove ``card_id`` from its column or the floating map; returns the old position."""
    column_id, index = get_card_position(state["columns"], card_id)
    if column_id:
        state["columns"][column_id].pop(index)
    state["floatingById"].pop(card_id, None)
    return column_id, index


def insert_card(state: Dict[str, Any], column_id: str, card_id: str, index: Optional[int]) -> int:
    """Insert into a column at a clamped position (end when ``index`` is None)."""
    ids = state["columns"][column_id]
    position = len(ids) if index is None else clamp_index(index, 0, len(ids))
    ids.insert(position, card_id)
    return position


def move_card_in_state(state: Dict[str, Any], card_id: str, to_column: str, to_index: Optional[int], now: int) -> Dict[str, Any]:
    """Move one card, update its timer and status, and prepend a move entry."""
    card = state["cardsById"].get(card_id)
    if card is None:
        raise card_not_found(card_id)
    from_column, _ = detach_card(state, card_id)
    position = insert_card(state, to_column, card_id, to_index)
    delta = apply_doing_transition(card, from_column, to_column, now)
    card["status"] = to_column
    prepend_history(state, make_history_entry(
        "move",
        move_history_text(card["title"], from_column, to_column, delta),
        now,
        card_id=card_id,
        title=card["title"],
        from_column=from_column,
        to_column=to_column,
        doing_delta_ms=delta,
    ))
    return {"card": card, "fromColumnId": from_column, "toColumnId": to_column, "toIndex": position}


def delete_card_in_state(state: Dict[str, Any], card_id: str, now: int) -> Dict[str, Any]:
    """Remove one card and prepend a delete entry; comments are archived by the caller."""
    card = state["cardsById"].get(card_id)
    if card is None:
        raise repeated_delete()
    from_column, _ = detach_card(state, card_id)
    del state["cardsById"][card_id]
    delta = pending_doing_delta(card, from_column, now)
    prepend_history(state, make_history_entry(
        "delete",
        delete_history_text(card["title"], from_column, delta),
        now,
        title=card["title"],
        from_column=from_column,
        doing_delta_ms=delta,
    ))
    return {"card": card, "deletedId": card_id, "fromColumnId": from_column}


def new_card(card_id: str, title: str, description: str, images, urgency: str, column_id: str, creator, now: int) -> Dict[str, Any]:
    return {
        "id": card_id,
        "title": title,
        "description": description,
        "images": images,
        "checklist": [],
        "createdBy": creator,
        "isFavorite": False,
        "comments": [],
        "createdAt": now,
        "status": column_id,
        "urgency": urgency,
        "doingStartedAt": now if column_id == "doing" else None,
        "doingTotalMs": 0,
    }


def card_text_fields(title, description) -> Tuple[str, str]:
    return sanitize_text(title, MAX_CARD_TITLE_LENGTH), sanitize_text(description, MAX_CARD_DESCRIPTION_LENGTH)


def patch_scalar_fields(card: Dict[str, Any], patch: Dict[str, Any]) -> None:
    """Apply title/description/urgency/isFavorite from an already checked patch."""
    if "title" in patch:
        card["title"] = sanitize_text(patch["title"], MAX_CARD_TITLE_LENGTH)
    if "description" in patch:
        card["description"] = sanitize_text(patch["description"], MAX_CARD_DESCRIPTION_LENGTH)
    if "urgency" in patch:
        card["urgency"] = parse_urgency(patch["urgency"])
    if "isFavorite" in patch:
        card["isFavorite"] = sanitize_card_favorite(patch["isFavorite"])


# --- lists ----------------------------------------------------------------------------

def page_info(limit: int, offset: int, returned: int, total: int, order: str) -> Dict[str, Any]:
    has_more = offset + returned < total
    return {
        "limit": limit,
        "offset": offset,
        "returned": returned,
        "hasMore": has_more,
        "nextOffset": offset + returned if has_more else None,
        "order": order,
    }


def paginate(items: List[Any], offset: int, limit: int, order: str) -> Tuple[List[Any], Dict[str, Any]]:
    page = items[offset:offset + limit]
    return page, page_info(limit, offset, len(page), len(items), order)


def sort_history(entries: List[Dict[str, Any]], order: str) -> List[Dict[str, Any]]:
    return sorted(entries, key=lambda entry: (entry.get("at") or 0, str(entry.get("id") or "")), reverse=order != "asc")


# --- bulk operations --------------------------------------------------------------------

BulkApply = Callable[[int, Any], Awaitable[Dict[str, Any]]]


def parse_bulk_move(operation) -> Tuple[str, str, Optional[int]]:
    if not isinstance(operation, dict):
        raise bad_request("INVALID_MOVE")
    card_id = normalize_card_id(operation.get("cardId"))
    if not card_id:
        raise bad_request("INVALID_CARD_ID")
    return card_id, parse_column_id(operation.get("toColumnId")), parse_target_index(operation.get("toIndex"))


def dedupe_card_ids(raw_ids: List[Any]) -> List[Any]:
    """Drop repeated ids, keeping the first occurrence; invalid ids stay for error reporting."""
    seen = set()
    out = []
    for raw_id in raw_ids:
        card_id = normalize_card_id(raw_id) if isinstance(raw_id, (str, int)) and not isinstance(raw_id, bool) else None
        if card_id and card_id in seen:
            continue
        if card_id:
            seen.add(card_id)
        out.append(raw_id)
    return out


def _operation_card_id(operation) -> Optional[str]:
    if isinstance(operation, dict):
        operation = operation.get("cardId")
    if isinstance(operation, bool) or not isinstance(operation, (str, int)):
        return None
    return normalize_card_id(operation)


async def run_bulk(operations: List[Any], continue_on_error: bool, apply: BulkApply) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Apply operations in order.

    Without ``continue_on_error`` the first failure is re-raised with its
    ``index`` (and ``cardId``) so the caller can discard the whole batch;
    otherwise failures are collected as ``{index, error, cardId}`` items.
    """
    done = []
    errors = []
    for index, operation in enumerate(operations):
        try:
            done.append(await apply(index, operation))
        except ApiError as exc:
            item = {"index": index, "error": exc.error}
            card_id = _operation_card_id(operation)
            if card_id:
                item["cardId"] = card_id
            if not continue_on_error:
                raise ApiError(exc.status_code, exc.error, **{key: value for key, value in item.items() if key != "error"})
            errors.append(item)
    return done, errors


def bulk_result(key: str, done: List[Dict[str, Any]], errors: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"ok": not errors, "partial": bool(errors), key: done, "errors": errors}
