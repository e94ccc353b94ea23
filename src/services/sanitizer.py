"""Normalisation of untrusted board data.

Every function here accepts arbitrary decoded JSON and returns a value that
satisfies the board invariants; malformed pieces are dropped or replaced with
defaults, nothing raises. ``sanitize_board_state`` applied to its own output
returns an equal value.
"""
import math
import posixpath
import re
import uuid
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, unquote, urlsplit

from src.core.clock import now_ms
from src.core.limits import (
    CARD_STATUSES,
    CARD_URGENCY_LEVELS,
    COLUMN_IDS,
    COLUMN_TITLES,
    COMMENT_ARCHIVE_REASONS,
    DEFAULT_CARD_URGENCY,
    HISTORY_KINDS,
    MAX_CARD_CHECKLIST_ITEMS,
    MAX_CARD_COMMENTS,
    MAX_CARD_CREATOR_LENGTH,
    MAX_CARD_DESCRIPTION_LENGTH,
    MAX_CARD_IMAGE_BYTES,
    MAX_CARD_IMAGES,
    MAX_CARD_IMAGES_TOTAL_BYTES,
    MAX_CARD_TITLE_LENGTH,
    MAX_CHECKLIST_ITEM_TEXT_LENGTH,
    MAX_COMMENT_AUTHOR_LENGTH,
    MAX_COMMENT_ID_LENGTH,
    MAX_HISTORY_ENTRIES,
    MAX_HISTORY_TEXT_LENGTH,
    MAX_IMAGE_ID_LENGTH,
    MAX_IMAGE_NAME_LENGTH,
    MAX_MEDIA_ID_LENGTH,
    MEDIA_ROUTE_PREFIX,
)
from src.services.rich_text import sanitize_comment_text

CARD_IMAGE_MIMES = ("image/png", "image/jpeg", "image/webp", "image/gif")
CARD_IMAGE_EXT_BY_MIME = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
}
CARD_IMAGE_MIME_BY_EXT = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
}

_MEDIA_ID = re.compile(r"^[a-z0-9][a-z0-9._-]*$", re.IGNORECASE)
_BASE64_PAYLOAD = re.compile(r"^[a-z0-9+/]+={0,2}$", re.IGNORECASE)
_DATA_URL = re.compile(r"^data:(image/[a-z0-9.+-]+);base64,([a-z0-9+/=]+)$", re.IGNORECASE)
_SEQUENTIAL_CARD_ID = re.compile(r"^P-(\d+)$", re.IGNORECASE)


# --- primitives -------------------------------------------------------------

def sanitize_text(value, max_length: int) -> str:
    if value is None:
        return ""
    return str(value).strip()[:max_length]


def to_number(value) -> Optional[float]:
    """Finite number from a JSON scalar, or None."""
    if value is None:
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def to_int(value) -> Optional[int]:
    number = to_number(value)
    return None if number is None else int(number)


def is_json_object(value) -> bool:
    return isinstance(value, dict)


def sanitize_card_creator(value) -> Optional[str]:
    login = sanitize_text(value, MAX_CARD_CREATOR_LENGTH)
    return login or None


def sanitize_card_favorite(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return math.isfinite(value) and value != 0
    return sanitize_text(value, 16).lower() in ("1", "true", "yes")


def sanitize_comment_author(value) -> Optional[str]:
    author = sanitize_text(value, MAX_COMMENT_AUTHOR_LENGTH)
    return author or None


def sanitize_card_urgency(value) -> Optional[str]:
    return value if isinstance(value, str) and value in CARD_URGENCY_LEVELS else None


def _timestamp(value, default: Optional[int] = None) -> int:
    number = to_int(value)
    if number is None:
        return now_ms() if default is None else default
    return max(0, number)


def by_created_at(entry: Dict[str, Any]) -> Tuple[int, str]:
    return entry["createdAt"], entry["id"]


# --- media references ---------------------------------------------------------

def normalize_media_id(value) -> Optional[str]:
    raw = sanitize_text(value, MAX_MEDIA_ID_LENGTH + 1)
    if not raw or len(raw) > MAX_MEDIA_ID_LENGTH:
        return None
    if "/" in raw or "\\" in raw:
        return None
    return raw if _MEDIA_ID.match(raw) else None


def normalize_card_image_mime(value) -> Optional[str]:
    mime = sanitize_text(value, 64).lower()
    if not mime:
        return None
    if mime == "image/jpg":
        return "image/jpeg"
    return mime if mime in CARD_IMAGE_MIMES else None


def media_mime_from_id(media_id, fallback_mime=None) -> Optional[str]:
    fallback = normalize_card_image_mime(fallback_mime)
    normalized = normalize_media_id(media_id)
    if not normalized:
        return fallback
    extension = posixpath.splitext(normalized)[1].lower()
    return CARD_IMAGE_MIME_BY_EXT.get(extension) or fallback


def media_public_url(media_id) -> Optional[str]:
    normalized = normalize_media_id(media_id)
    if not normalized:
        return None
    return MEDIA_ROUTE_PREFIX + quote(normalized, safe="")


def extract_media_id_from_url(value) -> Optional[str]:
    raw = sanitize_text(value, 4096)
    if not raw or raw.startswith("data:"):
        return None
    if raw.startswith(MEDIA_ROUTE_PREFIX):
        candidate = raw[len(MEDIA_ROUTE_PREFIX):].split("?")[0]
    else:
        path = urlsplit(raw).path
        if not path.startswith(MEDIA_ROUTE_PREFIX):
            return None
        candidate = path[len(MEDIA_ROUTE_PREFIX):]
    return normalize_media_id(unquote(candidate))


def base64_payload_bytes(value) -> int:
    clean = re.sub(r"\s+", "", "" if value is None else str(value))
    if not clean:
        return 0
    padding = 2 if clean.endswith("==") else 1 if clean.endswith("=") else 0
    return max(0, (len(clean) * 3) // 4 - padding)


def sanitize_image_base64_payload(value) -> Optional[Tuple[str, int]]:
    """``(payload, decoded_bytes)`` for a valid base64 image payload within limits."""
    payload = re.sub(r"\s+", "", "" if value is None else str(value))
    if not payload or not _BASE64_PAYLOAD.match(payload):
        return None
    size = base64_payload_bytes(payload)
    if size <= 0 or size > MAX_CARD_IMAGE_BYTES:
        return None
    return payload, size


def sanitize_image_data_url(value, mime_hint=None, max_bytes: int = MAX_CARD_IMAGE_BYTES) -> Optional[Dict[str, Any]]:
    raw = sanitize_text(value, 16 * 1024 * 1024)
    match = _DATA_URL.match(raw) if raw else None
    if not match:
        return None
    mime = normalize_card_image_mime(mime_hint if mime_hint is not None else match.group(1))
    if not mime:
        return None
    payload = match.group(2)
    size = base64_payload_bytes(payload)
    if size <= 0 or size > max_bytes:
        return None
    return {"dataUrl": f"data:{mime};base64,{payload}", "mime": mime, "bytes": size, "payload": payload}


def normalize_card_image_size(value, fallback_bytes=1) -> int:
    raw = to_number(value)
    if raw is not None and raw > 0:
        return max(1, min(int(raw), MAX_CARD_IMAGE_BYTES))
    fallback = to_number(fallback_bytes)
    if fallback is None or fallback <= 0:
        return 1
    return max(1, min(int(fallback), MAX_CARD_IMAGE_BYTES))


def _media_exists(media, media_id: str) -> bool:
    # Без хранилища ссылки принимаются как есть
    return media is None or media.exists(media_id)


def sanitize_card_images(raw, media=None, persist_data_urls: bool = False, owner_user_id=None) -> List[Dict[str, Any]]:
    """Normalise an attachment list.

    ``media`` is the media store used to check that referenced files exist and,
    with ``persist_data_urls``, to store inline ``data:`` URLs as files so the
    result only carries media references.
    """
    if not isinstance(raw, list):
        return []
    if persist_data_urls and media is None:
        raise ValueError("persist_data_urls requires a media store")

    out = []
    seen = set()
    total_bytes = 0

    for entry in raw:
        if not is_json_object(entry):
            continue
        image_id = sanitize_text(entry.get("id"), MAX_IMAGE_ID_LENGTH)
        if not image_id or image_id in seen:
            continue

        media_id = normalize_media_id(entry.get("fileId")) or extract_media_id_from_url(entry.get("dataUrl"))
        mime = media_mime_from_id(media_id, entry.get("mime"))
        payload_bytes = 0
        data_url = None

        preview_id = normalize_media_id(entry.get("previewFileId")) or extract_media_id_from_url(entry.get("previewUrl"))
        preview_mime = media_mime_from_id(preview_id, entry.get("previewMime"))
        preview_bytes = 0
        preview_url = None

        if not media_id:
            inline = sanitize_image_data_url(entry.get("dataUrl"), entry.get("mime"))
            if not inline:
                continue
            payload_bytes = inline["bytes"]
            if persist_data_urls:
                persisted = media.persist(inline["payload"], inline["mime"], owner_user_id=owner_user_id)
                if not persisted:
                    continue
                media_id = persisted.media_id
                mime = persisted.mime
                payload_bytes = persisted.size
                data_url = media_public_url(media_id)
            else:
                mime = inline["mime"]
                data_url = inline["dataUrl"]
        else:
            if not _media_exists(media, media_id):
                continue
            data_url = media_public_url(media_id)
            if not mime:
                mime = normalize_card_image_mime(entry.get("mime"))

        if not preview_id:
            inline_preview = sanitize_image_data_url(entry.get("previewUrl"), entry.get("previewMime"))
            if inline_preview:
                preview_bytes = inline_preview["bytes"]
                if persist_data_urls:
                    persisted_preview = media.persist(
                        inline_preview["payload"], inline_preview["mime"], owner_user_id=owner_user_id
                    )
                    if persisted_preview:
                        preview_id = persisted_preview.media_id
                        preview_mime = persisted_preview.mime
                        preview_bytes = persisted_preview.size
                        preview_url = media_public_url(preview_id)
                else:
                    preview_mime = inline_preview["mime"]
                    preview_url = inline_preview["dataUrl"]
        elif _media_exists(media, preview_id):
            preview_url = media_public_url(preview_id)
            if not preview_mime:
                preview_mime = normalize_card_image_mime(entry.get("previewMime"))
        else:
            preview_id = None

        if not preview_url:
            preview_id = None
            preview_mime = None

        if not mime or not data_url or (not media_id and persist_data_urls):
            continue

        size = normalize_card_image_size(entry.get("size"), payload_bytes or 1)
        if total_bytes + size > MAX_CARD_IMAGES_TOTAL_BYTES:
            continue

        seen.add(image_id)
        total_bytes += size
        out.append({
            "id": image_id,
            "fileId": media_id,
            "dataUrl": data_url,
            "mime": mime,
            "size": size,
            "name": sanitize_text(entry.get("name"), MAX_IMAGE_NAME_LENGTH),
            "createdAt": _timestamp(entry.get("createdAt")),
            "previewFileId": preview_id,
            "previewUrl": preview_url,
            "previewMime": preview_mime,
            "previewSize": normalize_card_image_size(entry.get("previewSize"), preview_bytes or 1) if preview_url else None,
        })
        if len(out) >= MAX_CARD_IMAGES:
            break

    out.sort(key=by_created_at)
    return out


def compact_card_images(images: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Reference-only form of sanitised images, as stored in relational rows."""
    out = []
    for image in images:
        file_id = normalize_media_id(image.get("fileId")) or extract_media_id_from_url(image.get("dataUrl"))
        if not file_id:
            continue
        preview_id = normalize_media_id(image.get("previewFileId")) or extract_media_id_from_url(image.get("previewUrl"))
        out.append({
            "id": image["id"],
            "fileId": file_id,
            "mime": normalize_card_image_mime(image.get("mime")) or media_mime_from_id(file_id),
            "size": normalize_card_image_size(image.get("size")),
            "name": image.get("name") or "",
            "createdAt": _timestamp(image.get("createdAt")),
            "previewFileId": preview_id,
            "previewMime": (normalize_card_image_mime(image.get("previewMime")) or media_mime_from_id(preview_id)) if preview_id else None,
            "previewSize": normalize_card_image_size(image.get("previewSize")) if preview_id else None,
        })
    return out


# --- comments and checklist ----------------------------------------------------

def sanitize_comment_entry(entry, media=None, persist_data_urls: bool = False, owner_user_id=None) -> Optional[Dict[str, Any]]:
    if not is_json_object(entry):
        return None
    comment_id = sanitize_text(entry.get("id"), MAX_COMMENT_ID_LENGTH)
    text = sanitize_comment_text(entry.get("text"))
    images = sanitize_card_images(entry.get("images"), media, persist_data_urls, owner_user_id)
    if not comment_id or (not text and not images):
        return None

    created_at = _timestamp(entry.get("createdAt"))
    updated_raw = to_int(entry.get("updatedAt"))
    updated_at = max(created_at, updated_raw) if updated_raw is not None else created_at
    return {
        "id": comment_id,
        "text": text,
        "images": images,
        "createdAt": created_at,
        "updatedAt": updated_at,
        "author": sanitize_comment_author(entry.get("author")),
    }


def sanitize_comments(
    raw,
    media=None,
    keep_input_order: bool = False,
    enforce_max: bool = True,
    persist_data_urls: bool = False,
    owner_user_id=None,
) -> List[Dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    out = []
    seen = set()
    for entry in raw:
        comment = sanitize_comment_entry(entry, media, persist_data_urls, owner_user_id)
        if not comment or comment["id"] in seen:
            continue
        seen.add(comment["id"])
        out.append(comment)

    if not keep_input_order:
        out.sort(key=by_created_at)
    if enforce_max and len(out) > MAX_CARD_COMMENTS:
        # Остаются самые новые комментарии
        return out[len(out) - MAX_CARD_COMMENTS:]
    return out


def sanitize_checklist_entry(entry) -> Optional[Dict[str, Any]]:
    if not is_json_object(entry):
        return None
    item_id = sanitize_text(entry.get("id"), 128)
    text = sanitize_text(entry.get("text"), MAX_CHECKLIST_ITEM_TEXT_LENGTH)
    if not item_id or not text:
        return None
    return {
        "id": item_id,
        "text": text,
        "done": entry.get("done") is True,
        "createdAt": _timestamp(entry.get("createdAt")),
    }


def sanitize_checklist(raw, keep_input_order: bool = False, enforce_max: bool = True) -> List[Dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    out = []
    seen = set()
    for entry in raw:
        item = sanitize_checklist_entry(entry)
        if not item or item["id"] in seen:
            continue
        seen.add(item["id"])
        out.append(item)

    if not keep_input_order:
        out.sort(key=by_created_at)
    if enforce_max:
        return out[:MAX_CARD_CHECKLIST_ITEMS]
    return out


# --- history -------------------------------------------------------------------

def sanitize_history_kind(value) -> Optional[str]:
    kind = sanitize_text(value, 32).lower()
    return kind if kind in HISTORY_KINDS else None


def sanitize_history_column(value) -> Optional[str]:
    if value is None:
        return None
    column = str(value).strip()
    return column if column in COLUMN_IDS else None


def sanitize_history_meta(raw) -> Optional[Dict[str, Any]]:
    if not is_json_object(raw):
        return None
    out = {}
    title = sanitize_text(raw.get("title"), MAX_CARD_TITLE_LENGTH)
    if title:
        out["title"] = title
    if "fromCol" in raw:
        out["fromCol"] = sanitize_history_column(raw["fromCol"])
    if "toCol" in raw:
        out["toCol"] = sanitize_history_column(raw["toCol"])
    if "doingDeltaMs" in raw:
        delta = to_number(raw["doingDeltaMs"])
        out["doingDeltaMs"] = int(delta) if delta is not None and delta > 0 else 0
    return out or None


def sanitize_history_entry(raw) -> Optional[Dict[str, Any]]:
    if not is_json_object(raw):
        return None
    entry_id = raw.get("id")
    card_id = raw.get("cardId")
    entry = {
        "id": str(entry_id) if entry_id is not None else str(uuid.uuid4()),
        "at": _timestamp(raw.get("at")),
        "text": sanitize_text(raw.get("text"), MAX_HISTORY_TEXT_LENGTH),
        "cardId": card_id.strip() if isinstance(card_id, str) and card_id.strip() else None,
    }
    kind = sanitize_history_kind(raw.get("kind"))
    if kind:
        entry["kind"] = kind
    meta = sanitize_history_meta(raw.get("meta"))
    if meta:
        entry["meta"] = meta
    return entry


# --- board state -------------------------------------------------------------------

def default_board_state() -> Dict[str, Any]:
    return {
        "cardsById": {},
        "columns": {column_id: [] for column_id in COLUMN_IDS},
        "floatingById": {},
        "history": [],
    }


def fallback_floating_pin(index: int) -> Dict[str, int]:
    return {
        "x": 24 + (index % 3) * 268,
        "y": 124 + (index // 3) * 146,
        "swayOffsetMs": (index * 187) % 2400,
    }


def sanitize_floating_pin(raw) -> Dict[str, int]:
    x = to_int(raw.get("x"))
    y = to_int(raw.get("y"))
    sway = to_number(raw.get("swayOffsetMs"))
    return {
        "x": x if x is not None else 24,
        "y": y if y is not None else 120,
        "swayOffsetMs": int(sway) if sway is not None and sway >= 0 else 0,
    }


def get_card_position(columns: Dict[str, List[str]], card_id: str) -> Tuple[Optional[str], int]:
    for column_id in COLUMN_IDS:
        ids = columns.get(column_id) or []
        if card_id in ids:
            return column_id, ids.index(card_id)
    return None, -1


def derive_card_status(card_id: str, columns: Dict[str, List[str]], floating_by_id: Dict[str, Any]) -> str:
    column_id, _ = get_card_position(columns, card_id)
    if column_id:
        return column_id
    if floating_by_id and card_id in floating_by_id:
        return "freedom"
    return "queue"


def sanitize_card(card_id: str, value: Dict[str, Any], media=None, persist_data_urls: bool = False, owner_user_id=None) -> Dict[str, Any]:
    raw_status = sanitize_text(value.get("status"), 16).lower()
    created_at = to_int(value.get("createdAt"))
    started = to_int(value.get("doingStartedAt"))
    total = to_number(value.get("doingTotalMs"))
    return {
        "id": card_id,
        "title": sanitize_text(value.get("title"), MAX_CARD_TITLE_LENGTH),
        "description": sanitize_text(value.get("description"), MAX_CARD_DESCRIPTION_LENGTH),
        "images": sanitize_card_images(value.get("images"), media, persist_data_urls, owner_user_id),
        "checklist": sanitize_checklist(value.get("checklist")),
        "createdBy": sanitize_card_creator(value.get("createdBy")),
        "isFavorite": sanitize_card_favorite(value.get("isFavorite")),
        "comments": sanitize_comments(
            value.get("comments"), media, persist_data_urls=persist_data_urls, owner_user_id=owner_user_id
        ),
        "createdAt": created_at if created_at is not None else now_ms(),
        "status": raw_status if raw_status in CARD_STATUSES else "queue",
        "urgency": sanitize_card_urgency(value.get("urgency")) or DEFAULT_CARD_URGENCY,
        "doingStartedAt": started,
        "doingTotalMs": int(total) if total is not None and total > 0 else 0,
    }


def sanitize_board_state(raw, media=None, persist_data_urls: bool = False, owner_user_id=None) -> Optional[Dict[str, Any]]:
    """Normalise a whole board, or None when ``raw`` is not board-shaped."""
    if not is_json_object(raw):
        return None
    source_cards = raw.get("cardsById")
    source_columns = raw.get("columns")
    if not is_json_object(source_cards) or not is_json_object(source_columns):
        return None

    cards_by_id = {}
    for key, value in source_cards.items():
        if not is_json_object(value):
            continue
        card_id = str(key).strip()
        if not card_id:
            continue
        cards_by_id[card_id] = sanitize_card(card_id, value, media, persist_data_urls, owner_user_id)

    used = set()
    columns = {column_id: [] for column_id in COLUMN_IDS}
    for column_id in COLUMN_IDS:
        raw_ids = source_columns.get(column_id)
        for raw_id in raw_ids if isinstance(raw_ids, list) else []:
            card_id = "" if raw_id is None else str(raw_id).strip()
            if not card_id or card_id not in cards_by_id or card_id in used:
                continue
            used.add(card_id)
            columns[column_id].append(card_id)

    floating_by_id = {}
    floating_index = 0
    source_floating = raw.get("floatingById")
    if is_json_object(source_floating):
        for raw_id, raw_pin in source_floating.items():
            if not is_json_object(raw_pin):
                continue
            card_id = str(raw_id).strip()
            if not card_id or card_id not in cards_by_id or card_id in used:
                continue
            floating_by_id[card_id] = sanitize_floating_pin(raw_pin)
            used.add(card_id)
            floating_index += 1

    # Каждая карточка ровно в одном месте: остальные прикрепляются к полю
    for card_id in cards_by_id:
        if card_id in used:
            continue
        floating_by_id[card_id] = fallback_floating_pin(floating_index)
        used.add(card_id)
        floating_index += 1

    history = []
    source_history = raw.get("history")
    for raw_entry in (source_history if isinstance(source_history, list) else [])[:MAX_HISTORY_ENTRIES]:
        entry = sanitize_history_entry(raw_entry)
        if entry:
            history.append(entry)

    for card_id, card in cards_by_id.items():
        card["status"] = derive_card_status(card_id, columns, floating_by_id)

    return {
        "cardsById": cards_by_id,
        "columns": columns,
        "floatingById": floating_by_id,
        "history": history,
    }


# --- small helpers shared by the stores ------------------------------------------

def next_sequential_card_id(card_ids) -> str:
    highest = 0
    for raw_id in card_ids:
        match = _SEQUENTIAL_CARD_ID.match(str(raw_id).strip())
        if match:
            highest = max(highest, int(match.group(1)))
    return f"P-{highest + 1}"


def clamp_index(value, minimum: int, maximum: int) -> int:
    number = to_number(value)
    if number is None:
        return minimum
    return max(minimum, min(maximum, int(number)))


def column_title(column_id) -> str:
    return COLUMN_TITLES.get(column_id, COLUMN_TITLES["queue"])


def format_elapsed_hms(ms) -> str:
    total_seconds = max(0, int((to_number(ms) or 0) // 1000))
    hours, rest = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def display_card_title(title) -> str:
    return sanitize_text(title, MAX_CARD_TITLE_LENGTH) or "Без названия"


def sanitize_comment_archive_reason(value) -> str:
    reason = sanitize_text(value, 32).lower()
    return reason if reason in COMMENT_ARCHIVE_REASONS else "unknown"


def _parse_filter(value, allowed) -> Optional[str]:
    if value is None:
        return None
    raw = str(value).strip().lower()
    if not raw or raw == "all":
        return None
    if raw not in allowed:
        raise ValueError(raw)
    return raw


def parse_history_kind_filter(value) -> Optional[str]:
    """Kind filter from a query string; None means all, ValueError when unknown."""
    return _parse_filter(value, HISTORY_KINDS)


def parse_favorites_status_filter(value) -> Optional[str]:
    return _parse_filter(value, CARD_STATUSES)


def parse_archive_reason_filter(value) -> Optional[str]:
    return _parse_filter(value, ("delete", "overflow", "card-delete"))


def build_favorites_entries(state: Dict[str, Any], order: str = "desc", status: Optional[str] = None) -> List[Dict[str, Any]]:
    """Favourite cards in board order: columns, then floating pins, then leftovers."""
    cards_by_id = state["cardsById"]
    columns = state["columns"]
    floating_by_id = state["floatingById"]
    entries = []
    seen = set()

    for column_id in COLUMN_IDS:
        for index, card_id in enumerate(columns.get(column_id) or []):
            card = cards_by_id.get(card_id)
            if card_id in seen or not card or not card.get("isFavorite"):
                continue
            seen.add(card_id)
            if status and status != column_id:
                continue
            entries.append({"card": card, "columnId": column_id, "index": index, "status": column_id, "floating": None})

    floating_rows = sorted(
        floating_by_id.items(),
        key=lambda item: (item[1].get("y", 0), item[1].get("x", 0), item[0]),
    )
    for card_id, pin in floating_rows:
        card = cards_by_id.get(card_id)
        if card_id in seen or not card or not card.get("isFavorite"):
            continue
        seen.add(card_id)
        if status and status != "freedom":
            continue
        entries.append({"card": card, "columnId": None, "index": -1, "status": "freedom", "floating": sanitize_floating_pin(pin)})

    extras = sorted(
        (card for card in cards_by_id.values() if card.get("isFavorite") and card["id"] not in seen),
        key=lambda card: (card.get("createdAt") or 0, card["id"]),
    )
    for card in extras:
        card_status = derive_card_status(card["id"], columns, floating_by_id)
        if status and status != card_status:
            continue
        column_id, index = get_card_position(columns, card["id"])
        pin = floating_by_id.get(card["id"])
        entries.append({
            "card": card,
            "columnId": column_id,
            "index": index,
            "status": card_status,
            "floating": sanitize_floating_pin(pin) if card_status == "freedom" and pin else None,
        })

    if order == "desc":
        entries.reverse()
    return entries
