import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from fastapi import status

from src.core.errors import ApiError, bad_request
from src.core.limits import MAX_ARCHIVED_COMMENTS_PER_USER, MAX_CARD_COMMENTS
from src.services.sanitizer import (
    by_created_at,
    sanitize_card_images,
    sanitize_comment_archive_reason,
    sanitize_comment_author,
    sanitize_comment_entry,
    sanitize_comment_text,
    sanitize_text,
    to_int,
)

RESTORE_ID_ATTEMPTS = 5


def split_overflow(comments: List[Dict[str, Any]], limit: int = MAX_CARD_COMMENTS) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """``(kept, overflow)``: the oldest comments beyond ``limit`` go to overflow, oldest first."""
    ordered = sorted(comments, key=by_created_at)
    excess = len(ordered) - limit
    if excess <= 0:
        return ordered, []
    return ordered[excess:], ordered[:excess]


def archive_entry(comment: Dict[str, Any], card_id: str, reason: str, archived_at: int, archive_id: int) -> Dict[str, Any]:
    return {
        "archiveId": archive_id,
        "cardId": card_id,
        "archiveReason": sanitize_comment_archive_reason(reason),
        "archivedAt": archived_at,
        "id": comment["id"],
        "text": comment.get("text") or "",
        "images": list(comment.get("images") or []),
        "createdAt": comment["createdAt"],
        "updatedAt": comment.get("updatedAt") or comment["createdAt"],
        "author": comment.get("author"),
    }


def archive_sort_key(entry: Dict[str, Any]) -> Tuple[int, int]:
    return int(entry.get("archivedAt") or 0), int(entry.get("archiveId") or 0)


def prune_archive(entries: List[Dict[str, Any]], limit: int = MAX_ARCHIVED_COMMENTS_PER_USER) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """``(kept, evicted)``; the newest ``limit`` entries survive, the rest are dropped for good."""
    if len(entries) <= limit:
        return entries, []
    ranked = sorted(entries, key=archive_sort_key, reverse=True)
    keep = {id(entry) for entry in ranked[:limit]}
    kept = [entry for entry in entries if id(entry) in keep]
    evicted = [entry for entry in entries if id(entry) not in keep]
    return kept, evicted


def sort_archive(entries: Iterable[Dict[str, Any]], order: str = "desc") -> List[Dict[str, Any]]:
    return sorted(entries, key=archive_sort_key, reverse=order != "asc")


def sanitize_archived_comment(raw) -> Optional[Dict[str, Any]]:
    """Archive entry read back from storage, or None when unusable."""
    if not isinstance(raw, dict):
        return None
    archive_id = to_int(raw.get("archiveId"))
    card_id = sanitize_text(raw.get("cardId"), 128)
    comment = sanitize_comment_entry(raw)
    if archive_id is None or archive_id <= 0 or not card_id or comment is None:
        return None
    archived_at = to_int(raw.get("archivedAt"))
    return archive_entry(
        comment,
        card_id,
        raw.get("archiveReason"),
        max(0, archived_at) if archived_at is not None else comment["updatedAt"],
        archive_id,
    )


def same_author(author, login) -> bool:
    left = sanitize_comment_author(author)
    right = sanitize_comment_author(login)
    return bool(left and right and left.lower() == right.lower())


def ensure_comment_author(comment: Dict[str, Any], login) -> None:
    if not same_author(comment.get("author"), login):
        raise ApiError(status.HTTP_403_FORBIDDEN, "COMMENT_FORBIDDEN")


def comment_not_found():
    return ApiError(status.HTTP_404_NOT_FOUND, "COMMENT_NOT_FOUND")


def build_new_comment(text, images_raw, author, now: int, media=None, owner_user_id=None) -> Dict[str, Any]:
    """Fresh comment from request input; inline images are stored as media files."""
    sanitized_text = sanitize_comment_text(text)
    images = sanitize_card_images(images_raw, media, persist_data_urls=media is not None, owner_user_id=owner_user_id)
    if not sanitized_text and not images:
        raise bad_request("INVALID_COMMENT_TEXT")
    return {
        "id": str(uuid.uuid4()),
        "text": sanitized_text,
        "images": images,
        "createdAt": now,
        "updatedAt": now,
        "author": sanitize_comment_author(author),
    }


def apply_comment_edit(comment: Dict[str, Any], patch: Dict[str, Any], now: int, media=None, owner_user_id=None) -> Dict[str, Any]:
    """Edited copy of ``comment``; images are kept unless the patch supplies them."""
    text = sanitize_comment_text(patch.get("text")) if "text" in patch else comment.get("text") or ""
    if "images" in patch:
        images = sanitize_card_images(patch.get("images"), media, persist_data_urls=media is not None, owner_user_id=owner_user_id)
    else:
        images = list(comment.get("images") or [])
    if not text and not images:
        raise bad_request("INVALID_COMMENT_TEXT")
    edited = dict(comment)
    edited.update({"text": text, "images": images, "updatedAt": max(now, comment["createdAt"])})
    return edited


def pick_restored_comment_id(
    preferred: str,
    taken_ids: Iterable[str],
    id_factory: Optional[Callable[[], str]] = None,
) -> str:
    """Keep the archived id unless a live comment already uses it."""
    taken = set(taken_ids)
    id_factory = id_factory or (lambda: str(uuid.uuid4()))
    if preferred and preferred not in taken:
        return preferred
    for _ in range(RESTORE_ID_ATTEMPTS):
        candidate = id_factory()
        if candidate not in taken:
            return candidate
    return str(uuid.uuid4())


def restored_comment(entry: Dict[str, Any], taken_ids: Iterable[str], now: int, id_factory=None) -> Dict[str, Any]:
    """Live comment rebuilt from an archive entry, with timestamps reset to ``now``."""
    text = sanitize_comment_text(entry.get("text"))
    images = sanitize_card_images(entry.get("images"))
    if not text and not images:
        raise ApiError(status.HTTP_422_UNPROCESSABLE_ENTITY, "ARCHIVED_COMMENT_INVALID")
    comment_id = pick_restored_comment_id(entry.get("id") or "", taken_ids, id_factory)
    return {
        "id": comment_id,
        "text": text,
        "images": images,
        "createdAt": now,
        "updatedAt": now,
        "author": sanitize_comment_author(entry.get("author")),
    }


def archived_comment_not_found():
    return ApiError(status.HTTP_404_NOT_FOUND, "ARCHIVED_COMMENT_NOT_FOUND")
