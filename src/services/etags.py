"""Weak entity tags for boards, comment pages, archive pages and media files."""
import re
from typing import Optional

_UNSAFE_PART = re.compile(r"[^a-z0-9_-]+", re.IGNORECASE)


def weak_etag_from_stat(size, mtime_ms) -> str:
    size = max(0, int(size or 0))
    mtime_ms = max(0, int(mtime_ms or 0))
    return f'W/"{size:x}-{mtime_ms:x}"'


def board_version_etag(version) -> str:
    return f'W/"board-v{max(0, int(version or 0))}"'


def sanitize_etag_part(value, fallback: str = "x") -> str:
    token = _UNSAFE_PART.sub("_", ("" if value is None else str(value)).strip())[:64]
    return token or fallback


def comments_page_etag(card_id, order: str, offset: int, limit: int, version) -> str:
    return (
        f'W/"com-{sanitize_etag_part(card_id, "card")}-{sanitize_etag_part(order, "asc")}'
        f'-{max(0, int(offset))}-{max(1, int(limit))}-v{max(0, int(version or 0))}"'
    )


def archive_page_etag(card_id, reason: Optional[str], order: str, offset: int, limit: int, version) -> str:
    return (
        f'W/"arch-{sanitize_etag_part(card_id, "card")}-{sanitize_etag_part(reason or "all", "all")}'
        f'-{sanitize_etag_part(order, "desc")}-{max(0, int(offset))}-{max(1, int(limit))}'
        f'-v{max(0, int(version or 0))}"'
    )


def _strip_weak(token: str) -> str:
    token = token.strip()
    return token[2:] if token[:2].upper() == "W/" else token


def etag_matches(if_none_match: Optional[str], etag: Optional[str]) -> bool:
    """``If-None-Match`` check: weak prefixes are ignored and ``*`` matches anything."""
    raw = (if_none_match or "").strip()
    if not raw or not etag:
        return False
    if raw == "*":
        return True
    target = _strip_weak(etag)
    return any(_strip_weak(token) == target for token in raw.split(","))
