"""Storage contract shared by the JSON file and relational backends."""
import asyncio
import uuid
from collections import defaultdict
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from fastapi import status

from src.core.clock import Clock, now_ms
from src.core.errors import ApiError, bad_request, not_found
from src.core.limits import MAX_IMAGE_NAME_LENGTH
from src.logs import debug_logger
from src.services.media_service import (
    MediaGarbageCollector,
    MediaStore,
    PersistedMedia,
    media_usage_summary,
)
from src.services.sanitizer import (
    build_favorites_entries,
    media_mime_from_id,
    media_public_url,
    normalize_card_image_mime,
    normalize_media_id,
    sanitize_image_base64_payload,
    sanitize_text,
    to_int,
)

BoardVersion = int


@dataclass
class MediaUpload:
    """Validated upload request body."""
    mime: str
    payload: str
    size: int
    image_id: Optional[str] = None
    name: str = ""
    created_at: Optional[int] = None


def parse_media_upload(mime, data_base64, image_id=None, name=None, created_at=None) -> MediaUpload:
    normalized_mime = normalize_card_image_mime(mime)
    payload = sanitize_image_base64_payload(data_base64)
    if not normalized_mime or not payload:
        raise bad_request("INVALID_MEDIA_PAYLOAD")
    created = to_int(created_at)
    return MediaUpload(
        mime=normalized_mime,
        payload=payload[0],
        size=payload[1],
        image_id=sanitize_text(image_id, 128) or None,
        name=sanitize_text(name, MAX_IMAGE_NAME_LENGTH),
        created_at=max(0, created) if created is not None else None,
    )


class BoardStore(ABC):
    """Persistence for users, sessions and one board per user.

    Every mutating operation validates its input, writes atomically, bumps the
    user's board version and returns the new version. Operations raise
    ``ApiError`` for client errors; storage failures propagate unchanged.
    """

    backend = "abstract"

    def __init__(self, media: MediaStore, clock: Clock = now_ms, media_quota_bytes: int = 160 * 1024 * 1024):
        self.media = media
        self.clock = clock
        self.media_quota_bytes = media_quota_bytes
        self.gc: Optional[MediaGarbageCollector] = None
        # Проверка квоты и запись файла идут под одной блокировкой на пользователя
        self._upload_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def startup(self) -> None:
        self.media.ensure_dir()

    async def shutdown(self) -> None:
        pass

    # --- users and sessions ---------------------------------------------------------

    @abstractmethod
    async def create_user(self, user: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a user record; 409 ``LOGIN_TAKEN`` / ``EMAIL_TAKEN`` on collision."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def find_user_by_login_key(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def update_user(self, user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def create_session(self, session: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Session record, or None when unknown or expired."""

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool:
        ...

    # --- board ------------------------------------------------------------------------

    @abstractmethod
    async def read_board(self, user_id: str) -> Tuple[Dict[str, Any], BoardVersion]:
        ...

    @abstractmethod
    async def get_version(self, user_id: str) -> BoardVersion:
        ...

    @abstractmethod
    async def board_etag(self, user_id: str) -> str:
        ...

    @abstractmethod
    async def write_board(self, user_id: str, raw_state: Any, expected_version: Optional[int] = None) -> Dict[str, Any]:
        """Replace the whole board; ``BoardVersionConflict`` when ``expected_version`` is stale."""

    # --- cards ------------------------------------------------------------------------------

    @abstractmethod
    async def get_card(self, user_id: str, card_id: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def create_card(
        self,
        user: Dict[str, Any],
        title: str,
        description: str,
        images: Any,
        urgency: str,
        column_id: str,
        index: Optional[int],
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def move_card(self, user_id: str, card_id: str, to_column: str, to_index: Optional[int]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def patch_card(self, user_id: str, card_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def delete_card(self, user_id: str, card_id: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def bulk_move_cards(self, user_id: str, moves: List[Any], continue_on_error: bool) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def bulk_delete_cards(self, user_id: str, card_ids: List[Any], continue_on_error: bool) -> Dict[str, Any]:
        ...

    # --- comments ------------------------------------------------------------------------------

    @abstractmethod
    async def list_comments(self, user_id: str, card_id: str) -> Tuple[List[Dict[str, Any]], BoardVersion]:
        """All live comments of a card ordered by (createdAt, id)."""

    @abstractmethod
    async def add_comment(self, user: Dict[str, Any], card_id: str, text: Any, images: Any) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def edit_comment(self, user: Dict[str, Any], card_id: str, comment_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def delete_comment(self, user: Dict[str, Any], card_id: str, comment_id: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def archive_comments(self, user_id: str, card_id: str, comment_ids: Iterable[str], reason: str) -> List[Dict[str, Any]]:
        """Move live comments to the archive and return the new archive entries."""

    @abstractmethod
    async def list_archived_comments(
        self,
        user_id: str,
        card_id: str,
        reason: Optional[str],
        order: str,
        offset: int,
        limit: int,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """``(page, total)`` of archive entries for one card."""

    @abstractmethod
    async def restore_archived_comment(self, user: Dict[str, Any], card_id: str, archive_id: int) -> Dict[str, Any]:
        ...

    # --- history ------------------------------------------------------------------------------------

    @abstractmethod
    async def append_history(self, user_id: str, entry: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def list_history(
        self, user_id: str, kind: Optional[str], order: str, offset: int, limit: int
    ) -> Tuple[List[Dict[str, Any]], int]:
        ...

    @abstractmethod
    async def clear_history(self, user_id: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def delete_history_entry(self, user_id: str, entry_id: str) -> Dict[str, Any]:
        ...

    # --- media -----------------------------------------------------------------------------------------

    @abstractmethod
    async def media_usage(self, user_id: str) -> Dict[str, int]:
        """``media id -> bytes`` for every file the user's board, comments and archive reference."""

    @abstractmethod
    async def referenced_media_ids(self) -> Optional[Set[str]]:
        """Media ids referenced by any user, or None when the store cannot answer yet."""

    async def _record_media_file(self, user_id: str, persisted: PersistedMedia, created_at: int) -> None:
        """Hook for backends that track uploaded files in their own tables."""

    async def media_quota(self, user_id: str) -> Dict[str, int]:
        usage = await self.media_usage(user_id)
        return media_usage_summary(usage, self.media.grace, user_id, self.media_quota_bytes)

    async def upload_media(self, user_id: str, upload: MediaUpload) -> Dict[str, Any]:
        """Store an uploaded image under a grace entry and return its image descriptor."""
        async with self._upload_locks[user_id]:
            quota = await self.media_quota(user_id)
            if quota["usedBytes"] + upload.size > quota["limitBytes"]:
                raise ApiError(
                    status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    "MEDIA_QUOTA_EXCEEDED",
                    requestedBytes=upload.size,
                    **quota,
                )

            persisted = self.media.persist(upload.payload, upload.mime, owner_user_id=user_id)
            if not persisted:
                raise bad_request("INVALID_MEDIA_PAYLOAD")

            created_at = upload.created_at if upload.created_at is not None else self.clock()
            await self._record_media_file(user_id, persisted, created_at)
        self.schedule_gc("upload", self.media.grace_ttl_ms + (self.gc.debounce_ms if self.gc else 0))
        return {
            "id": upload.image_id or str(uuid.uuid4()),
            "fileId": persisted.media_id,
            "dataUrl": media_public_url(persisted.media_id),
            "mime": persisted.mime,
            "size": persisted.size,
            "name": upload.name,
            "createdAt": created_at,
        }

    def read_media(self, media_id: str) -> Dict[str, Any]:
        """Path, stat and mime of a stored file; 404 ``MEDIA_NOT_FOUND`` otherwise."""
        normalized = normalize_media_id(media_id)
        stat = self.media.stat(normalized) if normalized else None
        if stat is None:
            raise not_found("MEDIA_NOT_FOUND")
        return {
            "path": self.media.path_for(normalized),
            "stat": stat,
            "mime": media_mime_from_id(normalized) or "application/octet-stream",
        }

    # --- garbage collection hooks ----------------------------------------------------------------

    def schedule_gc(self, reason: str, delay_ms: Optional[int] = None) -> None:
        if self.gc is not None:
            self.gc.schedule(reason, delay_ms)

    def release_detached_media(self, previous_ids: Iterable[str], next_ids: Iterable[str], reason: str) -> None:
        """Drop grace for ids a mutation stopped referencing and sweep soon."""
        previous_ids = set(previous_ids)
        next_ids = set(next_ids)
        if self.gc is not None:
            released = self.gc.release_removed(previous_ids, next_ids, reason)
        else:
            released = self.media.grace.release_removed(previous_ids, next_ids)
        if previous_ids - next_ids:
            debug_logger.debug(f"[{self.backend}] {reason}: отвязано {len(previous_ids - next_ids)} медиа, grace снят у {released}")
            self.schedule_gc(reason)

    # --- favorites -------------------------------------------------------------------------------------

    async def list_favorites(self, user_id: str, order: str = "desc", status_filter: Optional[str] = None) -> Tuple[List[Dict[str, Any]], BoardVersion]:
        state, version = await self.read_board(user_id)
        return build_favorites_entries(state, order, status_filter), version
