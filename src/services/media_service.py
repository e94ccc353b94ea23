import asyncio
import base64
import binascii
import os
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, NamedTuple, Optional, Set

from src.core.clock import Clock, now_ms
from src.core.limits import MAX_CARD_IMAGE_BYTES, MEDIA_GRACE_MIN_TTL_MS
from src.logs import debug_logger, storage_logger
from src.services.sanitizer import (
    CARD_IMAGE_EXT_BY_MIME,
    extract_media_id_from_url,
    media_mime_from_id,
    normalize_card_image_mime,
    normalize_media_id,
)


class PersistedMedia(NamedTuple):
    media_id: str
    mime: str
    size: int


class GraceEntry(NamedTuple):
    until: int
    owner_user_id: Optional[str]
    size: Optional[int]


def _owner(value) -> Optional[str]:
    raw = "" if value is None else str(value).strip()
    return raw[:64] or None


class MediaGraceSet:
    """Recently written media ids protected from collection until their TTL expires."""

    def __init__(self, clock: Clock = now_ms):
        self.clock = clock
        self._entries: Dict[str, GraceEntry] = {}

    def __contains__(self, media_id) -> bool:
        return media_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def mark(self, media_id, ttl_ms: int, owner_user_id=None, size=None) -> None:
        normalized = normalize_media_id(media_id)
        if not normalized:
            return
        ttl = max(MEDIA_GRACE_MIN_TTL_MS, int(ttl_ms))
        size = int(size) if size and size > 0 else None
        self._entries[normalized] = GraceEntry(self.clock() + ttl, _owner(owner_user_id), size)

    def purge_expired(self, now: Optional[int] = None) -> None:
        now = self.clock() if now is None else now
        for media_id in [key for key, entry in self._entries.items() if entry.until <= now]:
            del self._entries[media_id]

    def active_ids(self) -> Set[str]:
        self.purge_expired()
        return set(self._entries)

    def discard(self, media_id) -> None:
        self._entries.pop(media_id, None)

    def pending_bytes_for_user(self, user_id, referenced_ids: Iterable[str] = ()) -> int:
        """Bytes held in grace for ``user_id`` that no stored board references yet."""
        owner = _owner(user_id)
        if not owner:
            return 0
        referenced = set(referenced_ids)
        self.purge_expired()
        return sum(
            entry.size
            for media_id, entry in self._entries.items()
            if entry.owner_user_id == owner and entry.size and media_id not in referenced
        )

    def release_removed(self, previous_ids: Iterable[str], next_ids: Iterable[str]) -> int:
        """Drop grace for ids that were referenced before a mutation and are not now."""
        remaining = set(next_ids)
        removed = [media_id for media_id in set(previous_ids) if media_id not in remaining]
        for media_id in removed:
            self._entries.pop(media_id, None)
        return len(removed)


class MediaStore:
    """Content files under one directory, named ``<uuid4><ext>``."""

    def __init__(self, media_dir, grace: Optional[MediaGraceSet] = None, grace_ttl_ms: int = 60 * 60 * 1000):
        self.root = Path(media_dir).resolve()
        self.grace = grace if grace is not None else MediaGraceSet()
        self.grace_ttl_ms = grace_ttl_ms

    def ensure_dir(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, media_id) -> Optional[Path]:
        normalized = normalize_media_id(media_id)
        if not normalized:
            return None
        path = (self.root / normalized).resolve()
        if path.parent != self.root:
            return None
        return path

    def exists(self, media_id) -> bool:
        path = self.path_for(media_id)
        return bool(path and path.is_file())

    def stat(self, media_id) -> Optional[os.stat_result]:
        path = self.path_for(media_id)
        if not path:
            return None
        try:
            result = path.stat()
        except FileNotFoundError:
            return None
        return result if path.is_file() else None

    def read_bytes(self, media_id) -> Optional[bytes]:
        path = self.path_for(media_id)
        if not path:
            return None
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def persist(self, payload_base64, mime, owner_user_id=None, ttl_ms: Optional[int] = None) -> Optional[PersistedMedia]:
        """Write a base64 payload as a new media file and protect it with a grace entry."""
        normalized_mime = normalize_card_image_mime(mime)
        if not normalized_mime:
            return None
        try:
            content = base64.b64decode(str(payload_base64 or ""))
        except (binascii.Error, ValueError):
            return None
        if not content or len(content) > MAX_CARD_IMAGE_BYTES:
            return None

        media_id = f"{uuid.uuid4()}{CARD_IMAGE_EXT_BY_MIME[normalized_mime]}"
        path = self.path_for(media_id)
        self.ensure_dir()
        tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
        tmp_path.write_bytes(content)
        os.replace(tmp_path, path)

        self.grace.mark(
            media_id,
            self.grace_ttl_ms if ttl_ms is None else ttl_ms,
            owner_user_id=owner_user_id,
            size=len(content),
        )
        debug_logger.debug(f"Сохранен медиафайл {media_id} ({len(content)} байт)")
        return PersistedMedia(media_id, normalized_mime, len(content))

    def remove(self, media_id) -> bool:
        path = self.path_for(media_id)
        if not path:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def list_stored_ids(self) -> List[str]:
        """Media ids of stored files; temp files and foreign names are skipped."""
        if not self.root.is_dir():
            return []
        out = []
        for entry in self.root.iterdir():
            if not entry.is_file():
                continue
            media_id = normalize_media_id(entry.name)
            if media_id and media_mime_from_id(media_id):
                out.append(media_id)
        return out


# --- reference collection -----------------------------------------------------------

def collect_media_ids_from_images(images, out: Optional[Set[str]] = None) -> Set[str]:
    target = out if out is not None else set()
    for image in images or []:
        media_id = normalize_media_id(image.get("fileId")) or extract_media_id_from_url(image.get("dataUrl"))
        if media_id:
            target.add(media_id)
        preview_id = normalize_media_id(image.get("previewFileId")) or extract_media_id_from_url(image.get("previewUrl"))
        if preview_id:
            target.add(preview_id)
    return target


def collect_media_ids_from_card(card, out: Optional[Set[str]] = None) -> Set[str]:
    target = out if out is not None else set()
    if not card:
        return target
    collect_media_ids_from_images(card.get("images"), target)
    for comment in card.get("comments") or []:
        collect_media_ids_from_images(comment.get("images"), target)
    return target


def collect_media_ids_from_board(state, out: Optional[Set[str]] = None) -> Set[str]:
    target = out if out is not None else set()
    for card in ((state or {}).get("cardsById") or {}).values():
        collect_media_ids_from_card(card, target)
    return target


def add_media_usage_from_images(images, usage: Dict[str, int]) -> Dict[str, int]:
    """Accumulate ``media id -> bytes``; the first size seen for an id wins."""
    for image in images or []:
        media_id = normalize_media_id(image.get("fileId")) or extract_media_id_from_url(image.get("dataUrl"))
        if media_id and media_id not in usage:
            usage[media_id] = max(0, int(image.get("size") or 0))
        preview_id = normalize_media_id(image.get("previewFileId")) or extract_media_id_from_url(image.get("previewUrl"))
        if preview_id and preview_id not in usage:
            usage[preview_id] = max(0, int(image.get("previewSize") or 0))
    return usage


def media_usage_summary(usage: Dict[str, int], grace: MediaGraceSet, user_id, limit_bytes: int) -> Dict[str, int]:
    referenced_bytes = sum(usage.values())
    pending_bytes = grace.pending_bytes_for_user(user_id, usage.keys())
    return {
        "limitBytes": limit_bytes,
        "referencedBytes": referenced_bytes,
        "pendingBytes": pending_bytes,
        "usedBytes": referenced_bytes + pending_bytes,
    }


# --- garbage collection ----------------------------------------------------------------

ReferenceSource = Callable[[], Awaitable[Optional[Set[str]]]]


class MediaGarbageCollector:
    """Removes media files that no board, comment or archived comment references."""

    def __init__(
        self,
        media: MediaStore,
        reference_source: ReferenceSource,
        debounce_ms: int = 1200,
        interval_ms: int = 15 * 60 * 1000,
        clock: Clock = now_ms,
    ):
        self.media = media
        self.grace = media.grace
        self.reference_source = reference_source
        self.debounce_ms = debounce_ms
        self.interval_ms = interval_ms
        self.clock = clock
        self._running = False
        self._pending = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._timer_due: Optional[int] = None
        self._periodic: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    async def run(self) -> Optional[Dict[str, Any]]:
        """One sweep; returns None when another sweep is already in progress."""
        if self._running:
            self._pending = True
            return None
        self._running = True
        try:
            return await self._sweep()
        finally:
            self._running = False
            if self._pending:
                self._pending = False
                self.schedule("pending")

    async def _sweep(self) -> Dict[str, Any]:
        referenced = await self.reference_source()
        if referenced is None:
            return {"removed": 0, "scanned": 0, "skipped": "store-not-ready"}

        self.grace.purge_expired(self.clock())
        for media_id in self.grace.active_ids() & referenced:
            # Сохраненная ссылка защищает файл надежнее, чем grace
            self.grace.discard(media_id)
        protected = set(referenced) | self.grace.active_ids()

        stored = self.media.list_stored_ids()
        removed = 0
        for media_id in stored:
            if media_id in protected:
                continue
            try:
                if self.media.remove(media_id):
                    removed += 1
            except OSError as exc:
                storage_logger.error(f"[media-gc] failed to remove {media_id}: {exc}")
        return {"removed": removed, "scanned": len(stored)}

    async def run_safely(self) -> None:
        try:
            result = await self.run()
        except Exception:
            storage_logger.exception("[media-gc] sweep failed")
            return
        if result and result.get("removed"):
            storage_logger.info(f"[media-gc] removed {result['removed']} orphan file(s)")

    def schedule(self, reason: str = "mutation", delay_ms: Optional[int] = None) -> None:
        """Debounced sweep; an already armed timer is kept unless this one is due earlier."""
        delay = self.debounce_ms if delay_ms is None else max(0, int(delay_ms))
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            debug_logger.debug(f"[media-gc] нет цикла событий, запуск '{reason}' пропущен")
            return
        due = self.clock() + delay
        if self._timer is not None:
            if self._timer_due is not None and self._timer_due <= due:
                return
            self._timer.cancel()
        self._timer_due = due
        self._timer = loop.call_later(delay / 1000, self._fire, reason)

    def _fire(self, reason: str) -> None:
        self._timer = None
        self._timer_due = None
        debug_logger.debug(f"[media-gc] запуск по причине '{reason}'")
        task = asyncio.ensure_future(self.run_safely())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def release_removed(self, previous_ids: Iterable[str], next_ids: Iterable[str], reason: str = "media-detached") -> int:
        released = self.grace.release_removed(previous_ids, next_ids)
        if released:
            self.schedule(reason, 0)
        return released

    def start(self) -> None:
        if self._periodic is None:
            self._periodic = asyncio.ensure_future(self._periodic_loop())

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_ms / 1000)
            await self.run_safely()

    async def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            self._timer_due = None
        pending = list(self._tasks)
        if self._periodic is not None:
            self._periodic.cancel()
            pending.append(self._periodic)
            self._periodic = None
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
