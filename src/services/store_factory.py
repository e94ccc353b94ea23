from src.core.config import Settings
from src.logs import storage_logger
from src.services.board_store import BoardStore
from src.services.file_board_store import FileBoardStore
from src.services.media_service import MediaGarbageCollector, MediaGraceSet, MediaStore
from src.services.sql_board_store import SqlBoardStore


def build_store(settings: Settings) -> BoardStore:
    """Store selected by ``STORAGE_BACKEND`` with its media garbage collector attached."""
    media = MediaStore(settings.MEDIA_DIR, MediaGraceSet(), grace_ttl_ms=settings.MEDIA_GC_UPLOAD_GRACE_MS)
    if settings.STORAGE_BACKEND == "sql":
        store: BoardStore = SqlBoardStore(
            settings.DATABASE_URL,
            media,
            media_quota_bytes=settings.MAX_MEDIA_BYTES_PER_USER,
            echo=settings.DEBUG,
        )
    else:
        store = FileBoardStore(settings.DB_FILE, media, media_quota_bytes=settings.MAX_MEDIA_BYTES_PER_USER)

    store.gc = MediaGarbageCollector(
        media,
        reference_source=store.referenced_media_ids,
        debounce_ms=settings.MEDIA_GC_DEBOUNCE_MS,
        interval_ms=settings.MEDIA_GC_INTERVAL_MS,
    )
    storage_logger.info(f"[store] backend={store.backend} media_dir={settings.MEDIA_DIR}")
    return store
