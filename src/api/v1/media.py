from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import FileResponse

from src.api.dependencies.auth import get_board_store, get_current_user
from src.api.dependencies.conditional import http_date, not_modified, not_modified_by_etag, not_modified_since
from src.api.dependencies.rate_limit import MEDIA_UPLOAD, enforce_rate_limit
from src.schemas.media import MediaUploadRequest
from src.services.board_store import BoardStore, parse_media_upload
from src.services.etags import weak_etag_from_stat
from src.logs import api_logger

# Create router
router = APIRouter(prefix="/media", tags=["media"])

MEDIA_CACHE_CONTROL = "public, max-age=31536000, immutable"


@router.post("/upload", status_code=status.HTTP_201_CREATED)
async def upload_media(
    body: MediaUploadRequest,
    request: Request,
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    """
    Store a base64 image as a media file

    The file is protected from garbage collection for the upload grace period
    so that the client can reference it in a following board write.
    """
    upload = parse_media_upload(body.mime, body.data_base64, body.id, body.name, body.created_at)
    # Лимит считается только для корректных загрузок
    enforce_rate_limit(request, current_user, MEDIA_UPLOAD)
    image = await store.upload_media(current_user["id"], upload)
    api_logger.info(f"User {current_user['id']} uploaded media {image['fileId']} ({image['size']} bytes)")
    return {"ok": True, "image": image}


def _media_headers(media: Dict[str, Any]) -> Dict[str, str]:
    stat = media["stat"]
    mtime_ms = int(stat.st_mtime * 1000)
    return {
        "Cache-Control": MEDIA_CACHE_CONTROL,
        "ETag": weak_etag_from_stat(stat.st_size, mtime_ms),
        "Last-Modified": http_date(mtime_ms),
    }


def _is_fresh(request: Request, media: Dict[str, Any], headers: Dict[str, str]) -> bool:
    if request.headers.get("if-none-match"):
        return not_modified_by_etag(request, headers["ETag"])
    return not_modified_since(request, int(media["stat"].st_mtime * 1000))


@router.get("/{media_id}")
async def read_media(
    media_id: str,
    request: Request,
    store: BoardStore = Depends(get_board_store),
):
    media = store.read_media(media_id)
    headers = _media_headers(media)
    if _is_fresh(request, media, headers):
        return not_modified(headers)
    return FileResponse(media["path"], media_type=media["mime"], headers=headers)


@router.head("/{media_id}")
async def head_media(
    media_id: str,
    request: Request,
    store: BoardStore = Depends(get_board_store),
):
    media = store.read_media(media_id)
    headers = _media_headers(media)
    if _is_fresh(request, media, headers):
        return not_modified(headers)
    headers["Content-Type"] = media["mime"]
    headers["Content-Length"] = str(media["stat"].st_size)
    return Response(status_code=status.HTTP_200_OK, headers=headers)
