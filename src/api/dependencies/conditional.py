from email.utils import formatdate, parsedate_to_datetime
from typing import Any, Dict, Optional

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse

from src.services.etags import etag_matches


def not_modified_by_etag(request: Request, etag: Optional[str]) -> bool:
    return etag_matches(request.headers.get("if-none-match"), etag)


def not_modified_since(request: Request, mtime_ms: int) -> bool:
    """``If-Modified-Since`` check at whole-second precision of HTTP dates."""
    raw = (request.headers.get("if-modified-since") or "").strip()
    if not raw:
        return False
    try:
        since = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return False
    return int(mtime_ms) // 1000 <= int(since.timestamp())


def http_date(mtime_ms: int) -> str:
    return formatdate(mtime_ms / 1000, usegmt=True)


def not_modified(headers: Dict[str, str]) -> Response:
    return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers=headers)


def cached_json(request: Request, payload: Dict[str, Any], etag: str, cache_control: str = "private, no-cache") -> Response:
    """JSON body with an ETag, or 304 when the client already holds it."""
    headers = {"ETag": etag, "Cache-Control": cache_control}
    if not_modified_by_etag(request, etag):
        return not_modified(headers)
    return JSONResponse(payload, headers=headers)
