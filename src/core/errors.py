from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class ApiError(HTTPException):
    """HTTP error rendered as ``{"error": CODE, ...extra}``."""

    def __init__(
        self,
        status_code: int,
        error: str,
        headers: Optional[Dict[str, str]] = None,
        **extra: Any,
    ):
        detail = {"error": error}
        detail.update(extra)
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error = error


class BoardVersionConflict(ApiError):
    """Raised when a write is based on a board version that is no longer current."""

    def __init__(self, current_version: int):
        super().__init__(
            status.HTTP_409_CONFLICT,
            "BOARD_VERSION_CONFLICT",
            currentVersion=current_version,
        )
        self.current_version = current_version


def bad_request(error: str, **extra: Any) -> ApiError:
    return ApiError(status.HTTP_400_BAD_REQUEST, error, **extra)


def not_found(error: str, **extra: Any) -> ApiError:
    return ApiError(status.HTTP_404_NOT_FOUND, error, **extra)
