from typing import Any, Dict, Optional

from fastapi import Depends, Request, status
from fastapi.security import OAuth2PasswordBearer

from src.core.errors import ApiError
from src.services.board_store import BoardStore
from src.services.security_service import SecurityService

# OAuth2 configuration; missing tokens are reported as UNAUTHORIZED by us
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)


def get_board_store(request: Request) -> BoardStore:
    return request.app.state.store


def unauthorized() -> ApiError:
    return ApiError(status.HTTP_401_UNAUTHORIZED, "UNAUTHORIZED", headers={"WWW-Authenticate": "Bearer"})


# Dependency to get current session
async def get_current_session(
    token: Optional[str] = Depends(oauth2_scheme),
    store: BoardStore = Depends(get_board_store),
) -> Dict[str, Any]:
    """
    Resolve the bearer token to its live session and user

    Raises:
        ApiError: 401 UNAUTHORIZED when the token is missing, invalid,
            expired, revoked, or its user no longer exists
    """
    resolved = await SecurityService.resolve_session(store, token)
    if resolved is None:
        raise unauthorized()
    return resolved


# Dependency to get current user
async def get_current_user(
    session: Dict[str, Any] = Depends(get_current_session),
) -> Dict[str, Any]:
    return session["user"]
