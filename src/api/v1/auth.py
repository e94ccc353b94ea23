from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status

from src.api.dependencies.auth import get_board_store, get_current_user, oauth2_scheme
from src.schemas.auth import AuthResponse, LoginRequest, ProfileUpdate, RegisterRequest, UserResponse
from src.services.board_store import BoardStore
from src.services.profile_service import user_payload
from src.services.user_service import UserService
from src.logs import debug_logger

# Create router
router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    body: RegisterRequest,
    store: BoardStore = Depends(get_board_store),
):
    """
    Register a new user and open a session
    """
    result = await UserService.register(store, body.login, body.email, body.password)
    debug_logger.info(f"Зарегистрирован пользователь {result['user']['login']}")
    return {"ok": True, **result}


@router.post("/login", response_model=AuthResponse)
async def login(
    body: LoginRequest,
    store: BoardStore = Depends(get_board_store),
):
    """
    Log in by login and password; 401 INVALID_CREDENTIALS otherwise
    """
    result = await UserService.login(store, body.login, body.password)
    return {"ok": True, **result}


@router.get("/me", response_model=UserResponse)
async def me(current_user: Dict[str, Any] = Depends(get_current_user)):
    return {"ok": True, "user": user_payload(current_user)}


@router.get("/profile", response_model=UserResponse)
async def get_profile(current_user: Dict[str, Any] = Depends(get_current_user)):
    return {"ok": True, "user": user_payload(current_user)}


@router.patch("/profile", response_model=UserResponse)
async def update_profile(
    body: ProfileUpdate,
    current_user: Dict[str, Any] = Depends(get_current_user),
    store: BoardStore = Depends(get_board_store),
):
    """
    Update profile fields present in the body
    """
    updates = body.model_dump(exclude_unset=True, by_alias=True)
    user = await UserService.update_profile(store, current_user, updates)
    return {"ok": True, "user": user}


@router.post("/logout")
async def logout(
    token: Optional[str] = Depends(oauth2_scheme),
    store: BoardStore = Depends(get_board_store),
):
    """
    Revoke the session behind the bearer token; succeeds without one too
    """
    await UserService.logout(store, token)
    return {"ok": True}
