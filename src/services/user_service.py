from typing import Any, Dict, Optional
import uuid

from fastapi import status

from src.core.errors import ApiError
from src.services.board_store import BoardStore
from src.services.profile_service import (
    build_profile_update,
    login_key,
    normalize_email,
    normalize_login,
    user_payload,
    validate_registration,
)
from src.services.security_service import SecurityService


class UserService:
    """Registration, login and profile updates on top of a board store"""

    @staticmethod
    async def register(store: BoardStore, login: Any, email: Any, password: Any) -> Dict[str, Any]:
        """Create an account with an empty board and open its first session"""
        login = normalize_login(login)
        email = normalize_email(email)
        password = "" if password is None else str(password)
        validate_registration(login, email, password)

        user = {
            "id": str(uuid.uuid4()),
            "login": login,
            "email": email,
            "passwordHash": SecurityService.create_password_hash(password),
            "createdAt": store.clock(),
            "avatarUrl": None,
            "firstName": None,
            "lastName": None,
            "birthDate": None,
            "role": None,
            "city": None,
            "about": None,
        }
        user = await store.create_user(user)
        token = await SecurityService.issue_session(store, user["id"])
        return {"token": token, "user": user_payload(user)}

    @staticmethod
    async def login(store: BoardStore, login: Any, password: Any) -> Dict[str, Any]:
        user = await store.find_user_by_login_key(login_key(login))
        password = "" if password is None else str(password)
        if not user or not SecurityService.verify_password(password, user.get("passwordHash")):
            raise ApiError(status.HTTP_401_UNAUTHORIZED, "INVALID_CREDENTIALS")
        token = await SecurityService.issue_session(store, user["id"])
        return {"token": token, "user": user_payload(user)}

    @staticmethod
    async def logout(store: BoardStore, token: Optional[str]) -> bool:
        return await SecurityService.revoke_token(store, token)

    @staticmethod
    async def update_profile(store: BoardStore, user: Dict[str, Any], body: Dict[str, Any]) -> Dict[str, Any]:
        """Validate the present fields, store them and return the public profile"""
        updates = build_profile_update(body)
        if not updates:
            return user_payload(user)
        updated = await store.update_user(user["id"], updates)
        return user_payload(updated)
