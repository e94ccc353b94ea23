from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import uuid

from jose import jwt, JWTError
from passlib.context import CryptContext

from src.core import get_settings
from src.services.board_store import BoardStore

# Get application settings
settings = get_settings()

# Password hashing context
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class SecurityService:
    """Password hashing and bearer tokens bound to revocable sessions"""

    @staticmethod
    def create_password_hash(password: str) -> str:
        """Create a hashed password"""
        return pwd_context.hash(password)

    @staticmethod
    def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
        """Verify a password against its hash"""
        if not hashed_password:
            return False
        try:
            return pwd_context.verify(plain_password, hashed_password)
        except ValueError:
            # Хэш в неизвестном формате
            return False

    @staticmethod
    def create_access_token(user_id: str, session_id: str, expires_delta: Optional[timedelta] = None) -> str:
        """Create a JWT carrying the user id (``sub``) and the session id (``sid``)"""
        if expires_delta is None:
            expires_delta = timedelta(days=settings.SESSION_TTL_DAYS)
        expire = datetime.now(timezone.utc) + expires_delta
        to_encode = {"sub": user_id, "sid": session_id, "exp": expire}
        return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

    @staticmethod
    def decode_token(token: str) -> Dict[str, Any]:
        """Decode a JWT token; empty dict when invalid or expired"""
        try:
            return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        except JWTError:
            return {}

    @staticmethod
    async def issue_session(store: BoardStore, user_id: str, now: Optional[int] = None) -> str:
        """Store a new session row and return the token that references it"""
        now = now if now is not None else store.clock()
        ttl = timedelta(days=settings.SESSION_TTL_DAYS)
        session = {
            "id": str(uuid.uuid4()),
            "userId": user_id,
            "createdAt": now,
            "expiresAt": now + int(ttl.total_seconds() * 1000),
        }
        await store.create_session(session)
        return SecurityService.create_access_token(user_id, session["id"], ttl)

    @staticmethod
    async def resolve_session(store: BoardStore, token: Optional[str]) -> Optional[Dict[str, Any]]:
        """``{"session", "user"}`` for a live token, or None"""
        if not token:
            return None
        payload = SecurityService.decode_token(token)
        user_id = payload.get("sub")
        session_id = payload.get("sid")
        if not user_id or not session_id:
            return None

        session = await store.get_session(session_id)
        if session is None or session.get("userId") != user_id:
            return None
        user = await store.get_user(user_id)
        if user is None:
            return None
        return {"session": session, "user": user}

    @staticmethod
    async def revoke_token(store: BoardStore, token: Optional[str]) -> bool:
        """Delete the session behind ``token``; False when there was none"""
        payload = SecurityService.decode_token(token) if token else {}
        session_id = payload.get("sid")
        if not session_id:
            return False
        return await store.delete_session(session_id)
