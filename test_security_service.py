import pytest
from unittest.mock import AsyncMock, MagicMock
from datetime import timedelta
from jose import jwt

from src.services.security_service import SecurityService, settings


class TestPasswordHashing:
    """Юниттесты для хеширования паролей"""

    def test_create_password_hash(self):
        """Тест создания хеша пароля"""
        password = "testpassword123"
        hash_result = SecurityService.create_password_hash(password)

        # Проверяем что хеш создался и отличается от исходного пароля
        assert hash_result != password
        assert hash_result.startswith("$2b$")

    def test_verify_password_correct(self):
        """Тест проверки корректного пароля"""
        hash_password = SecurityService.create_password_hash("testpassword123")
        assert SecurityService.verify_password("testpassword123", hash_password) is True

    def test_verify_password_incorrect(self):
        """Тест проверки неверного пароля"""
        hash_password = SecurityService.create_password_hash("testpassword123")
        assert SecurityService.verify_password("wrongpassword", hash_password) is False

    def test_verify_password_without_hash(self):
        """Пользователь без хеша не может войти"""
        assert SecurityService.verify_password("testpassword123", None) is False
        assert SecurityService.verify_password("testpassword123", "") is False

    def test_verify_password_unknown_hash_format(self):
        """Хеш в неизвестном формате не считается совпадением"""
        assert SecurityService.verify_password("testpassword123", "plain-text-password") is False


class TestTokens:
    """Юниттесты для токенов доступа"""

    def test_create_access_token_claims(self):
        """Токен содержит id пользователя и id сессии"""
        token = SecurityService.create_access_token("user-1", "session-1")
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])

        assert payload["sub"] == "user-1"
        assert payload["sid"] == "session-1"
        assert "exp" in payload

    def test_decode_token_roundtrip(self):
        token = SecurityService.create_access_token("user-1", "session-1", timedelta(minutes=5))
        payload = SecurityService.decode_token(token)
        assert payload["sub"] == "user-1"

    def test_decode_expired_token(self):
        """Просроченный токен декодируется в пустой словарь"""
        token = SecurityService.create_access_token("user-1", "session-1", timedelta(seconds=-10))
        assert SecurityService.decode_token(token) == {}

    def test_decode_token_with_foreign_key(self):
        """Токен, подписанный другим ключом, не принимается"""
        token = jwt.encode({"sub": "user-1", "sid": "s"}, "another-secret", algorithm="HS256")
        assert SecurityService.decode_token(token) == {}

    def test_decode_garbage(self):
        assert SecurityService.decode_token("not-a-token") == {}


class TestSessions:
    """Юниттесты для сессий поверх хранилища"""

    def setup_method(self):
        """Настройка для каждого теста"""
        self.store = MagicMock()
        self.store.clock = MagicMock(return_value=1_000_000)
        self.store.create_session = AsyncMock()
        self.store.get_session = AsyncMock()
        self.store.get_user = AsyncMock()
        self.store.delete_session = AsyncMock(return_value=True)
        self.user = {"id": "user-1", "login": "alice", "email": "alice@example.com"}

    @pytest.mark.asyncio
    async def test_issue_session(self):
        """Сессия сохраняется в хранилище, токен ссылается на нее"""
        token = await SecurityService.issue_session(self.store, "user-1")

        self.store.create_session.assert_called_once()
        session = self.store.create_session.call_args.args[0]
        assert session["userId"] == "user-1"
        assert session["createdAt"] == 1_000_000
        assert session["expiresAt"] == 1_000_000 + settings.SESSION_TTL_DAYS * 24 * 60 * 60 * 1000

        payload = SecurityService.decode_token(token)
        assert payload["sid"] == session["id"]
        assert payload["sub"] == "user-1"

    @pytest.mark.asyncio
    async def test_resolve_session(self):
        token = SecurityService.create_access_token("user-1", "session-1")
        self.store.get_session.return_value = {"id": "session-1", "userId": "user-1"}
        self.store.get_user.return_value = self.user

        result = await SecurityService.resolve_session(self.store, token)

        assert result["user"] == self.user
        assert result["session"]["id"] == "session-1"
        self.store.get_session.assert_called_once_with("session-1")

    @pytest.mark.asyncio
    async def test_resolve_revoked_session(self):
        """Отозванная или истекшая сессия не действует"""
        token = SecurityService.create_access_token("user-1", "session-1")
        self.store.get_session.return_value = None

        assert await SecurityService.resolve_session(self.store, token) is None
        self.store.get_user.assert_not_called()

    @pytest.mark.asyncio
    async def test_resolve_session_of_other_user(self):
        token = SecurityService.create_access_token("user-1", "session-1")
        self.store.get_session.return_value = {"id": "session-1", "userId": "user-2"}

        assert await SecurityService.resolve_session(self.store, token) is None

    @pytest.mark.asyncio
    async def test_resolve_deleted_user(self):
        token = SecurityService.create_access_token("user-1", "session-1")
        self.store.get_session.return_value = {"id": "session-1", "userId": "user-1"}
        self.store.get_user.return_value = None

        assert await SecurityService.resolve_session(self.store, token) is None

    @pytest.mark.asyncio
    async def test_resolve_without_token(self):
        assert await SecurityService.resolve_session(self.store, None) is None
        assert await SecurityService.resolve_session(self.store, "") is None
        self.store.get_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_revoke_token(self):
        token = SecurityService.create_access_token("user-1", "session-1")

        assert await SecurityService.revoke_token(self.store, token) is True
        self.store.delete_session.assert_called_once_with("session-1")

    @pytest.mark.asyncio
    async def test_revoke_invalid_token(self):
        """Невалидный токен ничего не отзывает"""
        assert await SecurityService.revoke_token(self.store, "broken") is False
        self.store.delete_session.assert_not_called()
