from datetime import date

import pytest

from src.core.errors import ApiError
from src.services.profile_service import (
    build_profile_update,
    is_birth_date_at_least_age,
    is_valid_login,
    sanitize_profile_birth_date,
    user_payload,
)

TODAY = date(2024, 6, 15)
AVATAR = "data:image/png;base64,iVBORw0KGgo="


def error_of(body):
    with pytest.raises(ApiError) as exc_info:
        build_profile_update(body, today=TODAY)
    assert exc_info.value.status_code == 400
    return exc_info.value.detail["error"]


class TestLogin:
    """Тесты правил логина"""

    @pytest.mark.parametrize("value", ["al", "Alice", "Алиса", "Ёжик", "a" * 32])
    def test_valid(self, value):
        assert is_valid_login(value)

    @pytest.mark.parametrize("value", ["a", "a" * 33, "alice1", "ali ce", "alice_", "", None])
    def test_invalid(self, value):
        assert not is_valid_login(value)


class TestBirthDate:
    """Тесты даты рождения"""

    def test_real_date(self):
        assert sanitize_profile_birth_date("2000-02-29", TODAY) == "2000-02-29"

    @pytest.mark.parametrize("value", ["2001-02-29", "1899-12-31", "2024-06-16", "15.06.2000", "2000-13-01"])
    def test_rejected(self, value):
        assert sanitize_profile_birth_date(value, TODAY) is None

    def test_age_boundary(self):
        """Ровно 16 лет в день рождения"""
        assert is_birth_date_at_least_age("2008-06-15", today=TODAY)
        assert not is_birth_date_at_least_age("2008-06-16", today=TODAY)


class TestProfileUpdate:
    """Тесты валидации обновления профиля"""

    def test_only_present_fields(self):
        assert build_profile_update({"city": "Санкт-Петербург"}, today=TODAY) == {"city": "Санкт-Петербург"}

    def test_empty_values_clear_fields(self):
        updates = build_profile_update({"firstName": "", "avatarUrl": "", "birthDate": ""}, today=TODAY)
        assert updates == {"firstName": None, "avatarUrl": None, "birthDate": None}

    def test_login_is_trimmed(self):
        assert build_profile_update({"login": "  Bob "}, today=TODAY) == {"login": "Bob"}

    def test_avatar_data_url(self):
        assert build_profile_update({"avatarUrl": AVATAR}, today=TODAY)["avatarUrl"] == AVATAR

    @pytest.mark.parametrize(
        "body,error",
        [
            ({"login": "b0b"}, "INVALID_LOGIN"),
            ({"avatarUrl": "https://example.com/a.png"}, "INVALID_PROFILE_AVATAR"),
            ({"firstName": "A"}, "INVALID_PROFILE_FIRST_NAME"),
            ({"lastName": "Smith2"}, "INVALID_PROFILE_LAST_NAME"),
            ({"role": "!admin"}, "INVALID_PROFILE_ROLE"),
            ({"city": "@home"}, "INVALID_PROFILE_CITY"),
            ({"about": "x" * 151}, "INVALID_PROFILE_ABOUT"),
            ({"birthDate": "2010-01-01"}, "INVALID_PROFILE_BIRTH_DATE"),
            ({"birthDate": "2030-01-01"}, "INVALID_PROFILE_BIRTH_DATE"),
        ],
    )
    def test_invalid_fields(self, body, error):
        assert error_of(body) == error

    def test_about_at_limit(self):
        assert build_profile_update({"about": "x" * 150}, today=TODAY)["about"] == "x" * 150


class TestUserPayload:
    def test_login_falls_back_to_email(self):
        payload = user_payload({"id": "u1", "login": "", "email": "Bob@Example.com"})
        assert payload["login"] == "bob"
        assert payload["email"] == "bob@example.com"

    def test_no_secrets(self):
        payload = user_payload({"id": "u1", "login": "bob", "email": "b@e.io", "passwordHash": "x"})
        assert set(payload) == {
            "id", "login", "email", "avatarUrl", "firstName", "lastName", "birthDate", "role", "city", "about",
        }
