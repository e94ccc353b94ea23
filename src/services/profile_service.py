import re
from datetime import date
from typing import Any, Dict, Optional

from fastapi import status

from src.core.errors import ApiError, bad_request
from src.core.limits import (
    MAX_PROFILE_ABOUT_EDIT_LENGTH,
    MAX_PROFILE_ABOUT_LENGTH,
    MAX_PROFILE_AVATAR_BYTES,
    MAX_PROFILE_CITY_LENGTH,
    MAX_PROFILE_NAME_LENGTH,
    MAX_PROFILE_ROLE_LENGTH,
    MIN_PROFILE_AGE_YEARS,
)
from src.services.sanitizer import sanitize_image_data_url, sanitize_text

LOGIN_PATTERN = re.compile(r"^[A-Za-zА-Яа-яЁё]+$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PROFILE_NAME_PATTERN = re.compile(r"^[A-Za-zА-Яа-яЁё][A-Za-zА-Яа-яЁё' -]{1,47}$")
PROFILE_ROLE_PATTERN = re.compile(r"^[A-Za-zА-Яа-яЁё0-9][A-Za-zА-Яа-яЁё0-9 .,#/&()+-]{1,63}$")
PROFILE_CITY_PATTERN = re.compile(r"^[A-Za-zА-Яа-яЁё0-9][A-Za-zА-Яа-яЁё0-9' .-]{1,63}$")
BIRTH_DATE_PATTERN = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")

INVALID_LOGIN_MESSAGE = "Логин: только буквы латиницы/кириллицы, длина 2-32 символа"
WEAK_PASSWORD_MESSAGE = "Минимум 6 символов"
MIN_PASSWORD_LENGTH = 6

PROFILE_FIELDS = ("login", "avatarUrl", "firstName", "lastName", "birthDate", "role", "city", "about")


def normalize_login(value) -> str:
    return "" if value is None else str(value).strip()


def login_key(value) -> str:
    return normalize_login(value).lower()


def is_valid_login(value) -> bool:
    login = normalize_login(value)
    return 2 <= len(login) <= 32 and bool(LOGIN_PATTERN.match(login))


def normalize_email(value) -> str:
    return ("" if value is None else str(value)).strip().lower()


def is_valid_email(value) -> bool:
    return bool(EMAIL_PATTERN.match(value or ""))


def _optional_text(value, max_length: int) -> Optional[str]:
    return sanitize_text(value, max_length) or None


def sanitize_profile_avatar_url(value) -> Optional[str]:
    raw = sanitize_text(value, 16 * 1024 * 1024)
    if not raw:
        return None
    normalized = sanitize_image_data_url(raw, max_bytes=MAX_PROFILE_AVATAR_BYTES)
    return normalized["dataUrl"] if normalized else None


def sanitize_profile_birth_date(value, today: Optional[date] = None) -> Optional[str]:
    """``YYYY-MM-DD`` for a real calendar date between 1900 and today, else None."""
    raw = sanitize_text(value, 32)
    match = BIRTH_DATE_PATTERN.match(raw)
    if not match:
        return None
    year, month, day = (int(part) for part in match.groups())
    if year < 1900 or year > 2100:
        return None
    try:
        parsed = date(year, month, day)
    except ValueError:
        return None
    if parsed > (today or date.today()):
        return None
    return raw


def is_birth_date_at_least_age(birth_date: str, min_age_years: int = MIN_PROFILE_AGE_YEARS, today: Optional[date] = None) -> bool:
    normalized = sanitize_profile_birth_date(birth_date, today)
    if not normalized:
        return False
    today = today or date.today()
    born = date.fromisoformat(normalized)
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return age >= min_age_years


def user_payload(user: Dict[str, Any]) -> Dict[str, Any]:
    """Public view of a stored user record."""
    email = normalize_email(user.get("email"))
    login = normalize_login(user.get("login")) or email.split("@")[0] or "user"
    return {
        "id": user["id"],
        "login": login,
        "email": email,
        "avatarUrl": sanitize_profile_avatar_url(user.get("avatarUrl")),
        "firstName": _optional_text(user.get("firstName"), MAX_PROFILE_NAME_LENGTH),
        "lastName": _optional_text(user.get("lastName"), MAX_PROFILE_NAME_LENGTH),
        "birthDate": sanitize_profile_birth_date(user.get("birthDate")),
        "role": _optional_text(user.get("role"), MAX_PROFILE_ROLE_LENGTH),
        "city": _optional_text(user.get("city"), MAX_PROFILE_CITY_LENGTH),
        "about": _optional_text(user.get("about"), MAX_PROFILE_ABOUT_LENGTH),
    }


def invalid_login_error() -> ApiError:
    return bad_request("INVALID_LOGIN", message=INVALID_LOGIN_MESSAGE)


def build_profile_update(body: Dict[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
    """Validate a profile patch and return the fields to store.

    Only keys present in ``body`` are validated; the first invalid field
    raises. Login uniqueness is checked by the caller against the store.
    """
    updates: Dict[str, Any] = {}

    if "login" in body:
        login = normalize_login(body["login"])
        if not is_valid_login(login):
            raise invalid_login_error()
        updates["login"] = login

    if "avatarUrl" in body:
        raw_avatar = sanitize_text(body["avatarUrl"], 16 * 1024 * 1024)
        if not raw_avatar:
            updates["avatarUrl"] = None
        else:
            avatar = sanitize_profile_avatar_url(raw_avatar)
            if not avatar:
                raise bad_request("INVALID_PROFILE_AVATAR")
            updates["avatarUrl"] = avatar

    checks = (
        ("firstName", MAX_PROFILE_NAME_LENGTH, PROFILE_NAME_PATTERN, "INVALID_PROFILE_FIRST_NAME"),
        ("lastName", MAX_PROFILE_NAME_LENGTH, PROFILE_NAME_PATTERN, "INVALID_PROFILE_LAST_NAME"),
        ("role", MAX_PROFILE_ROLE_LENGTH, PROFILE_ROLE_PATTERN, "INVALID_PROFILE_ROLE"),
        ("city", MAX_PROFILE_CITY_LENGTH, PROFILE_CITY_PATTERN, "INVALID_PROFILE_CITY"),
    )
    for field, max_length, pattern, error in checks:
        if field not in body:
            continue
        value = _optional_text(body[field], max_length)
        if value is not None and not pattern.match(value):
            raise bad_request(error)
        updates[field] = value

    if "about" in body:
        about = _optional_text(body["about"], MAX_PROFILE_ABOUT_LENGTH)
        if about is not None and len(about) > MAX_PROFILE_ABOUT_EDIT_LENGTH:
            raise bad_request("INVALID_PROFILE_ABOUT")
        updates["about"] = about

    if "birthDate" in body:
        raw_birth_date = sanitize_text(body["birthDate"], 32)
        if not raw_birth_date:
            updates["birthDate"] = None
        else:
            birth_date = sanitize_profile_birth_date(raw_birth_date, today)
            if not birth_date or not is_birth_date_at_least_age(birth_date, today=today):
                raise bad_request("INVALID_PROFILE_BIRTH_DATE")
            updates["birthDate"] = birth_date

    return updates


def validate_registration(login: str, email: str, password: str) -> None:
    if not is_valid_login(login):
        raise invalid_login_error()
    if not is_valid_email(email):
        raise bad_request("INVALID_EMAIL")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise bad_request("WEAK_PASSWORD", message=WEAK_PASSWORD_MESSAGE)


def login_taken_error() -> ApiError:
    return ApiError(status.HTTP_409_CONFLICT, "LOGIN_TAKEN")
