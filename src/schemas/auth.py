from typing import Any, Optional

from pydantic import BaseModel, Field


class RegisterRequest(BaseModel):
    """Registration form; values are checked by the profile rules, not here"""
    login: Any = None
    email: Any = None
    password: Any = None


class LoginRequest(BaseModel):
    login: Any = None
    password: Any = None


class ProfileUpdate(BaseModel):
    """Profile patch: only fields present in the body are validated and stored"""
    login: Any = None
    avatar_url: Any = Field(None, alias="avatarUrl")
    first_name: Any = Field(None, alias="firstName")
    last_name: Any = Field(None, alias="lastName")
    birth_date: Any = Field(None, alias="birthDate")
    role: Any = None
    city: Any = None
    about: Any = None

    class Config:
        populate_by_name = True


class UserPayload(BaseModel):
    id: str
    login: str
    email: str
    avatar_url: Optional[str] = Field(None, alias="avatarUrl")
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")
    birth_date: Optional[str] = Field(None, alias="birthDate")
    role: Optional[str] = None
    city: Optional[str] = None
    about: Optional[str] = None

    class Config:
        populate_by_name = True


class UserResponse(BaseModel):
    ok: bool = True
    user: UserPayload


class AuthResponse(UserResponse):
    token: str
