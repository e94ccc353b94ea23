from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
import os
from dotenv import load_dotenv
import secrets

load_dotenv()


class Settings(BaseSettings):
    # Application settings
    DEBUG: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "t")
    PROJECT_NAME: str = "Kanban Board Persistence API"

    # CORS settings
    ALLOWED_ORIGINS: list[str] = ["*"]

    # Storage settings
    STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "file")
    DB_FILE: str = os.getenv("DB_FILE", "data/db.json")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./data/kanban.db")
    MEDIA_DIR: str = os.getenv("MEDIA_DIR", "data/media")

    # Session settings
    SECRET_KEY: str = os.getenv("SECRET_KEY", secrets.token_urlsafe(32))
    ALGORITHM: str = "HS256"
    SESSION_TTL_DAYS: int = int(os.getenv("SESSION_TTL_DAYS", "30"))

    # Request limits
    MAX_JSON_BYTES: int = int(os.getenv("MAX_JSON_BYTES", str(12 * 1024 * 1024)))

    # Media quota and garbage collection
    MAX_MEDIA_BYTES_PER_USER: int = int(os.getenv("MAX_MEDIA_BYTES_PER_USER", str(160 * 1024 * 1024)))
    MEDIA_GC_DEBOUNCE_MS: int = int(os.getenv("MEDIA_GC_DEBOUNCE_MS", "1200"))
    MEDIA_GC_INTERVAL_MS: int = int(os.getenv("MEDIA_GC_INTERVAL_MS", str(15 * 60 * 1000)))
    MEDIA_GC_UPLOAD_GRACE_MS: int = int(os.getenv("MEDIA_GC_UPLOAD_GRACE_MS", str(60 * 60 * 1000)))

    # Rate limiting
    RATE_LIMIT_UPLOAD_MAX: int = int(os.getenv("RATE_LIMIT_UPLOAD_MAX", "24"))
    RATE_LIMIT_UPLOAD_WINDOW_MS: int = int(os.getenv("RATE_LIMIT_UPLOAD_WINDOW_MS", "60000"))
    RATE_LIMIT_COMMENT_MUTATION_MAX: int = int(os.getenv("RATE_LIMIT_COMMENT_MUTATION_MAX", "60"))
    RATE_LIMIT_COMMENT_MUTATION_WINDOW_MS: int = int(os.getenv("RATE_LIMIT_COMMENT_MUTATION_WINDOW_MS", "60000"))
    RATE_LIMIT_STATE_MAX_ENTRIES: int = int(os.getenv("RATE_LIMIT_STATE_MAX_ENTRIES", "20000"))

    @field_validator("STORAGE_BACKEND", mode="before")
    @classmethod
    def validate_storage_backend(cls, value):
        value = str(value or "").strip().lower()
        if value in ("db", "mysql", "postgres", "sqlite"):
            return "sql"
        if value not in ("file", "sql"):
            raise ValueError("STORAGE_BACKEND must be 'file' or 'sql'")
        return value

    @field_validator("MAX_MEDIA_BYTES_PER_USER")
    @classmethod
    def validate_media_quota(cls, value):
        # Квота не может быть меньше одного изображения
        return max(900 * 1024, int(value))

    @field_validator("MEDIA_GC_UPLOAD_GRACE_MS")
    @classmethod
    def validate_upload_grace(cls, value):
        return max(30 * 1000, int(value))

    @field_validator(
        "MEDIA_GC_DEBOUNCE_MS",
        "MEDIA_GC_INTERVAL_MS",
        "RATE_LIMIT_UPLOAD_MAX",
        "RATE_LIMIT_UPLOAD_WINDOW_MS",
        "RATE_LIMIT_COMMENT_MUTATION_MAX",
        "RATE_LIMIT_COMMENT_MUTATION_WINDOW_MS",
        "RATE_LIMIT_STATE_MAX_ENTRIES",
    )
    @classmethod
    def validate_positive(cls, value):
        return max(1, int(value))

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


def get_settings() -> Settings:
    return Settings()
