import pytest
from pydantic import ValidationError

from src.core.config import Settings


class TestSettings:
    """Проверка и нормализация настроек"""

    def test_backend_aliases(self):
        assert Settings(STORAGE_BACKEND="sqlite").STORAGE_BACKEND == "sql"
        assert Settings(STORAGE_BACKEND=" FILE ").STORAGE_BACKEND == "file"

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            Settings(STORAGE_BACKEND="redis")

    def test_limits_are_clamped(self):
        settings = Settings(
            MAX_MEDIA_BYTES_PER_USER=10,
            MEDIA_GC_UPLOAD_GRACE_MS=5,
            RATE_LIMIT_UPLOAD_MAX=0,
            RATE_LIMIT_STATE_MAX_ENTRIES=-3,
        )

        assert settings.MAX_MEDIA_BYTES_PER_USER == 900 * 1024
        assert settings.MEDIA_GC_UPLOAD_GRACE_MS == 30 * 1000
        assert settings.RATE_LIMIT_UPLOAD_MAX == 1
        assert settings.RATE_LIMIT_STATE_MAX_ENTRIES == 1

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_COMMENT_MUTATION_MAX", "7")

        assert Settings().RATE_LIMIT_COMMENT_MUTATION_MAX == 7
