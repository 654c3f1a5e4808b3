import pytest

from config import get_settings


@pytest.fixture(autouse=True)
def settings_env(monkeypatch, tmp_path):
    monkeypatch.setenv("FINTRACK_TOKEN_SECRET", "test-secret")
    monkeypatch.setenv("FINTRACK_DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("FINTRACK_UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("FINTRACK_SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("FINTRACK_TIMEZONE", "UTC")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
