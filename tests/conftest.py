from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from config import Settings
from crypto_utils import EncryptionBox
from main import create_app
from tests._helpers.fakes import TEST_PASSWORD, FakeClock, RecordingReporter

TEST_ENCRYPTION_KEY = "8f1c2a7d4be95036c1d7e2f48a9b0c3d5e6f708192a3b4c5d6e7f8091a2b3c4d"


@pytest.fixture(autouse=True)
def _test_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("JWT_SECRET", "test-jwt-secret")
    monkeypatch.setenv("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'auth.db'}")
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("APP_ENV", "test")
    for name in (
        "JWT_ALGORITHM",
        "JWT_EXPIRES_IN",
        "REFRESH_TOKEN_EXPIRES_IN",
        "REFRESH_TOKEN_HASH_KEY",
        "SKIP_DB_INIT",
        "SENTRY_DSN",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def box(settings: Settings) -> EncryptionBox:
    return EncryptionBox(settings.ENCRYPTION_KEY)


@pytest.fixture
def app(settings: Settings, reporter: RecordingReporter, clock: FakeClock):
    return create_app(settings, reporter=reporter, clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def login(client: TestClient):
    def _login(email: str = "officer@lark-pd.org", device_id: str = "device-1") -> dict:
        r = client.post("/register", json={"email": email, "password": TEST_PASSWORD})
        assert r.status_code in {201, 409}, r.text
        r = client.post("/login", json={"email": email, "password": TEST_PASSWORD, "deviceId": device_id})
        assert r.status_code == 200, r.text
        return r.json()

    return _login
