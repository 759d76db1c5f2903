"""Shared test fixtures and configuration for backend tests."""
from typing import List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from realchat.auth.security import SecretHasher
from realchat.config import AppConfig, JWTSecrets, Secrets
from realchat.container import Services, build_services
from realchat.errors import DeliveryError
from realchat.main import create_app
from realchat.storage.duckdb_store import DuckDBChatStore
from realchat.storage.models import User, now_ms


class FakeMailer:
    """Captures verification codes instead of sending them."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, str]] = []
        self.fail = False

    def send_verification_code(self, email: str, code: str) -> None:
        if self.fail:
            raise DeliveryError("Verification email could not be sent")
        self.sent.append((email, code))

    def last_code(self, email: str) -> Optional[str]:
        for sent_email, code in reversed(self.sent):
            if sent_email == email:
                return code
        return None


class FakeClock:
    """Controllable epoch-ms clock for expiry tests."""

    def __init__(self, start: Optional[int] = None) -> None:
        self.now = start if start is not None else now_ms()

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


def make_config(**overrides) -> AppConfig:
    config = AppConfig(
        secrets=Secrets(jwt=JWTSecrets(
            access_secret="test-access-secret-0123456789abcdef",
            refresh_secret="test-refresh-secret-0123456789abcdef",
        )),
    )
    for section, values in overrides.items():
        setattr(config, section, getattr(config, section).model_copy(update=values))
    return config


@pytest.fixture
def hasher():
    """Argon2 with minimal cost so tests stay fast."""
    return SecretHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def store():
    """Fresh in-memory DuckDB store."""
    store = DuckDBChatStore(db_path=":memory:")
    yield store
    store.close()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def services(config, store, mailer, hasher) -> Services:
    return build_services(config, store=store, mailer=mailer, hasher=hasher)


@pytest.fixture
def client(services):
    """TestClient running the app lifespan.

    Entered as a context manager so every request and WebSocket of a test
    shares one event loop (room locks are bound to it).
    """
    with TestClient(create_app(services)) as client:
        yield client


def create_user(services: Services, hasher: SecretHasher, username: str, password: str = "secret1") -> User:
    return services.store.create_user(User(
        username=username,
        email=f"{username}@example.com",
        passwordHash=hasher.hash(password),
    ))


def access_token(services: Services, username: str, password: str = "secret1") -> str:
    return services.auth.login(username, password).tokens.accessToken


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
