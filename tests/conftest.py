"""
tests/conftest.py -- Shared test fixtures for the storefront auth service.

This module provides:
  - FakeClock / RecordingDelivery: deterministic time and a code transport
    that remembers what it was asked to send
  - settings, codec, identity_store, code_store, sessions: unit-level fixtures
    wired to isolated in-memory databases
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: the HTTP fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit fixtures call the store from the test thread only, so
plain :memory: is enough there.

The DEBUG env var must be set before any auth module import so that
get_settings() can fall back to generated signing keys.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.sessions import SessionManager
from auth.store import IdentityStore
from auth.tokens import CredentialCodec
from core.config import Settings
from otp.store import OneTimeCodeStore

ACCESS_KEY = "test-access-signing-key-0123456789abcdef"
REFRESH_KEY = "test-refresh-signing-key-0123456789abcdef"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock for OneTimeCodeStore. Starts at a fixed epoch second."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingDelivery:
    """Code transport that keeps every (contact, code) it was given."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def deliver(self, contact: str, code: str) -> None:
        self.sent.append((contact, code))

    def last_code(self, contact: str) -> str:
        for sent_contact, code in reversed(self.sent):
            if sent_contact == contact:
                return code
        raise AssertionError(f"no code was delivered to {contact}")


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "access_signing_key": ACCESS_KEY,
        "refresh_signing_key": REFRESH_KEY,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():
    """Build Settings with the test signing keys plus the given overrides."""
    return make_settings


@pytest.fixture
def codec(settings: Settings) -> CredentialCodec:
    return CredentialCodec.from_settings(settings)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def delivery() -> RecordingDelivery:
    return RecordingDelivery()


@pytest.fixture
def identity_store() -> Generator[IdentityStore, None, None]:
    store = IdentityStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def code_store(clock: FakeClock) -> Generator[OneTimeCodeStore, None, None]:
    store = OneTimeCodeStore(":memory:", clock=clock)
    yield store
    store.close()


@pytest.fixture
def sessions(
    identity_store: IdentityStore,
    code_store: OneTimeCodeStore,
    codec: CredentialCodec,
    delivery: RecordingDelivery,
    settings: Settings,
) -> SessionManager:
    return SessionManager(
        identities=identity_store,
        codes=code_store,
        codec=codec,
        delivery=delivery,
        settings=settings,
    )


# ---------------------------------------------------------------------------
# HTTP fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(manager: SessionManager):
    """Return a lifespan that wires pre-built test stores into app.state.

    The purge_task is a long-sleeping coroutine so shutdown's cancel() has a
    real asyncio.Task to act on.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.identities = manager.identities
        app.state.codes = manager.codes
        app.state.codec = manager.codec
        app.state.sessions = manager
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, RecordingDelivery], None, None]:
    """Yield (client, delivery) for HTTP integration tests.

    The TestClient uses the real FastAPI app, so tests go through routing,
    the Access Guard, the exception handlers and response serialization.
    Codes sent through /api/auth/send-otp can be read back from delivery.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    test_settings = make_settings()
    identities = IdentityStore(f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")
    codes = OneTimeCodeStore(":memory:")
    recorder = RecordingDelivery()
    manager = SessionManager(
        identities=identities,
        codes=codes,
        codec=CredentialCodec.from_settings(test_settings),
        delivery=recorder,
        settings=test_settings,
    )

    app.router.lifespan_context = _patch_lifespan(manager)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, recorder

    codes.close()
    identities.close()
