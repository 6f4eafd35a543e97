"""Shared fixtures for the ChoreCoach test suite.

Environment variables MUST be set before any chorecoach imports because
chorecoach.config.Settings() evaluates at import time.
"""
import os

os.environ.setdefault("TOKEN_URL", "http://upstream.test/token")
os.environ.setdefault("TRANSCRIBE_URL", "http://upstream.test/transcribe")
os.environ.setdefault("RESPOND_URL", "http://upstream.test/respond")
os.environ.setdefault("SPEECH_URL", "http://upstream.test/speech")
os.environ.setdefault("UPSTREAM_API_KEY", "test-key")

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock, patch


class FakeClock:
    """Settable epoch-millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_coach_client():
    """Patch the AI upstream client.

    Only coach_client is mocked. Routing, rate limiting and validation are real.
    """
    mocks = {
        "init_client": MagicMock(),
        "close_client": AsyncMock(),
        "issue_session_token": AsyncMock(return_value={"token": "tok-123", "expires_in": 3600}),
        "transcribe": AsyncMock(return_value={"text": "I cleaned my room", "confidence": 0.93}),
        "generate_reply": AsyncMock(return_value={"text": "Great job, champion!", "confidence": 0.8}),
        "synthesize_speech": AsyncMock(return_value=b"ID3fake-mp3"),
    }
    with patch.multiple("chorecoach.coach_client", **mocks):
        yield mocks


@pytest.fixture(autouse=True)
def _reset_limiters():
    """Clear every bucket between tests; the registry lives on the app for the whole session."""
    from main import app
    app.state.limiters.reset()
    yield
    app.state.limiters.reset()


@pytest_asyncio.fixture
async def client(mock_coach_client):
    """httpx.AsyncClient using ASGITransport. Bypasses lifespan, so no sweep task runs."""
    import httpx
    from main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
