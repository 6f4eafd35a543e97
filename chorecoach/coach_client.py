"""Upstream client for the voice coach AI services (token, transcription, replies, speech)."""
import logging
from typing import Any

import httpx

from chorecoach.config import settings

logger = logging.getLogger(__name__)

SESSION_TOKEN_TTL = 3600

# upstream name -> settings attribute holding its URL
UPSTREAMS = {
    "token": "token_url",
    "transcribe": "transcribe_url",
    "respond": "respond_url",
    "speech": "speech_url",
}


class UpstreamNotConfigured(RuntimeError):
    pass


# ---------------------------------------------------------------------------
# Persistent HTTP client
# ---------------------------------------------------------------------------
_client: httpx.AsyncClient | None = None


def _require_client() -> httpx.AsyncClient:
    if _client is None:
        raise RuntimeError("Coach client not initialized, call init_client() first")
    return _client


def init_client() -> None:
    global _client
    if _client is not None:
        return
    headers = {"Content-Type": "application/json"}
    if settings.upstream_api_key:
        headers["Authorization"] = f"Bearer {settings.upstream_api_key}"
    _client = httpx.AsyncClient(headers=headers, timeout=settings.upstream_timeout_seconds)


async def close_client() -> None:
    global _client
    if _client:
        await _client.aclose()
        _client = None


def configured_upstreams() -> dict[str, bool]:
    return {name: bool(getattr(settings, attr)) for name, attr in UPSTREAMS.items()}


async def _post(upstream: str, payload: dict[str, Any]) -> httpx.Response:
    url = getattr(settings, UPSTREAMS[upstream])
    if not url:
        raise UpstreamNotConfigured(f"{upstream} upstream is not configured")
    resp = await _require_client().post(url, json=payload)
    if resp.is_error:
        logger.error("%s upstream returned %s: %s", upstream, resp.status_code, resp.text[:200])
    resp.raise_for_status()
    return resp


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------

async def issue_session_token() -> dict[str, Any]:
    """Mint a short-lived real-time transcription token so the API key stays server-side."""
    resp = await _post("token", {"expires_in": SESSION_TOKEN_TTL})
    data = resp.json()
    return {"token": data.get("token"), "expires_in": data.get("expires_in", SESSION_TOKEN_TTL)}


async def transcribe(payload: dict[str, Any]) -> dict[str, Any]:
    resp = await _post("transcribe", payload)
    return resp.json()


async def generate_reply(payload: dict[str, Any]) -> dict[str, Any]:
    resp = await _post("respond", payload)
    return resp.json()


async def synthesize_speech(payload: dict[str, Any]) -> bytes:
    resp = await _post("speech", payload)
    return resp.content
