"""Voice coach API router: rate-limited proxies to the AI upstreams."""
import logging
import random
from typing import Any, Awaitable, Callable

import httpx
from fastapi import APIRouter, Depends, HTTPException, Response, status

from chorecoach import coach_client
from chorecoach.models import ReplyRequest, SpeechRequest, TranscriptionRequest
from chorecoach.rate_limiter import (
    SPEECH_SYNTHESIS,
    TEXT_GENERATION,
    TOKEN_ISSUANCE,
    TRANSCRIPTION,
    RateLimitResult,
)
from chorecoach.throttle import rate_limit_headers, require_capacity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/voice-coach")


# Used when reply generation fails so the child still hears encouragement.
FALLBACK_CONFIDENCE = 0.5
FALLBACK_REPLIES = (
    "Great job working on your chores! Keep up the awesome work!",
    "You're doing fantastic! Every chore completed makes you stronger!",
    "I'm proud of your hard work! You're becoming a real chore champion!",
    "Way to go! Your dedication to completing chores is inspiring!",
    "Excellent effort! You're building great habits that will help you succeed!",
)


def fallback_reply(context: dict[str, Any]) -> str:
    """Canned encouragement, personalised from the chore context when possible."""
    completed = context.get("completed_chores") or context.get("completedChores")
    if completed:
        chore = completed[0]
        return f"Amazing work completing {chore.get('title')}! You earned {chore.get('points', 0)} points!"
    points = context.get("points")
    if isinstance(points, (int, float)) and points > 0:
        return f"You have {points} points! That's incredible progress on your chore journey!"
    return random.choice(FALLBACK_REPLIES)


async def _proxy(call: Callable[..., Awaitable[Any]], *args: Any) -> Any:
    try:
        return await call(*args)
    except coach_client.UpstreamNotConfigured as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    except httpx.HTTPStatusError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Upstream returned {exc.response.status_code}")
    except Exception:
        logger.exception("Upstream call %s failed", getattr(call, "__name__", call))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Upstream call failed")


@router.post("/token")
async def issue_token(_: RateLimitResult = Depends(require_capacity(TOKEN_ISSUANCE))):
    return await _proxy(coach_client.issue_session_token)


@router.post("/transcribe")
async def transcribe(body: TranscriptionRequest, _: RateLimitResult = Depends(require_capacity(TRANSCRIPTION))):
    return await _proxy(coach_client.transcribe, body.model_dump(exclude_none=True))


@router.post("/respond")
async def respond(body: ReplyRequest, _: RateLimitResult = Depends(require_capacity(TEXT_GENERATION))):
    try:
        return await coach_client.generate_reply(body.model_dump())
    except coach_client.UpstreamNotConfigured as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    except Exception:
        logger.exception("Reply generation failed, sending fallback reply")
        return {"text": fallback_reply(body.context), "confidence": FALLBACK_CONFIDENCE, "isFallback": True}


@router.post("/speech")
async def speech(body: SpeechRequest, result: RateLimitResult = Depends(require_capacity(SPEECH_SYNTHESIS))):
    audio = await _proxy(coach_client.synthesize_speech, body.model_dump(exclude_none=True))
    # A returned Response bypasses the dependency's header injection.
    return Response(content=audio, media_type="audio/mpeg", headers=rate_limit_headers(result))


@router.get("/config")
async def config():
    """Which upstreams are configured. Never exposes the keys themselves."""
    upstreams = coach_client.configured_upstreams()
    return {"ready": all(upstreams.values()), "upstreams": upstreams}
