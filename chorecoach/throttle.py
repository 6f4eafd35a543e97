"""HTTP boundary for the rate limiter: 429 responses, X-RateLimit headers, route dependency."""
from dataclasses import dataclass, field
from typing import Any

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse

from chorecoach.rate_limiter import RateLimitResult

ERROR_CODE = "rate_limit_exceeded"
ERROR_MESSAGE = "Too many requests. Please try again later."


@dataclass(frozen=True)
class Rejection:
    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


class RateLimitExceeded(Exception):
    def __init__(self, rejection: Rejection) -> None:
        super().__init__(rejection.body["message"])
        self.rejection = rejection


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }


def retry_after_seconds(result: RateLimitResult, now: int) -> int:
    """Whole seconds until the bucket's window resets, rounded up."""
    return max(0, -(-(result.reset_at - now) // 1000))


def build_rejection(result: RateLimitResult, now: int) -> Rejection:
    headers = rate_limit_headers(result)
    headers["Retry-After"] = str(retry_after_seconds(result, now))
    return Rejection(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        body={"error": ERROR_CODE, "message": ERROR_MESSAGE, "resetTime": result.reset_at},
        headers=headers,
    )


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    rejection = exc.rejection
    return JSONResponse(status_code=rejection.status_code, content=rejection.body, headers=rejection.headers)


def require_capacity(capability: str):
    """FastAPI dependency factory gating a route on the named limiter.

    Raises RateLimitExceeded (rendered by rate_limit_exceeded_handler) when
    the client is out of tokens; otherwise the quota headers are added to
    the route's response.
    """

    async def dependency(request: Request, response: Response) -> RateLimitResult:
        limiter = request.app.state.limiters[capability]
        now = limiter.now()
        result = limiter.check_limit(request.headers, now)
        if not result.admitted:
            raise RateLimitExceeded(build_rejection(result, now))
        response.headers.update(rate_limit_headers(result))
        return result

    return dependency
