"""ChoreCoach — FastAPI entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from chorecoach import coach_client
from chorecoach.config import settings
from chorecoach.rate_limiter import LimiterRegistry
from chorecoach.routers import voice_coach
from chorecoach.throttle import RateLimitExceeded, rate_limit_exceeded_handler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    coach_client.init_client()
    missing = [name for name, ok in coach_client.configured_upstreams().items() if not ok]
    if missing:
        logger.warning("Upstreams not configured: %s", ", ".join(missing))

    limiters: LimiterRegistry = app.state.limiters
    limiters.start(settings.rate_limit_cleanup_interval_seconds)
    logger.info("Rate limiters ready: %s", ", ".join(name for name, _ in limiters.items()))

    yield

    await limiters.stop()
    await coach_client.close_client()


app = FastAPI(
    title=settings.app_name,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)
app.state.limiters = LimiterRegistry.from_settings(settings)
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.include_router(voice_coach.router)


@app.get("/health")
async def health():
    limiters: LimiterRegistry = app.state.limiters
    return {"status": "ok", "sweeping": limiters.running, "limiters": limiters.bucket_counts()}
