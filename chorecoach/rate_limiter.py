"""Per-client token-bucket rate limiter (in-memory) and the named limiter registry."""
import asyncio
import contextlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Mapping

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_KEY = "default-client"
DEFAULT_EVICTION_GRACE_MS = 60_000
DEFAULT_CLEANUP_INTERVAL_SECONDS = 300
DEFAULT_SHARDS = 16

# Capability names, tightest budget first.
TOKEN_ISSUANCE = "token"
TEXT_GENERATION = "text-generation"
SPEECH_SYNTHESIS = "speech-synthesis"
TRANSCRIPTION = "transcription"
CAPABILITIES = (TOKEN_ISSUANCE, TEXT_GENERATION, SPEECH_SYNTHESIS, TRANSCRIPTION)


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for k, v in headers.items():
        if k.lower() == lowered:
            return v
    return None


def client_key(headers: Mapping[str, str]) -> str:
    """Derive the client key from proxy headers.

    The leftmost X-Forwarded-For entry is the original client when a reverse
    proxy appends to the chain. X-Real-IP is used when there is no forwarded
    chain, and direct traffic with neither header shares DEFAULT_CLIENT_KEY.
    """
    forwarded = _header(headers, "X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = _header(headers, "X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return DEFAULT_CLIENT_KEY


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

@dataclass
class Bucket:
    tokens: int
    last_refill_at: int
    window_reset_at: int


@dataclass(frozen=True)
class RateLimitResult:
    admitted: bool
    limit: int
    remaining: int
    reset_at: int  # epoch ms
    key: str


class BucketStore:
    """Bucket mapping split into lock-protected shards.

    A key always hashes to the same shard, so every check for one client is
    serialized while checks for other clients mostly take other locks.
    """

    def __init__(self, shards: int = DEFAULT_SHARDS) -> None:
        if shards < 1:
            raise ValueError(f"shards must be >= 1, got {shards}")
        self._shards: list[dict[str, Bucket]] = [{} for _ in range(shards)]
        self._locks = [threading.Lock() for _ in range(shards)]

    @contextlib.contextmanager
    def locked(self, key: str) -> Iterator[dict[str, Bucket]]:
        """Hold the shard lock owning ``key`` and yield that shard's dict."""
        i = hash(key) % len(self._shards)
        with self._locks[i]:
            yield self._shards[i]

    def shards(self) -> Iterator[tuple[threading.Lock, dict[str, Bucket]]]:
        return zip(self._locks, self._shards)

    def get(self, key: str) -> Bucket | None:
        with self.locked(key) as shard:
            return shard.get(key)

    def __contains__(self, key: str) -> bool:
        with self.locked(key) as shard:
            return key in shard

    def __len__(self) -> int:
        total = 0
        for lock, shard in self.shards():
            with lock:
                total += len(shard)
        return total

    def clear(self) -> None:
        for lock, shard in self.shards():
            with lock:
                shard.clear()


# ---------------------------------------------------------------------------
# Admission controller
# ---------------------------------------------------------------------------

class RateLimiter:
    """Token bucket per client key with linear refill.

    ``capacity`` requests are allowed per ``window_ms``. Tokens come back in
    proportion to elapsed time (floor of elapsed / window * capacity), so a
    client idle for a whole window is fully replenished.

    All timestamps are epoch milliseconds. ``now`` may be passed explicitly;
    otherwise the injected ``clock`` is read.
    """

    def __init__(
        self,
        capacity: int,
        window_ms: int,
        key_func: Callable[[Mapping[str, str]], str] | None = None,
        *,
        eviction_grace_ms: int = DEFAULT_EVICTION_GRACE_MS,
        store: BucketStore | None = None,
        clock: Callable[[], int] | None = None,
        name: str = "default",
    ) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        if window_ms <= 0:
            raise ValueError(f"window_ms must be positive, got {window_ms}")
        if eviction_grace_ms < 0:
            raise ValueError(f"eviction_grace_ms must be >= 0, got {eviction_grace_ms}")
        self.name = name
        self.capacity = capacity
        self.window_ms = window_ms
        self.eviction_grace_ms = eviction_grace_ms
        self.key_func = key_func or client_key
        self.store = store if store is not None else BucketStore()
        self._clock = clock or now_ms

    def now(self) -> int:
        return self._clock()

    def check_limit(self, headers: Mapping[str, str], now: int | None = None) -> RateLimitResult:
        """Derive the client key from request headers and consume a token."""
        return self.check_key(self.key_func(headers), now)

    def check_key(self, key: str, now: int | None = None) -> RateLimitResult:
        """Consume one token for ``key`` if any remain. Never blocks on I/O."""
        if now is None:
            now = self._clock()

        with self.store.locked(key) as shard:
            bucket = shard.get(key)
            if bucket is None:
                bucket = Bucket(tokens=self.capacity, last_refill_at=now, window_reset_at=now + self.window_ms)
                shard[key] = bucket

            tokens_to_add = (now - bucket.last_refill_at) * self.capacity // self.window_ms
            if tokens_to_add > 0:
                bucket.tokens = min(self.capacity, bucket.tokens + tokens_to_add)
                bucket.last_refill_at = now
                bucket.window_reset_at = now + self.window_ms

            if bucket.tokens > 0:
                bucket.tokens -= 1
                return RateLimitResult(True, self.capacity, bucket.tokens, bucket.window_reset_at, key)
            reset_at = bucket.window_reset_at

        logger.debug("Rate limit hit on %s for %s", self.name, key)
        return RateLimitResult(False, self.capacity, 0, reset_at, key)

    def cleanup(self, now: int | None = None) -> int:
        """Remove buckets whose window ended more than the grace period ago."""
        if now is None:
            now = self._clock()
        cutoff = now - self.eviction_grace_ms
        evicted = 0
        for lock, shard in self.store.shards():
            with lock:
                stale = [k for k, b in shard.items() if b.window_reset_at < cutoff]
                for k in stale:
                    del shard[k]
                evicted += len(stale)
        return evicted

    @property
    def bucket_count(self) -> int:
        return len(self.store)

    def reset(self) -> None:
        self.store.clear()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def _per_second(limiter: RateLimiter) -> float:
    return limiter.capacity * 1000 / limiter.window_ms


def _check_ordering(limiters: Mapping[str, RateLimiter]) -> None:
    """Warn when overrides make token issuance looser or transcription tighter than the rest."""
    if TOKEN_ISSUANCE in limiters:
        tightest = _per_second(limiters[TOKEN_ISSUANCE])
        for name, limiter in limiters.items():
            if name != TOKEN_ISSUANCE and _per_second(limiter) < tightest:
                logger.warning("Limiter %s is tighter than %s; issuance should be the tightest", name, TOKEN_ISSUANCE)
    if TRANSCRIPTION in limiters:
        loosest = _per_second(limiters[TRANSCRIPTION])
        for name, limiter in limiters.items():
            if name != TRANSCRIPTION and _per_second(limiter) > loosest:
                logger.warning("Limiter %s is looser than %s; transcription should be the loosest", name, TRANSCRIPTION)


def _log_task_death(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception():
        logger.error("Rate limiter cleanup task terminated: %s", task.exception())


class LimiterRegistry:
    """Fixed set of named limiters plus the background sweep that reclaims stale buckets.

    The sweep only runs between ``start()`` and ``stop()``; the host
    application calls these from its startup and shutdown hooks.
    """

    def __init__(self, limiters: Mapping[str, RateLimiter]) -> None:
        self._limiters = dict(limiters)
        self._task: asyncio.Task | None = None
        _check_ordering(self._limiters)

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], int] | None = None) -> "LimiterRegistry":
        grace_ms = settings.rate_limit_eviction_grace_seconds * 1000
        limiters = {}
        for name in CAPABILITIES:
            field = name.replace("-", "_")
            limiters[name] = RateLimiter(
                capacity=getattr(settings, f"rate_limit_{field}_capacity"),
                window_ms=getattr(settings, f"rate_limit_{field}_window_seconds") * 1000,
                eviction_grace_ms=grace_ms,
                store=BucketStore(settings.rate_limit_shards),
                clock=clock,
                name=name,
            )
        return cls(limiters)

    def __getitem__(self, name: str) -> RateLimiter:
        return self._limiters[name]

    def __contains__(self, name: str) -> bool:
        return name in self._limiters

    def items(self):
        return self._limiters.items()

    def bucket_counts(self) -> dict[str, int]:
        return {name: limiter.bucket_count for name, limiter in self._limiters.items()}

    def cleanup(self, now: int | None = None) -> int:
        return sum(limiter.cleanup(now) for limiter in self._limiters.values())

    def reset(self) -> None:
        for limiter in self._limiters.values():
            limiter.reset()

    # -- lifecycle ----------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS) -> None:
        """Start the periodic sweep on the running event loop. Idempotent."""
        if self.running:
            return
        self._task = asyncio.create_task(self._cleanup_loop(interval_seconds))
        self._task.add_done_callback(_log_task_death)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            # A dead task was already reported by _log_task_death.
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Rate limiter cleanup task failed during shutdown")

    async def _cleanup_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                evicted = self.cleanup()
                logger.debug("Rate limiter cleanup evicted %d buckets", evicted)
            except Exception:
                logger.exception("Rate limiter cleanup iteration failed")
