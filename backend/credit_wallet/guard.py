"""
Credit Request Guard - Pre-transaction checks for mutation endpoints

Enforces, before any database access:
- Write rate limiting (sliding window per client)
- Request freshness (X-Request-Timestamp within the skew window)
- Presence and shape of the Idempotency-Key header

The timestamp window bounds how long a captured request can be replayed,
independently of idempotency-key protection.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from fastapi import Depends, Header, Request

from .config import IDEMPOTENCY_KEY_MAX_LENGTH, RATE_LIMITS, TIMESTAMP_SKEW_SECONDS
from .errors import BadTimestamp, MissingIdempotencyKey, RateLimited, StaleRequest, ValidationError

logger = logging.getLogger(__name__)


def check_request_timestamp(
    value: Optional[str],
    now: Optional[datetime] = None,
    skew_seconds: int = TIMESTAMP_SKEW_SECONDS,
) -> datetime:
    """
    Parse an RFC 3339 timestamp and require it to be within the skew window.

    Returns:
        The parsed, timezone-aware timestamp
    """
    if not value:
        raise BadTimestamp("Missing X-Request-Timestamp")

    try:
        stamp = datetime.fromisoformat(value.strip().upper().replace('Z', '+00:00'))
    except ValueError:
        raise BadTimestamp()

    if stamp.tzinfo is None:
        raise BadTimestamp()

    now = now or datetime.now(timezone.utc)
    if abs((now - stamp).total_seconds()) > skew_seconds:
        raise StaleRequest()
    return stamp


def read_idempotency_key(value: Optional[str]) -> str:
    key = (value or "").strip()
    if not key:
        raise MissingIdempotencyKey()
    if len(key) > IDEMPOTENCY_KEY_MAX_LENGTH:
        raise ValidationError(f"Idempotency-Key must be at most {IDEMPOTENCY_KEY_MAX_LENGTH} characters")
    return key


class WriteRateLimiter:
    """
    In-memory sliding-window limiter for write endpoints.

    Format of the cache: {client_key: [timestamp, ...]}

    Clients are keyed by IP, so the cache is swept of clients with no write
    inside the window once it reaches sweep_threshold entries (at most once
    per window).
    """

    def __init__(
        self,
        max_calls: int = RATE_LIMITS["max_writes_per_window"],
        window_seconds: int = RATE_LIMITS["window_seconds"],
        sweep_threshold: int = RATE_LIMITS["sweep_threshold"],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.sweep_threshold = sweep_threshold
        self._clock = clock
        self._calls: Dict[str, List[float]] = {}
        self._last_sweep = clock()
        self._lock = asyncio.Lock()

    @property
    def tracked_clients(self) -> int:
        return len(self._calls)

    def _sweep(self, now: float):
        stale = [key for key, calls in self._calls.items() if now - calls[-1] >= self.window_seconds]
        for key in stale:
            del self._calls[key]
        self._last_sweep = now
        if stale:
            logger.debug(f"Write limiter dropped {len(stale)} idle clients")

    async def hit(self, client_key: str):
        """Record a write for client_key, or raise RateLimited if the window is full."""
        async with self._lock:
            now = self._clock()
            if len(self._calls) >= self.sweep_threshold and now - self._last_sweep >= self.window_seconds:
                self._sweep(now)

            recent = [ts for ts in self._calls.get(client_key, []) if now - ts < self.window_seconds]

            if len(recent) >= self.max_calls:
                self._calls[client_key] = recent
                wait_time = int(self.window_seconds - (now - recent[0])) + 1
                logger.warning(f"Write rate limit hit for {client_key}")
                raise RateLimited(retry_after=wait_time)

            recent.append(now)
            self._calls[client_key] = recent


# ==================== FASTAPI DEPENDENCIES ====================

def get_write_limiter(request: Request) -> WriteRateLimiter:
    return request.app.state.write_limiter


async def limit_writes(request: Request, limiter: WriteRateLimiter = Depends(get_write_limiter)):
    client_key = request.client.host if request.client else "unknown"
    await limiter.hit(client_key)


def require_fresh_timestamp(
    x_request_timestamp: Optional[str] = Header(None, alias="X-Request-Timestamp"),
) -> datetime:
    return check_request_timestamp(x_request_timestamp)


def require_idempotency_key(
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> str:
    return read_idempotency_key(idempotency_key)
