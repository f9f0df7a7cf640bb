"""
Shared delivery status cache backed by Redis, with a circuit breaker.

Every API process reads and writes the same keys, so a status recorded by
one process is visible to the others. The database stays the source of
truth: when Redis is not configured, unreachable, or the circuit is open,
reads miss and callers rebuild the status from stored events.

Usage:
    from app.services.status_cache import get_status_cache

    cache = get_status_cache()
    await cache.set(event_ref, DeliveryStatus.OPENED)
    status = await cache.get(event_ref)
"""

import logging
import time
from enum import IntEnum
from typing import Optional

import redis.asyncio as redis

from app.config import settings
from app.schemas.tracking import DeliveryStatus

logger = logging.getLogger(__name__)

KEY_PREFIX = "delivery_status"


class TTL(IntEnum):
    """Cache TTL presets in seconds."""

    SHORT = 60
    MEDIUM = 300
    LONG = 3600
    DAY = 86400


class CircuitState(IntEnum):
    """Circuit breaker states."""

    CLOSED = 0  # Normal operation
    OPEN = 1  # Failing, skip Redis
    HALF_OPEN = 2  # Testing recovery


class DeliveryStatusCache:
    """
    Latest delivery status per SENT event id, shared through Redis.

    Errors never propagate: a failed read is a miss, a failed write is
    reported as False. Repeated failures open the circuit so a Redis outage
    costs one timeout per recovery window rather than one per request.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl: int = TTL.LONG,
        failure_threshold: int = 5,
        recovery_timeout: int = 30,
        client=None,
    ):
        """
        Args:
            redis_url: Redis connection URL (e.g., redis://localhost:6379/0)
            ttl: Seconds a cached status lives; bounds how long a stale value survives
            failure_threshold: Number of failures before opening the circuit
            recovery_timeout: Seconds to wait before testing recovery
            client: Pre-built async Redis client, used instead of redis_url
        """
        self._redis_url = redis_url
        self._client = client
        self._ttl = int(ttl)
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout

        self._circuit_state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0

        self._hits = 0
        self._misses = 0

    @staticmethod
    def key(event_ref: int) -> str:
        return f"{KEY_PREFIX}:{event_ref}"

    def _get_client(self):
        if self._client is None and self._redis_url:
            try:
                self._client = redis.from_url(
                    self._redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
            except (ValueError, redis.RedisError) as e:
                logger.warning(f"Failed to create Redis client: {e}")
                self._redis_url = None
        return self._client

    def _check_circuit(self) -> bool:
        if self._circuit_state == CircuitState.CLOSED:
            return True

        if self._circuit_state == CircuitState.OPEN:
            if time.time() - self._last_failure_time >= self._recovery_timeout:
                self._circuit_state = CircuitState.HALF_OPEN
                logger.info("Status cache circuit breaker entering half-open state")
                return True
            return False

        return True

    def _record_success(self):
        if self._circuit_state == CircuitState.HALF_OPEN:
            self._circuit_state = CircuitState.CLOSED
            self._failure_count = 0
            logger.info("Status cache circuit breaker closed (recovered)")

    def _record_failure(self):
        self._failure_count += 1
        self._last_failure_time = time.time()

        if self._circuit_state == CircuitState.HALF_OPEN:
            self._circuit_state = CircuitState.OPEN
            logger.warning("Status cache circuit breaker opened (failed recovery)")
        elif self._failure_count >= self._failure_threshold:
            self._circuit_state = CircuitState.OPEN
            logger.warning(f"Status cache circuit breaker opened after {self._failure_count} failures")

    async def get(self, event_ref: int) -> Optional[DeliveryStatus]:
        """Cached status, or None on a miss or when Redis is unavailable."""
        if not self._check_circuit():
            return None
        client = self._get_client()
        if client is None:
            return None

        try:
            value = await client.get(self.key(event_ref))
            self._record_success()
        except Exception as e:
            logger.debug(f"Status cache get error for {event_ref}: {e}")
            self._record_failure()
            return None

        if value is None:
            self._misses += 1
            return None
        try:
            status = DeliveryStatus(value)
        except ValueError:
            logger.debug(f"Ignoring unknown cached status {value!r} for {event_ref}")
            self._misses += 1
            return None
        self._hits += 1
        return status

    async def set(self, event_ref: int, status: DeliveryStatus) -> bool:
        if not self._check_circuit():
            return False
        client = self._get_client()
        if client is None:
            return False

        try:
            await client.setex(self.key(event_ref), self._ttl, DeliveryStatus(status).value)
            self._record_success()
            return True
        except Exception as e:
            logger.debug(f"Status cache set error for {event_ref}: {e}")
            self._record_failure()
            return False

    async def delete(self, event_ref: int) -> bool:
        if not self._check_circuit():
            return False
        client = self._get_client()
        if client is None:
            return False

        try:
            await client.delete(self.key(event_ref))
            self._record_success()
            return True
        except Exception as e:
            logger.debug(f"Status cache delete error for {event_ref}: {e}")
            self._record_failure()
            return False

    def get_stats(self) -> dict:
        total = self._hits + self._misses
        hit_rate = (self._hits / total * 100) if total > 0 else 0.0

        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(hit_rate, 2),
            "circuit_state": self._circuit_state.name,
            "failure_count": self._failure_count,
        }

    @property
    def is_available(self) -> bool:
        return (self._client is not None or self._redis_url is not None) and self._check_circuit()


_status_cache: Optional[DeliveryStatusCache] = None


def get_status_cache() -> DeliveryStatusCache:
    """Process-wide status cache configured from REDIS_URL."""
    global _status_cache
    if _status_cache is None:
        _status_cache = DeliveryStatusCache(
            redis_url=settings.REDIS_URL,
            ttl=settings.DELIVERY_STATUS_CACHE_TTL_SECONDS,
        )
    return _status_cache
