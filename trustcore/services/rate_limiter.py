"""Fixed-window rate limiting over the shared keyed store."""

import math
import time
from typing import Callable

from trustcore.config import RateLimitProfile, settings
from trustcore.exceptions import RateLimitError, StoreUnavailableError, ValidationError
from trustcore.logging.config import get_logger
from trustcore.models.rate_limit import RateLimitResult
from trustcore.store.base import KeyedStore, now_ms

logger = get_logger(__name__)


class RateLimiter:
    """
    Fixed-window rate limiter.

    Counts requests per (scope, subject) in the keyed store; the window
    starts with the first request and its expiry is never extended. Bursts
    straddling a window boundary can admit up to twice the limit.

    Fails open: if the store cannot be reached the request is allowed.
    """

    def __init__(
        self,
        store: KeyedStore,
        profiles: dict[str, RateLimitProfile] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize rate limiter.

        Args:
            store: Keyed store holding the counters
            profiles: Named (window, max) pairs (defaults to settings)
            clock: Returns the current time as epoch seconds
        """
        self.store = store
        self.profiles = dict(profiles if profiles is not None else settings.rate_limit_profiles)
        self._clock = clock

    async def check_and_increment(
        self, scope: str, subject_key: str, window_ms: int, max_requests: int
    ) -> RateLimitResult:
        """
        Count one request and decide whether it is allowed.

        Args:
            scope: Operation class, e.g. "login" or "api_key"
            subject_key: Who is counted, e.g. "ip:10.0.0.1"
            window_ms: Window length
            max_requests: Requests allowed per window

        Returns:
            Decision with remaining budget and window reset time

        Raises:
            ValidationError: If any argument is empty or not positive
        """
        if not scope or not subject_key:
            raise ValidationError("scope and subject_key are required")
        if window_ms <= 0 or max_requests <= 0:
            raise ValidationError("window_ms and max_requests must be positive")

        key = f"rl:{scope}:{subject_key}"
        try:
            counter = await self.store.increment(key, window_ms)
        except StoreUnavailableError as e:
            logger.error(
                "Rate limit store unavailable, allowing request",
                extra={
                    "context": {"scope": scope, "subject": subject_key, "error_message": e.message}
                },
            )
            return RateLimitResult(
                allowed=True,
                limit=max_requests,
                remaining=max_requests,
                reset_at=now_ms(self._clock) + window_ms,
            )

        allowed = counter.count <= max_requests
        retry_after = None
        if not allowed:
            wait_ms = max(counter.expires_at - now_ms(self._clock), 0)
            retry_after = max(1, math.ceil(wait_ms / 1000))
            logger.info(
                "Rate limit exceeded",
                extra={
                    "context": {
                        "scope": scope,
                        "subject": subject_key,
                        "count": counter.count,
                        "limit": max_requests,
                    }
                },
            )
        return RateLimitResult(
            allowed=allowed,
            limit=max_requests,
            remaining=max(0, max_requests - counter.count),
            reset_at=counter.expires_at,
            retry_after=retry_after,
        )

    def get_profile(self, profile_name: str) -> RateLimitProfile:
        try:
            return self.profiles[profile_name]
        except KeyError as e:
            raise ValidationError(
                f"Unknown rate limit profile: {profile_name}", field="profile"
            ) from e

    async def check_profile(self, profile_name: str, subject_key: str) -> RateLimitResult:
        """Check a request against a named profile; the profile name is the scope."""
        profile = self.get_profile(profile_name)
        return await self.check_and_increment(
            profile_name, subject_key, profile.window_ms, profile.max_requests
        )

    async def enforce(self, profile_name: str, subject_key: str) -> RateLimitResult:
        """
        Like check_profile, but raise when the request is not allowed.

        Raises:
            RateLimitError: If the profile's limit is exhausted
        """
        result = await self.check_profile(profile_name, subject_key)
        if not result.allowed:
            raise RateLimitError(
                message="Too many requests, please try again later",
                retry_after=result.retry_after or 1,
                details={"limit": result.limit, "reset_at": result.reset_at},
            )
        return result

    @staticmethod
    def client_key(client_ip: str, user_id: str | None = None) -> str:
        """Authenticated callers are counted per user, others per IP."""
        if user_id:
            return f"user:{user_id}"
        return f"ip:{client_ip or 'unknown'}"
