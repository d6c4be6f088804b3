"""Rate limiting for public intake submissions"""
from datetime import datetime, timedelta, timezone
from typing import Optional
import os
import logging

logger = logging.getLogger(__name__)

RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))
RATE_LIMIT_WINDOW_MINUTES = int(os.getenv("RATE_LIMIT_WINDOW_MINUTES", "15"))


class RateLimiter:
    def __init__(self):
        # In-memory, per process
        self.attempts = {}

    async def check_rate_limit(
        self,
        key: str,
        max_attempts: int = RATE_LIMIT_MAX_REQUESTS,
        window_minutes: int = RATE_LIMIT_WINDOW_MINUTES,
        now: Optional[datetime] = None,
    ) -> tuple[bool, Optional[str]]:
        """
        Check if rate limit is exceeded.

        Returns:
            (allowed: bool, error_message: Optional[str])
        """
        now = now or datetime.now(timezone.utc)

        # Clean old entries
        if key in self.attempts:
            self.attempts[key] = [
                timestamp for timestamp in self.attempts[key]
                if now - timestamp < timedelta(minutes=window_minutes)
            ]
        else:
            self.attempts[key] = []

        # Check limit
        if len(self.attempts[key]) >= max_attempts:
            oldest = min(self.attempts[key])
            wait_until = oldest + timedelta(minutes=window_minutes)
            wait_seconds = int((wait_until - now).total_seconds())

            logger.warning(f"Rate limit exceeded for {key}")
            return False, f"Too many requests. Try again in {wait_seconds} seconds"

        # Record attempt
        self.attempts[key].append(now)
        return True, None

    def reset(self):
        self.attempts.clear()


rate_limiter = RateLimiter()
