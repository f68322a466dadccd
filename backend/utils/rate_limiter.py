"""In-memory sliding-window rate limiting for public billing endpoints."""
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
import logging

from utils.errors import TooManyRequests

logger = logging.getLogger(__name__)

class RateLimiter:
    def __init__(self):
        # Per-process only; each worker keeps its own window
        self.attempts: Dict[str, List[datetime]] = {}
    
    async def check_rate_limit(
        self,
        key: str,
        max_attempts: int,
        window_seconds: int
    ) -> tuple[bool, Optional[int]]:
        """
        Record an attempt for key unless the window is full.
        
        Returns:
            (allowed, retry_after_seconds)
        """
        now = datetime.now(timezone.utc)
        window = timedelta(seconds=window_seconds)
        recent = [ts for ts in self.attempts.get(key, []) if now - ts < window]
        
        if len(recent) >= max_attempts:
            self.attempts[key] = recent
            retry_after = int((min(recent) + window - now).total_seconds()) + 1
            return False, retry_after
        
        recent.append(now)
        self.attempts[key] = recent
        return True, None

    async def enforce(self, key: str, max_attempts: int, window_seconds: int) -> None:
        """Raise TooManyRequests when key is over its limit."""
        allowed, retry_after = await self.check_rate_limit(key, max_attempts, window_seconds)
        if not allowed:
            logger.warning("RATE_LIMITED key=%s retry_after=%s", key, retry_after)
            raise TooManyRequests(
                f"Rate limit exceeded. Try again in {retry_after} seconds",
                errors={"retry_after": retry_after},
            )

    def reset(self) -> None:
        self.attempts.clear()

rate_limiter = RateLimiter()
