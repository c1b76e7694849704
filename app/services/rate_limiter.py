import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select

from app.core.locks import KeyedLocks
from app.core.utils import utcnow
from app.database import async_session
from app.models.rate_limit import RateLimitHit

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """
    Sliding-window limiter backed by the rate_limit_hits table.

    Each accepted request is one row; a request is allowed while fewer than
    ``max_requests`` rows for (bucket, key) fall inside the window. Rows older
    than the window are pruned on every check.
    """

    # Shared by every instance so the count and the insert for one key never interleave
    _key_locks = KeyedLocks()

    def __init__(self, bucket: str, max_requests: int, window_seconds: int, session_factory=None):
        self.bucket = bucket
        self.max_requests = max_requests
        self.window = timedelta(seconds=window_seconds)
        self.session_factory = session_factory or async_session

    async def hit(self, key: str, now: Optional[datetime] = None) -> bool:
        """Record a request for ``key``. Returns False (and records nothing) when over the limit."""
        now = now or utcnow()
        cutoff = now - self.window

        async with self._key_locks.hold((self.bucket, key)):
            async with self.session_factory() as db:
                await db.execute(
                    delete(RateLimitHit)
                    .where(RateLimitHit.bucket == self.bucket)
                    .where(RateLimitHit.key == key)
                    .where(RateLimitHit.hit_at <= cutoff)
                )
                count = (await db.execute(
                    select(func.count(RateLimitHit.id))
                    .where(RateLimitHit.bucket == self.bucket)
                    .where(RateLimitHit.key == key)
                )).scalar() or 0

                if count >= self.max_requests:
                    await db.commit()
                    logger.warning("Rate limit hit for %s/%s (%d requests in %ss)",
                                   self.bucket, key, count, int(self.window.total_seconds()))
                    return False

                db.add(RateLimitHit(bucket=self.bucket, key=key, hit_at=now))
                await db.commit()
        return True
