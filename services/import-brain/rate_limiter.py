"""Per-actor request quota over fixed one-minute windows."""

import logging
import math
import time
from typing import Callable

from config import settings
from errors import RateLimited
from storage import RateLimitStore

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60


class RateLimiter:
    def __init__(
        self,
        store: RateLimitStore,
        requests_per_minute: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._ceiling = requests_per_minute if requests_per_minute is not None else settings.RATE_LIMIT_PER_MINUTE
        self._clock = clock

    async def acquire(self, actor_id: str) -> None:
        """Count one request for actor_id or raise RateLimited.

        Rejected requests do not increment the window count.
        """
        now = self._clock()
        window_start = math.floor(now / WINDOW_SECONDS) * WINDOW_SECONDS
        window = await self._store.consume(actor_id, window_start, self._ceiling)
        if window is None:
            retry_after = max(1, math.ceil(window_start + WINDOW_SECONDS - now))
            logger.warning("Rate limit reached for actor %s, retry after %ds", actor_id, retry_after)
            raise RateLimited(retry_after)
