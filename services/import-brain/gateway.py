"""Single entry point for inference-service calls.

Every call goes through input validation, the per-actor rate limiter, the
response cache and the retry policy, in that order. The network call itself
runs as a shielded background task: a caller that stops waiting does not
abort it, and a late result still lands in the cache.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

from pydantic import BaseModel

from cache import ResponseCache, make_cache_key
from config import settings
from errors import ValidationError
from inference_client import InferenceRequest
from rate_limiter import RateLimiter
from retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    async def complete(self, request: InferenceRequest) -> str: ...


class InferenceReply(BaseModel):
    content: str
    cache_hit: bool = False


class InferenceGateway:
    def __init__(
        self,
        client: CompletionClient,
        cache: ResponseCache,
        limiter: RateLimiter,
        policy: RetryPolicy | None = None,
        max_request_chars: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self._cache = cache
        self._limiter = limiter
        self._policy = policy or RetryPolicy.from_settings()
        self._max_chars = max_request_chars if max_request_chars is not None else settings.MAX_REQUEST_CHARS
        self._sleep = sleep
        self._background: set[asyncio.Task] = set()

    async def complete(
        self,
        request: InferenceRequest,
        actor_id: str,
        context: dict[str, Any] | None = None,
    ) -> InferenceReply:
        self._validate(request)
        await self._limiter.acquire(actor_id)

        key = make_cache_key(request.cache_text(), context)
        cached = await self._cache.lookup(key)
        if cached is not None:
            logger.info("Inference cache hit (actor=%s key=%s)", actor_id, key[:12])
            return InferenceReply(content=cached, cache_hit=True)

        call = self._spawn(self._fetch_and_store(request, key))
        content = await asyncio.shield(call)
        return InferenceReply(content=content, cache_hit=False)

    async def drain(self):
        """Wait for in-flight calls and cache writes to settle."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _validate(self, request: InferenceRequest):
        text = f"{request.prompt}{request.content}"
        if not text.strip() and not request.images:
            raise ValidationError("Inference request cannot be empty")
        if len(request.content) > self._max_chars:
            raise ValidationError(
                f"Request content is too long ({len(request.content)} chars, max {self._max_chars})"
            )

    async def _fetch_and_store(self, request: InferenceRequest, key: str) -> str:
        content = await call_with_retry(
            lambda: self._client.complete(request),
            self._policy,
            sleep=self._sleep,
        )
        # Write-through happens off the caller's path.
        self._spawn(self._cache.store(key, content))
        return content

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._forget)
        return task

    def _forget(self, task: asyncio.Task):
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            # Retrieved here so abandoned calls do not warn on garbage collection.
            logger.debug("Background inference task ended with %r", task.exception())
