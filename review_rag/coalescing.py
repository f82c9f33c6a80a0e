"""Request coalescing keyed by (project, content_hash).

Within one process, concurrent callers for the same key share an asyncio
future. With a redis client the leader also holds a ``SET NX PX`` lock so
callers on other instances poll for the published result instead of
paying for their own generation. Waiters give up after ``wait_timeout_s``
(or as soon as the leader fails) and run their own attempt.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import asdict
from typing import Awaitable, Callable, Dict, Hashable, Optional, Tuple

from redis.exceptions import RedisError

from review_rag.generation_router import GenerationResult

logger = logging.getLogger(__name__)

Factory = Callable[[], Awaitable[GenerationResult]]


_FAILED = object()


class SingleFlight:
    """Collapse concurrent identical calls in this process into one.

    Callers that arrive while a call is running share its result. If that
    call fails they make their own attempt rather than inherit the error.
    """

    def __init__(self):
        self._calls: Dict[Hashable, asyncio.Future] = {}

    async def do(self, key: Hashable, factory: Callable[[], Awaitable]):
        fut = self._calls.get(key)
        if fut is not None:
            result = await asyncio.shield(fut)
            if result is not _FAILED:
                return result
            return await factory()

        fut = asyncio.get_running_loop().create_future()
        self._calls[key] = fut
        try:
            result = await factory()
            fut.set_result(result)
            return result
        finally:
            if not fut.done():
                fut.set_result(_FAILED)
            if self._calls.get(key) is fut:
                del self._calls[key]


class Coalescer:
    def __init__(
        self,
        redis=None,
        wait_timeout_s: float = 10.0,
        result_ttl_s: int = 60,
        poll_interval_s: float = 0.05,
    ):
        self.r = redis
        self.wait_timeout_s = wait_timeout_s
        self.result_ttl_s = result_ttl_s
        self.poll_interval_s = poll_interval_s
        self._inflight: Dict[Tuple[str, str], asyncio.Future] = {}

    @staticmethod
    def _lock_key(project_id: str, content_hash: str) -> str:
        return f"coalesce:lock:{project_id}:{content_hash}"

    @staticmethod
    def _result_key(project_id: str, content_hash: str) -> str:
        return f"coalesce:result:{project_id}:{content_hash}"

    async def run(
        self, project_id: str, content_hash: str, factory: Factory
    ) -> Tuple[GenerationResult, bool]:
        """Return (result, shared). shared is True when the result came from
        another caller's generation and must not be billed again."""
        key = (project_id, content_hash)

        leader = self._inflight.get(key)
        if leader is not None:
            result = await self._wait_local(leader)
            if result is not None:
                return result, True
            logger.info("Coalesced wait on %s gave up, generating independently", content_hash[:12])
            return await factory(), False

        fut = asyncio.get_running_loop().create_future()
        self._inflight[key] = fut
        token: Optional[str] = None
        try:
            if self.r is not None:
                token = await self._try_lock(project_id, content_hash)
                if token is None:
                    result = await self._wait_remote(project_id, content_hash)
                    if result is not None:
                        fut.set_result(result)
                        return result, True
                    logger.info(
                        "Remote leader for %s did not publish in time, generating independently",
                        content_hash[:12],
                    )

            result = await factory()
            fut.set_result(result)
            if token is not None:
                await self._publish(project_id, content_hash, result)
            return result, False
        finally:
            if not fut.done():
                # leader failed or was cancelled; waiters fall back to their own attempt
                fut.set_result(None)
            if self._inflight.get(key) is fut:
                del self._inflight[key]
            if token is not None:
                await self._unlock(project_id, content_hash, token)

    async def _wait_local(self, fut: asyncio.Future) -> Optional[GenerationResult]:
        try:
            return await asyncio.wait_for(asyncio.shield(fut), timeout=self.wait_timeout_s)
        except asyncio.TimeoutError:
            return None

    async def _try_lock(self, project_id: str, content_hash: str) -> Optional[str]:
        """Return our lock token, or None when another instance leads."""
        token = uuid.uuid4().hex
        try:
            acquired = await self.r.set(
                self._lock_key(project_id, content_hash),
                token,
                nx=True,
                px=int(self.wait_timeout_s * 1000),
            )
        except RedisError as e:
            logger.warning("Coalescing lock unavailable, continuing single-instance: %s", e)
            return token
        return token if acquired else None

    async def _wait_remote(self, project_id: str, content_hash: str) -> Optional[GenerationResult]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_timeout_s
        result_key = self._result_key(project_id, content_hash)
        lock_key = self._lock_key(project_id, content_hash)
        try:
            while loop.time() < deadline:
                raw = await self.r.get(result_key)
                if raw is not None:
                    return GenerationResult(**json.loads(raw))
                if not await self.r.exists(lock_key):
                    # leader released without publishing: it failed
                    return None
                await asyncio.sleep(self.poll_interval_s)
        except RedisError as e:
            logger.warning("Coalescing wait aborted: %s", e)
        return None

    async def _publish(self, project_id: str, content_hash: str, result: GenerationResult) -> None:
        try:
            await self.r.setex(
                self._result_key(project_id, content_hash),
                self.result_ttl_s,
                json.dumps(asdict(result)),
            )
        except RedisError as e:
            logger.warning("Could not publish coalesced result: %s", e)

    async def _unlock(self, project_id: str, content_hash: str, token: str) -> None:
        lock_key = self._lock_key(project_id, content_hash)
        try:
            if await self.r.get(lock_key) == token:
                await self.r.delete(lock_key)
        except RedisError as e:
            logger.warning("Could not release coalescing lock: %s", e)
