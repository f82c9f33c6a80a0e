"""Generation backend interface.

Every backend answers one prompt with one reply. Backends differ only in
how they reach their model; timeouts, failover and accounting live in the
generation router.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from review_rag.errors import FatalError, RetryableError

DeltaCallback = Callable[[str], Awaitable[None]]


@dataclass
class BackendReply:
    content: str
    token_count: int
    # model-reported confidence, when the backend exposes one
    confidence: Optional[float] = None


class ModelBackend(ABC):
    name: str = "base"

    def __init__(self, model_id: str):
        self.model_id = model_id

    @abstractmethod
    async def generate(self, prompt: str) -> BackendReply:
        """Make one call. Raise RetryableError or FatalError on failure."""

    async def generate_streaming(self, prompt: str, on_delta: DeltaCallback) -> BackendReply:
        """Like generate, forwarding content increments to on_delta.

        Backends without native streaming deliver the whole reply as a
        single increment.
        """
        reply = await self.generate(prompt)
        await on_delta(reply.content)
        return reply

    async def aclose(self) -> None:
        pass


class HttpBackend(ModelBackend):
    """Shared plumbing for JSON-over-HTTPS model APIs."""

    base_url: str = ""

    def __init__(self, model_id: str, api_key: str, client: Optional[httpx.AsyncClient] = None):
        super().__init__(model_id)
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=None)

    @abstractmethod
    def headers(self) -> dict:
        """Auth and version headers sent with every request."""

    async def post_json(self, path: str, payload: dict) -> dict:
        try:
            r = await self._client.post(path, json=payload, headers=self.headers())
        except httpx.TransportError as e:
            raise RetryableError(f"{self.name} transport error: {e.__class__.__name__}") from e

        if r.status_code == 429 or r.status_code >= 500:
            raise RetryableError(f"{self.name} HTTP {r.status_code}")
        if r.status_code >= 400:
            raise FatalError(f"{self.name} HTTP {r.status_code}: {r.text[:200]}")
        return r.json()

    async def aclose(self) -> None:
        await self._client.aclose()
