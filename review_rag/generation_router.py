"""Ordered model failover under timeout, admission and budget control.

A request is admitted per organization through an ``AdmissionGate``:
up to ``concurrency_cap`` calls run at once, up to ``queue_depth`` more
wait for a slot, and anything beyond that is rejected with ``Throttled``
straight away. Once admitted, backends are tried in order; a timeout or a
RetryableError moves on to the next backend with no delay in between.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from review_rag.errors import GenerationFailed, RetryableError, Throttled
from review_rag.ledger import UsageLedger
from review_rag.providers.base import BackendReply, DeltaCallback, ModelBackend
from review_rag.response_parser import confidence_score

logger = logging.getLogger(__name__)

ResetCallback = Callable[[], Awaitable[None]]


@dataclass
class GenerationResult:
    content: str
    token_count: int
    latency_ms: int
    model: str
    backend: str
    confidence_score: float
    cost_usd: float
    # failures of the models tried before this one succeeded
    failed_attempts: Dict[str, str] = field(default_factory=dict)


class AdmissionGate:
    def __init__(self, org_id: str, cap: int, max_queue: int):
        self.org_id = org_id
        self.cap = cap
        self.max_queue = max_queue
        self.inflight = 0
        self.waiting = 0
        self._slots = asyncio.Semaphore(cap)

    async def acquire(self) -> None:
        if self._slots.locked():
            if self.waiting >= self.max_queue:
                raise Throttled(self.org_id, self.inflight, self.waiting)
            self.waiting += 1
            try:
                await self._slots.acquire()
            finally:
                self.waiting -= 1
        else:
            await self._slots.acquire()
        self.inflight += 1

    def release(self) -> None:
        self.inflight -= 1
        self._slots.release()


class GenerationRouter:
    def __init__(
        self,
        backends: List[ModelBackend],
        ledger: UsageLedger,
        timeout_s: float = 3.0,
        concurrency_cap: int = 10,
        queue_depth_multiplier: int = 2,
        pricing_per_1k_tokens: Optional[Dict[str, float]] = None,
    ):
        self.backends = backends
        self.ledger = ledger
        self.timeout_s = timeout_s
        self.concurrency_cap = concurrency_cap
        self.queue_depth = concurrency_cap * queue_depth_multiplier
        self.pricing = pricing_per_1k_tokens or {}
        self._gates: Dict[str, AdmissionGate] = {}

    def gate(self, org_id: str) -> AdmissionGate:
        gate = self._gates.get(org_id)
        if gate is None:
            gate = AdmissionGate(org_id, self.concurrency_cap, self.queue_depth)
            self._gates[org_id] = gate
        return gate

    @asynccontextmanager
    async def _admitted(self, org_id: str):
        gate = self.gate(org_id)
        await gate.acquire()
        await self.ledger.acquire_inflight(org_id)
        try:
            yield
        finally:
            gate.release()
            await self.ledger.release_inflight(org_id)

    def cost_for(self, backend: str, tokens: int) -> float:
        return self.pricing.get(backend, 0.0) * tokens / 1000.0

    async def generate(
        self,
        org_id: str,
        prompt: str,
        on_delta: Optional[DeltaCallback] = None,
        on_reset: Optional[ResetCallback] = None,
    ) -> GenerationResult:
        """Return the first successful generation.

        Raises BudgetExceeded before anything is admitted or called,
        Throttled when the admission queue is full, FatalError on a
        permanent upstream failure and GenerationFailed when every model
        timed out or failed transiently.
        """
        await self.ledger.check_budget(org_id)

        async with self._admitted(org_id):
            started = time.monotonic()
            reasons: Dict[str, str] = {}
            streamed = False

            async def forward(delta: str) -> None:
                nonlocal streamed
                streamed = True
                await on_delta(delta)

            for backend in self.backends:
                if streamed and on_reset is not None:
                    await on_reset()
                    streamed = False
                try:
                    reply = await asyncio.wait_for(
                        self._call(backend, prompt, forward if on_delta else None),
                        timeout=self.timeout_s,
                    )
                except asyncio.TimeoutError:
                    reasons[backend.model_id] = f"timeout after {int(self.timeout_s * 1000)} ms"
                    logger.warning("%s timed out for org %s, failing over", backend.model_id, org_id)
                    continue
                except RetryableError as e:
                    reasons[backend.model_id] = e.message
                    logger.warning("%s failed for org %s: %s, failing over", backend.model_id, org_id, e)
                    continue

                latency_ms = int((time.monotonic() - started) * 1000)
                confidence = reply.confidence
                if confidence is None:
                    confidence = confidence_score(reply.content)
                return GenerationResult(
                    content=reply.content,
                    token_count=reply.token_count,
                    latency_ms=latency_ms,
                    model=backend.model_id,
                    backend=backend.name,
                    confidence_score=confidence,
                    cost_usd=self.cost_for(backend.name, reply.token_count),
                    failed_attempts=reasons,
                )

            raise GenerationFailed(reasons)

    async def _call(
        self, backend: ModelBackend, prompt: str, on_delta: Optional[DeltaCallback]
    ) -> BackendReply:
        if on_delta is None:
            return await backend.generate(prompt)
        return await backend.generate_streaming(prompt, on_delta)

    async def aclose(self) -> None:
        for backend in self.backends:
            await backend.aclose()
