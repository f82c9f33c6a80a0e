"""Review request lifecycle.

    Pending -> Embedding -> Searching -> CacheHit -> Completed
                                      -> Generating -> Storing -> Completed
    any non-terminal stage -> Failed

A request is validated and persisted by ``submit`` and driven through the
stages by ``process``. The vector store and the usage ledger are the only
state shared between concurrent requests; both are atomic on their own.
"""

import asyncio
import enum
import json
import logging
import posixpath
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple, Union

from redis.exceptions import RedisError

from review_rag.coalescing import Coalescer, SingleFlight
from review_rag.config import Settings
from review_rag.decision import CacheDecisionEngine, Decision, DecisionPolicy, Hit, Miss
from review_rag.embedding_service import (
    EmbeddingProvider,
    content_hash,
    embed_with_retry,
    normalize_text,
)
from review_rag.errors import DeadlineExceeded, NotFound, ReviewError, UnavailableError, ValidationError
from review_rag.feedback import TRUST_CEILING, FeedbackLearner
from review_rag.generation_router import GenerationResult, GenerationRouter
from review_rag.ledger import UsageLedger
from review_rag.models import ReviewRequest, ReviewStatus
from review_rag.review_builders import build_review_prompt
from review_rag.review_persistence import ReviewRepository
from review_rag.schemas import FeedbackCreate, ReviewCreate
from review_rag.streaming import ChannelClosed, ContentChannel
from review_rag.vector_store import Candidate, EmbeddingRecord, QueryFilter, VectorStore

logger = logging.getLogger(__name__)

LOCAL_VECTOR_CACHE_SIZE = 1024


class Stage(str, enum.Enum):
    pending = "pending"
    embedding = "embedding"
    searching = "searching"
    cache_hit = "cache_hit"
    generating = "generating"
    storing = "storing"
    completed = "completed"
    failed = "failed"


@dataclass
class ReviewOutcome:
    request_id: str
    status: str
    cache_hit: bool = False
    content: Optional[str] = None
    model: Optional[str] = None
    tokens_used: Optional[int] = None
    confidence_score: Optional[float] = None
    similarity_score: Optional[float] = None
    trust_score: Optional[float] = None
    latency_ms: Optional[int] = None
    message_id: Optional[str] = None
    error: Optional[dict] = None
    stages: List[str] = field(default_factory=list)

    def to_response(self) -> dict:
        body = {"status": self.status, "cacheHit": self.cache_hit}
        optional = {
            "content": self.content,
            "model": self.model,
            "tokensUsed": self.tokens_used,
            "confidenceScore": self.confidence_score,
            "similarityScore": self.similarity_score,
            "trustScore": self.trust_score,
            "latencyMs": self.latency_ms,
            "error": self.error,
        }
        body.update({k: v for k, v in optional.items() if v is not None})
        return body


@dataclass
class _StoreJob:
    request: ReviewRequest
    result: GenerationResult
    content_hash: str
    vector: List[float]
    # False when the result was shared from a coalesced leader that already paid for it
    billed: bool
    started: float = 0.0
    similarity_score: Optional[float] = None
    message_id: Optional[str] = None
    ledger_done: bool = False
    embedding_done: bool = False


class _ChannelSink:
    """Forwards increments to a channel until its consumer goes away."""

    def __init__(self, channel: ContentChannel, request_id: str):
        self.channel = channel
        self.request_id = request_id
        self.active = True

    async def publish(self, text: str) -> None:
        if not self.active:
            return
        try:
            await self.channel.publish(text)
        except ChannelClosed:
            self._closed()

    async def reset(self) -> None:
        if not self.active:
            return
        try:
            await self.channel.reset()
        except ChannelClosed:
            self._closed()

    def _closed(self) -> None:
        self.active = False
        logger.info("Stream consumer for review %s went away, no longer streaming", self.request_id)


class ReviewPipeline:
    def __init__(
        self,
        settings: Settings,
        repository: ReviewRepository,
        embedder: EmbeddingProvider,
        vector_store: VectorStore,
        router: GenerationRouter,
        ledger: UsageLedger,
        redis=None,
        coalescer: Optional[Coalescer] = None,
        decision_engine: Optional[CacheDecisionEngine] = None,
        learner: Optional[FeedbackLearner] = None,
    ):
        self.settings = settings
        self.repository = repository
        self.embedder = embedder
        self.vector_store = vector_store
        self.router = router
        self.ledger = ledger
        self.r = redis
        self.coalescer = coalescer or Coalescer(redis, wait_timeout_s=settings.coalesce_wait_timeout_s)
        self.decision_engine = decision_engine or CacheDecisionEngine()
        self.learner = learner or FeedbackLearner(vector_store, repository)
        self._embed_flight = SingleFlight()
        self._local_vectors: "OrderedDict[Tuple[str, str], List[float]]" = OrderedDict()
        self._channels: Dict[str, ContentChannel] = {}
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    async def submit(self, payload: ReviewCreate, org_id: Optional[str] = None) -> ReviewRequest:
        """Validate and persist a new request in ``pending``."""
        normalized = normalize_text(payload.diff_content)
        if not normalized:
            raise ValidationError("diffContent must not be empty")
        project = await self._db(self.repository.get_project, payload.project_id)
        if project is None:
            raise ValidationError(f"unknown project {payload.project_id}")

        language = (payload.language or "").strip().lower() or None
        request = await self._db(
            self.repository.create_request,
            project_id=project.id,
            profile_id=payload.profile_id,
            org_id=org_id or project.org_id,
            diff_content=payload.diff_content,
            diff_hash=content_hash(normalized, language),
            file_path=payload.file_path,
            language=language,
            priority=payload.priority,
        )
        self._channels[request.id] = ContentChannel()
        await self._cache_outcome(ReviewOutcome(request_id=request.id, status=ReviewStatus.pending.value))
        logger.info("Review %s submitted for project %s", request.id, project.id)
        return request

    async def process(self, request_id: str, deadline_s: Optional[float] = None) -> ReviewOutcome:
        """Drive a submitted request to a terminal state and return the outcome.

        Stage failures are returned as a failed outcome carrying a structured
        error, never raised.
        """
        request = await self._db(self.repository.get_request, request_id)
        if request is None:
            raise NotFound(f"review {request_id} not found")

        channel = self._channels.setdefault(request_id, ContentChannel())
        stages: List[str] = []
        deadline_s = deadline_s if deadline_s is not None else self.settings.request_deadline_s
        try:
            produced = await asyncio.wait_for(self._run(request, stages, channel), timeout=deadline_s)
            if isinstance(produced, _StoreJob):
                # the result exists and is paid for; storing runs past the deadline
                outcome = await self._complete(produced, stages, channel)
            else:
                outcome = produced
        except ReviewError as e:
            outcome = await self._fail(request, e, stages, channel)
        except asyncio.TimeoutError:
            error = DeadlineExceeded(f"review did not finish within {int(deadline_s * 1000)} ms")
            outcome = await self._fail(request, error, stages, channel)
        except Exception:
            logger.exception("Unhandled error processing review %s", request_id)
            outcome = await self._fail(request, ReviewError("internal error"), stages, channel)
        finally:
            self._channels.pop(request_id, None)
        return outcome

    async def review(
        self, payload: ReviewCreate, org_id: Optional[str] = None, deadline_s: Optional[float] = None
    ) -> ReviewOutcome:
        request = await self.submit(payload, org_id)
        return await self.process(request.id, deadline_s)

    async def get_review(self, request_id: str) -> dict:
        cached = await self._cached_outcome(request_id)
        if cached is not None:
            return cached

        request = await self._db(self.repository.get_request, request_id)
        if request is None:
            raise NotFound(f"review {request_id} not found")
        body = {"status": request.status.value, "cacheHit": bool(request.cache_hit)}
        message = await self._db(self.repository.latest_ai_message, request_id)
        if message is not None:
            body.update(
                {
                    "content": message.content,
                    "model": message.model,
                    "tokensUsed": message.token_count,
                    "confidenceScore": message.confidence_score,
                }
            )
        return body

    def open_stream(self, request_id: str) -> Optional[ContentChannel]:
        """Claim the content channel of an in-flight review (one consumer)."""
        channel = self._channels.get(request_id)
        if channel is None or channel.claimed:
            return None
        channel.claimed = True
        return channel

    async def submit_feedback(self, request_id: str, feedback: FeedbackCreate) -> None:
        request = await self._db(self.repository.get_request, request_id)
        if request is None:
            raise NotFound(f"review {request_id} not found")
        message = await self._db(self.repository.latest_ai_message, request_id)
        if message is None:
            raise NotFound(f"review {request_id} has no result to give feedback on")

        await self._db(
            self.repository.record_feedback,
            message.id,
            feedback.accepted,
            feedback.helpful,
            feedback.comment,
        )
        helpful = feedback.accepted if feedback.helpful is None else feedback.helpful
        await self._record_analytics(
            request, total_feedback=1, helpful_reviews=1 if helpful else 0
        )
        self.learner.submit(message.id, feedback.accepted)

    async def analytics(self, project_id: str) -> List[dict]:
        rows = await self._db(self.repository.list_analytics, project_id)
        return [
            {
                "date": row.date.isoformat(),
                "profileId": row.profile_id,
                "totalReviews": row.total_reviews,
                "cacheHits": row.cache_hits,
                "cacheMisses": row.cache_misses,
                "totalTokensUsed": row.total_tokens_used,
                "estimatedCost": row.estimated_cost,
                "totalResponseTimeMs": row.total_response_time_ms,
                "helpfulReviews": row.helpful_reviews,
                "totalFeedback": row.total_feedback,
            }
            for row in rows
        ]

    async def drain(self) -> None:
        """Wait for background storing retries and feedback adjustments."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.learner.drain()

    async def aclose(self) -> None:
        await self.drain()
        await self.router.aclose()

    # ------------------------------------------------------------------ #
    # Stages                                                              #
    # ------------------------------------------------------------------ #

    async def _run(
        self, request: ReviewRequest, stages: List[str], channel: ContentChannel
    ) -> Union[ReviewOutcome, _StoreJob]:
        """Run the stages up to a served hit or a generated result."""
        started = time.monotonic()

        stages.append(Stage.pending.value)
        normalized = normalize_text(request.diff_content)
        if not normalized:
            raise ValidationError("diffContent must not be empty")
        await self._db(self.repository.update_status, request.id, ReviewStatus.in_progress)

        stages.append(Stage.embedding.value)
        chash = content_hash(normalized, request.language)
        vector = await self._embed(request.project_id, chash, normalized)

        stages.append(Stage.searching.value)
        decision, candidates = await self._search(request, vector)

        if isinstance(decision, Hit):
            stages.append(Stage.cache_hit.value)
            return await self._serve_hit(request, decision, stages, channel, started)

        logger.info("Cache miss for review %s (%s)", request.id, decision.reason)
        await self._record_analytics(request, total_reviews=1, cache_misses=1)

        stages.append(Stage.generating.value)
        prompt = build_review_prompt(
            request.diff_content,
            request.file_path,
            request.language,
            [c.content for c in candidates[: self.settings.retrieval_top_k]],
        )
        sink = _ChannelSink(channel, request.id)

        async def generate() -> GenerationResult:
            return await self.router.generate(
                request.org_id, prompt, on_delta=sink.publish, on_reset=sink.reset
            )

        result, shared = await self.coalescer.run(request.project_id, chash, generate)
        if shared:
            await sink.publish(result.content)

        return _StoreJob(
            request=request,
            result=result,
            content_hash=chash,
            vector=vector,
            billed=not shared,
            started=started,
            similarity_score=getattr(decision, "best_score", None),
        )

    async def _complete(self, job: _StoreJob, stages: List[str], channel: ContentChannel) -> ReviewOutcome:
        request, result = job.request, job.result
        stages.append(Stage.storing.value)
        await self._store(job)

        latency_ms = int((time.monotonic() - job.started) * 1000)
        await self._finish(request, cache_hit=False)
        await self._record_analytics(
            request,
            total_response_time_ms=latency_ms,
            total_tokens_used=result.token_count if job.billed else 0,
            estimated_cost=result.cost_usd if job.billed else 0.0,
        )
        stages.append(Stage.completed.value)

        outcome = ReviewOutcome(
            request_id=request.id,
            status=ReviewStatus.completed.value,
            cache_hit=False,
            content=result.content,
            model=result.model,
            tokens_used=result.token_count if job.billed else 0,
            confidence_score=result.confidence_score,
            similarity_score=job.similarity_score,
            latency_ms=latency_ms,
            message_id=job.message_id,
            stages=list(stages),
        )
        await channel.finish()
        await self._cache_outcome(outcome)
        return outcome

    async def _embed(self, project_id: str, chash: str, normalized: str) -> List[float]:
        """Vector for chash; the provider is only called when no copy exists."""
        try:
            stored = await self.vector_store.get_by_hash(project_id, chash)
        except UnavailableError as e:
            logger.warning("Vector store unavailable during dedupe lookup: %s", e)
            stored = None
        if stored is not None:
            logger.debug("Reusing stored embedding %s for %s", stored.id, chash[:12])
            return stored.vector

        cached = await self._cached_vector(project_id, chash)
        if cached is not None:
            return cached

        async def compute() -> List[float]:
            # a concurrent caller may have finished between our lookup and here
            again = await self._cached_vector(project_id, chash)
            if again is not None:
                return again
            vector = await embed_with_retry(
                self.embedder,
                normalized,
                max_attempts=self.settings.embedding_max_attempts,
                backoff_s=self.settings.embedding_backoff_s,
            )
            await self._cache_vector(project_id, chash, vector)
            return vector

        return await self._embed_flight.do((project_id, chash), compute)

    async def _search(
        self, request: ReviewRequest, vector: List[float]
    ) -> Tuple[Decision, List[Candidate]]:
        threshold = self.settings.similarity_threshold
        namespace = None
        if self.settings.match_path_namespace and request.file_path:
            namespace = posixpath.dirname(request.file_path) or None
        policy = DecisionPolicy(
            similarity_threshold=threshold,
            language=request.language,
            path_namespace=namespace,
        )
        try:
            candidates = await self.vector_store.query(
                vector,
                QueryFilter(project_id=request.project_id, language=request.language),
                # trust can lift a lower raw score over the threshold
                threshold=threshold / TRUST_CEILING,
                limit=self.settings.retrieval_top_k,
            )
        except UnavailableError as e:
            logger.warning("Vector store unavailable, treating review %s as a miss: %s", request.id, e)
            return Miss(reason="store_unavailable"), []
        return self.decision_engine.decide(candidates, policy), candidates

    async def _serve_hit(
        self,
        request: ReviewRequest,
        hit: Hit,
        stages: List[str],
        channel: ContentChannel,
        started: float,
    ) -> ReviewOutcome:
        candidate = hit.candidate
        try:
            await self.vector_store.touch(candidate.embedding_id)
        except UnavailableError as e:
            logger.warning("Could not record usage of embedding %s: %s", candidate.embedding_id, e)

        latency_ms = int((time.monotonic() - started) * 1000)
        message_id = None
        try:
            message_id = await self._db(
                self.repository.create_message,
                request,
                candidate.content,
                candidate.model,
                0,
                latency_ms,
                candidate.confidence_score,
                source_message_id=candidate.message_id,
            )
        except Exception:
            logger.exception("Could not persist cache-hit message for review %s", request.id)

        await self._finish(request, cache_hit=True)
        await self._record_analytics(
            request, total_reviews=1, cache_hits=1, total_response_time_ms=latency_ms
        )
        stages.append(Stage.completed.value)
        logger.info(
            "Cache hit for review %s: score %.4f x trust %.2f",
            request.id,
            hit.score,
            candidate.trust_score,
        )

        outcome = ReviewOutcome(
            request_id=request.id,
            status=ReviewStatus.completed.value,
            cache_hit=True,
            content=candidate.content,
            model=candidate.model,
            tokens_used=0,
            confidence_score=candidate.confidence_score,
            similarity_score=hit.score,
            trust_score=candidate.trust_score,
            latency_ms=latency_ms,
            message_id=message_id,
            stages=list(stages),
        )
        await _ChannelSink(channel, request.id).publish(candidate.content)
        await channel.finish()
        await self._cache_outcome(outcome)
        return outcome

    async def _fail(
        self,
        request: ReviewRequest,
        error: ReviewError,
        stages: List[str],
        channel: ContentChannel,
    ) -> ReviewOutcome:
        where = stages[-1] if stages else Stage.pending.value
        stages.append(Stage.failed.value)
        logger.warning("Review %s failed during %s: %s", request.id, where, error.message)
        try:
            await self._db(self.repository.update_status, request.id, ReviewStatus.failed)
        except Exception:
            logger.exception("Could not mark review %s failed", request.id)

        outcome = ReviewOutcome(
            request_id=request.id,
            status=ReviewStatus.failed.value,
            error=error.to_payload(),
            stages=list(stages),
        )
        await channel.fail(error.message)
        await self._cache_outcome(outcome)
        return outcome

    async def _finish(self, request: ReviewRequest, cache_hit: bool) -> None:
        try:
            await self._db(self.repository.update_status, request.id, ReviewStatus.completed, cache_hit)
        except Exception:
            logger.exception("Could not mark review %s completed", request.id)

    # ------------------------------------------------------------------ #
    # Storing                                                             #
    # ------------------------------------------------------------------ #

    async def _store(self, job: _StoreJob) -> None:
        try:
            await self._store_once(job)
        except Exception as e:
            logger.warning(
                "Storing review %s failed (%s: %s), retrying in background",
                job.request.id,
                e.__class__.__name__,
                e,
            )
            self._spawn(self._retry_store(job))

    async def _store_once(self, job: _StoreJob) -> None:
        # each step is skipped once done so retries never double-write
        result = job.result
        if job.billed and not job.ledger_done:
            await self.ledger.increment(job.request.org_id, result.token_count, result.cost_usd)
            job.ledger_done = True
        if job.message_id is None:
            job.message_id = await self._db(
                self.repository.create_message,
                job.request,
                result.content,
                result.model,
                result.token_count if job.billed else 0,
                result.latency_ms,
                result.confidence_score,
            )
        if job.billed and not job.embedding_done:
            await self.vector_store.upsert(
                EmbeddingRecord(
                    message_id=job.message_id,
                    project_id=job.request.project_id,
                    vector=job.vector,
                    content_hash=job.content_hash,
                    file_path=job.request.file_path,
                    language=job.request.language,
                    tags=[t for t in (job.request.language, result.backend) if t],
                    similarity_threshold=self.settings.similarity_threshold,
                )
            )
            job.embedding_done = True

    async def _retry_store(self, job: _StoreJob) -> None:
        retries = self.settings.storing_max_retries
        for attempt in range(1, retries + 1):
            await asyncio.sleep(self.settings.storing_retry_delay_s * 2 ** (attempt - 1))
            try:
                await self._store_once(job)
                logger.info("Stored review %s on retry %d", job.request.id, attempt)
                return
            except Exception as e:
                logger.warning(
                    "Storing retry %d/%d for review %s failed: %s",
                    attempt,
                    retries,
                    job.request.id,
                    e,
                )
        logger.error("Dropping storage of review %s after %d retries", job.request.id, retries)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------ #
    # Helpers                                                             #
    # ------------------------------------------------------------------ #

    async def _db(self, fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def _record_analytics(self, request: ReviewRequest, **counters) -> None:
        try:
            await self._db(self.repository.record_analytics, request.project_id, request.profile_id, **counters)
        except Exception:
            logger.exception("Could not record analytics for review %s", request.id)

    async def _cached_vector(self, project_id: str, chash: str) -> Optional[List[float]]:
        if self.r is None:
            vector = self._local_vectors.get((project_id, chash))
            if vector is not None:
                self._local_vectors.move_to_end((project_id, chash))
            return vector
        try:
            raw = await self.r.get(f"embedding:{project_id}:{chash}")
        except RedisError as e:
            logger.warning("Embedding cache read failed: %s", e)
            return None
        return json.loads(raw) if raw else None

    async def _cache_vector(self, project_id: str, chash: str, vector: List[float]) -> None:
        if self.r is None:
            # single-instance stand-in for the shared cache, least recently used evicted first
            self._local_vectors[(project_id, chash)] = vector
            self._local_vectors.move_to_end((project_id, chash))
            while len(self._local_vectors) > LOCAL_VECTOR_CACHE_SIZE:
                self._local_vectors.popitem(last=False)
            return
        try:
            await self.r.setex(
                f"embedding:{project_id}:{chash}",
                self.settings.result_cache_ttl_s,
                json.dumps(vector),
            )
        except RedisError as e:
            logger.warning("Embedding cache write failed: %s", e)

    async def _cache_outcome(self, outcome: ReviewOutcome) -> None:
        if self.r is None:
            return
        try:
            await self.r.setex(
                f"review:{outcome.request_id}",
                self.settings.result_cache_ttl_s,
                json.dumps(outcome.to_response()),
            )
        except RedisError as e:
            logger.warning("Result cache write failed for %s: %s", outcome.request_id, e)

    async def _cached_outcome(self, request_id: str) -> Optional[dict]:
        if self.r is None:
            return None
        try:
            raw = await self.r.get(f"review:{request_id}")
        except RedisError as e:
            logger.warning("Result cache read failed for %s: %s", request_id, e)
            return None
        return json.loads(raw) if raw else None
