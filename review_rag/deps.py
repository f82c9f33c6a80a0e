# deps.py
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis
from fastapi import HTTPException, Request

from review_rag.coalescing import Coalescer
from review_rag.config import Settings, settings
from review_rag.database import SessionLocal
from review_rag.embedding_service import build_embedding_provider
from review_rag.generation_router import GenerationRouter
from review_rag.ledger import UsageLedger
from review_rag.pipeline import ReviewPipeline
from review_rag.providers.factory import build_backends
from review_rag.review_persistence import ReviewRepository
from review_rag.vector_store import SqlVectorStore

r = redis.Redis.from_url(settings.redis_url, decode_responses=True)

_TRUE = {"1", "true", "yes"}


@dataclass
class AuthContext:
    user_id: str
    org_id: Optional[str]
    authorized: bool = True


def get_auth_context(req: Request) -> AuthContext:
    """Identity from an upstream auth middleware, else from gateway headers."""
    auth = getattr(req.state, "auth", None)
    if auth is None:
        user_id = req.headers.get("X-User-Id")
        if not user_id:
            raise HTTPException(status_code=401, detail="Missing user identity")
        auth = AuthContext(
            user_id=user_id,
            org_id=req.headers.get("X-Org-Id"),
            authorized=req.headers.get("X-Authorized", "true").lower() in _TRUE,
        )
    if not auth.authorized:
        raise HTTPException(status_code=403, detail="Not authorized")
    return auth


def build_pipeline(cfg: Settings, session_factory, redis_client) -> ReviewPipeline:
    ledger = UsageLedger(
        redis_client,
        daily_budget_usd=cfg.daily_budget_usd,
        monthly_budget_usd=cfg.monthly_budget_usd,
    )
    router = GenerationRouter(
        build_backends(cfg),
        ledger,
        timeout_s=cfg.model_timeout_s,
        concurrency_cap=cfg.org_concurrency_cap,
        queue_depth_multiplier=cfg.queue_depth_multiplier,
        pricing_per_1k_tokens=cfg.model_pricing_per_1k_tokens,
    )
    return ReviewPipeline(
        settings=cfg,
        repository=ReviewRepository(session_factory),
        embedder=build_embedding_provider(cfg),
        vector_store=SqlVectorStore(session_factory),
        router=router,
        ledger=ledger,
        redis=redis_client,
        coalescer=Coalescer(redis_client, wait_timeout_s=cfg.coalesce_wait_timeout_s),
    )


_pipeline: Optional[ReviewPipeline] = None


def get_pipeline() -> ReviewPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline(settings, SessionLocal, r)
    return _pipeline
