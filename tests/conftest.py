import fakeredis
import pytest

from review_rag.coalescing import Coalescer
from review_rag.config import Settings
from review_rag.database import Base, make_engine, make_session_factory
from review_rag.generation_router import GenerationRouter
from review_rag.ledger import UsageLedger
from review_rag.pipeline import ReviewPipeline
from review_rag.review_persistence import ReviewRepository
from review_rag.vector_store import SqlVectorStore
from tests.stubs import CountingEmbedder, StubBackend

PROJECT_ID = "proj-1"
ORG_ID = "org-1"


@pytest.fixture
def session_factory(tmp_path):
    # a file, not :memory:, so sessions opened from worker threads share it
    engine = make_engine(f"sqlite:///{tmp_path / 'reviews.db'}")
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def repository(session_factory):
    return ReviewRepository(session_factory)


@pytest.fixture
def project(repository):
    return repository.create_project(ORG_ID, "demo", project_id=PROJECT_ID)


@pytest.fixture
def fake_redis():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


def make_settings(**overrides) -> Settings:
    values = dict(
        embedding_backend="hashing",
        embedding_dimension=256,
        embedding_backoff_s=0.0,
        storing_retry_delay_s=0.01,
        model_timeout_ms=1000,
        request_deadline_ms=5000,
        coalesce_wait_timeout_ms=2000,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def make_pipeline(session_factory, fake_redis, project):
    """Build a pipeline over the tmp SQLite file and fake redis.

    Returns (pipeline, backends, embedder) so tests can inspect call counts.
    """

    def _make(backends=None, embedder=None, vector_store=None, shared_cache=True, **overrides):
        cfg = make_settings(**overrides)
        backends = backends if backends is not None else [StubBackend()]
        embedder = embedder or CountingEmbedder(cfg.embedding_dimension)
        ledger = UsageLedger(
            fake_redis,
            daily_budget_usd=cfg.daily_budget_usd,
            monthly_budget_usd=cfg.monthly_budget_usd,
        )
        router = GenerationRouter(
            backends,
            ledger,
            timeout_s=cfg.model_timeout_s,
            concurrency_cap=cfg.org_concurrency_cap,
            queue_depth_multiplier=cfg.queue_depth_multiplier,
            pricing_per_1k_tokens=cfg.model_pricing_per_1k_tokens,
        )
        pipeline = ReviewPipeline(
            settings=cfg,
            repository=ReviewRepository(session_factory),
            embedder=embedder,
            vector_store=vector_store or SqlVectorStore(session_factory),
            router=router,
            ledger=ledger,
            redis=fake_redis if shared_cache else None,
            coalescer=Coalescer(
                fake_redis if shared_cache else None,
                wait_timeout_s=cfg.coalesce_wait_timeout_s,
                poll_interval_s=0.01,
            ),
        )
        return pipeline, backends, embedder

    return _make
