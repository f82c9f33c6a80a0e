import asyncio
from datetime import datetime, timedelta

import pytest

from review_rag.errors import UnavailableError
from review_rag.vector_store import (
    Candidate,
    EmbeddingRecord,
    QueryFilter,
    SqlVectorStore,
    cosine_similarity,
    rank_candidates,
)
from tests.conftest import ORG_ID, PROJECT_ID


def _message(repository, content="Looks fine", language="python") -> str:
    request = repository.create_request(
        project_id=PROJECT_ID,
        profile_id="user-1",
        org_id=ORG_ID,
        diff_content="+x = 1",
        diff_hash="h",
        file_path="app/x.py",
        language=language,
    )
    return repository.create_message(request, content, "gemini", 10, 5, 0.9)


def _record(message_id, vector, content_hash="hash-1", language="python", tags=None) -> EmbeddingRecord:
    return EmbeddingRecord(
        message_id=message_id,
        project_id=PROJECT_ID,
        vector=vector,
        content_hash=content_hash,
        file_path="app/x.py",
        language=language,
        tags=tags or [],
    )


@pytest.fixture
def store(session_factory, project):
    return SqlVectorStore(session_factory)


class TestCosine:
    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0

    def test_length_mismatch_scores_zero(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0

    def test_zero_vector_scores_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0


class TestRanking:
    def _c(self, score, usage, last_used=None):
        return Candidate(
            embedding_id=f"e-{score}-{usage}",
            message_id="m",
            content="",
            model=None,
            score=score,
            trust_score=1.0,
            language=None,
            file_path=None,
            usage_count=usage,
            last_used_at=last_used,
        )

    def test_higher_score_first(self):
        ranked = rank_candidates([self._c(0.8, 9), self._c(0.95, 1)])
        assert [c.score for c in ranked] == [0.95, 0.8]

    def test_near_ties_prefer_usage_then_recency(self):
        now = datetime(2024, 1, 1)
        a = self._c(0.9000, 1)
        b = self._c(0.8995, 5, now)
        c = self._c(0.8995, 5, now + timedelta(hours=1))
        ranked = rank_candidates([a, b, c])
        assert ranked == [c, b, a]


class TestSqlVectorStore:
    @pytest.mark.asyncio
    async def test_upsert_then_get_by_hash(self, store, repository):
        message_id = _message(repository)

        embedding_id = await store.upsert(_record(message_id, [1.0, 0.0]))
        stored = await store.get_by_hash(PROJECT_ID, "hash-1")

        assert stored.id == embedding_id
        assert stored.message_id == message_id
        assert stored.vector == [1.0, 0.0]
        assert stored.usage_count == 1
        assert stored.trust_score == 1.0

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent_per_hash(self, store, repository):
        message_id = _message(repository)

        first = await store.upsert(_record(message_id, [1.0, 0.0]))
        second = await store.upsert(_record(message_id, [1.0, 0.0]))

        assert first == second
        assert (await store.get_by_hash(PROJECT_ID, "hash-1")).usage_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_upserts_collapse_to_one_row(self, store, repository):
        message_id = _message(repository)

        ids = await asyncio.gather(*(store.upsert(_record(message_id, [1.0, 0.0])) for _ in range(5)))

        assert len(set(ids)) == 1

    @pytest.mark.asyncio
    async def test_new_message_for_same_hash_resets_trust(self, store, repository):
        old = _message(repository, "old")
        embedding_id = await store.upsert(_record(old, [1.0, 0.0]))
        await store.adjust_trust(embedding_id, -0.5, floor=0.1, ceiling=2.0)

        new = _message(repository, "new")
        assert await store.upsert(_record(new, [1.0, 0.0])) == embedding_id

        stored = await store.get_by_hash(PROJECT_ID, "hash-1")
        assert stored.message_id == new
        assert stored.trust_score == 1.0

    @pytest.mark.asyncio
    async def test_query_filters_and_ranks(self, store, repository):
        close = _message(repository, "close")
        far = _message(repository, "far")
        other_lang = _message(repository, "js", language="javascript")
        await store.upsert(_record(close, [1.0, 0.1], content_hash="a"))
        await store.upsert(_record(far, [0.0, 1.0], content_hash="b"))
        await store.upsert(_record(other_lang, [1.0, 0.0], content_hash="c", language="javascript"))

        results = await store.query(
            [1.0, 0.0], QueryFilter(project_id=PROJECT_ID, language="python"), threshold=0.5, limit=5
        )

        assert [c.content for c in results] == ["close"]
        assert results[0].score == pytest.approx(0.995, abs=1e-3)
        assert results[0].confidence_score == 0.9

    @pytest.mark.asyncio
    async def test_query_without_language_only_sees_unlabelled_entries(self, store, repository):
        python = _message(repository, "python")
        unlabelled = _message(repository, "plain", language=None)
        python_id = await store.upsert(_record(python, [1.0, 0.0], content_hash="a"))
        await store.upsert(_record(unlabelled, [1.0, 0.0], content_hash="b", language=None))
        for _ in range(3):
            await store.touch(python_id)

        results = await store.query([1.0, 0.0], QueryFilter(project_id=PROJECT_ID), threshold=0.5, limit=5)

        assert [c.content for c in results] == ["plain"]
        assert results[0].language is None

    @pytest.mark.asyncio
    async def test_query_respects_tags_and_limit(self, store, repository):
        for i in range(3):
            message_id = _message(repository, f"r{i}")
            await store.upsert(_record(message_id, [1.0, 0.0], content_hash=f"h{i}", tags=["python", "gemini"]))
        untagged = _message(repository, "untagged")
        await store.upsert(_record(untagged, [1.0, 0.0], content_hash="u"))

        results = await store.query(
            [1.0, 0.0], QueryFilter(project_id=PROJECT_ID, language="python", tags=["gemini"]), threshold=0.0, limit=2
        )

        assert len(results) == 2
        assert all("gemini" in c.tags for c in results)

    @pytest.mark.asyncio
    async def test_touch_increments_usage(self, store, repository):
        embedding_id = await store.upsert(_record(_message(repository), [1.0, 0.0]))

        await asyncio.gather(*(store.touch(embedding_id) for _ in range(4)))

        assert (await store.get_by_hash(PROJECT_ID, "hash-1")).usage_count == 5

    @pytest.mark.asyncio
    async def test_adjust_trust_is_clamped(self, store, repository):
        embedding_id = await store.upsert(_record(_message(repository), [1.0, 0.0]))

        assert await store.adjust_trust(embedding_id, 5.0, floor=0.1, ceiling=2.0) == pytest.approx(2.0)
        assert await store.adjust_trust(embedding_id, -5.0, floor=0.1, ceiling=2.0) == pytest.approx(0.1)
        assert await store.adjust_trust("missing", 0.1, floor=0.1, ceiling=2.0) is None

    @pytest.mark.asyncio
    async def test_embedding_for_message(self, store, repository):
        message_id = _message(repository)
        embedding_id = await store.upsert(_record(message_id, [1.0, 0.0]))

        assert await store.embedding_for_message(message_id) == embedding_id
        assert await store.embedding_for_message("other") is None

    @pytest.mark.asyncio
    async def test_unreachable_database_raises_unavailable(self, tmp_path):
        from review_rag.database import make_engine, make_session_factory

        # the parent directory does not exist, so sqlite cannot open the file
        engine = make_engine(f"sqlite:///{tmp_path / 'missing' / 'db.sqlite'}")
        store = SqlVectorStore(make_session_factory(engine))

        with pytest.raises(UnavailableError):
            await store.get_by_hash(PROJECT_ID, "hash-1")

