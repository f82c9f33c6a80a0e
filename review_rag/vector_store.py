"""Vector store: embeddings with metadata, upsert-by-content-hash and k-NN query.

The SQL implementation keeps vectors as JSON next to their metadata and
scores candidates in Python. Atomicity comes from the database: the
``(project_id, content_hash)`` unique constraint makes concurrent upserts
collapse onto one row, and usage/trust counters are updated with
single-statement ``col = col + n`` writes.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import case
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError

from review_rag.errors import UnavailableError
from review_rag.models import Embedding, ReviewMessage, utcnow

logger = logging.getLogger(__name__)

TIE_EPSILON = 0.001


@dataclass
class EmbeddingRecord:
    message_id: str
    project_id: str
    vector: List[float]
    content_hash: str
    file_path: Optional[str] = None
    language: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    similarity_threshold: float = 0.85


@dataclass
class StoredEmbedding:
    id: str
    message_id: str
    vector: List[float]
    usage_count: int
    trust_score: float


@dataclass
class QueryFilter:
    project_id: str
    # matched exactly; None only matches embeddings stored without a language
    language: Optional[str] = None
    tags: List[str] = field(default_factory=list)


@dataclass
class Candidate:
    embedding_id: str
    message_id: str
    content: str
    model: Optional[str]
    score: float
    trust_score: float
    language: Optional[str]
    file_path: Optional[str]
    usage_count: int
    last_used_at: Optional[datetime]
    confidence_score: Optional[float] = None
    tags: List[str] = field(default_factory=list)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    # float error can push identical vectors a hair past 1.0
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


def rank_candidates(candidates: List[Candidate]) -> List[Candidate]:
    """Order by score descending; scores within TIE_EPSILON of the head of
    their run are tied and ordered by usage_count, then recency."""
    by_score = sorted(candidates, key=lambda c: c.score, reverse=True)
    ranked: List[Candidate] = []
    i = 0
    while i < len(by_score):
        head = by_score[i].score
        j = i
        while j < len(by_score) and head - by_score[j].score <= TIE_EPSILON:
            j += 1
        tied = by_score[i:j]
        tied.sort(
            key=lambda c: (c.usage_count, c.last_used_at or datetime.min),
            reverse=True,
        )
        ranked.extend(tied)
        i = j
    return ranked


class VectorStore(ABC):
    @abstractmethod
    async def get_by_hash(self, project_id: str, content_hash: str) -> Optional[StoredEmbedding]:
        """Return the embedding stored under content_hash, if any."""

    @abstractmethod
    async def upsert(self, record: EmbeddingRecord) -> str:
        """Insert or update by (project_id, content_hash); return the row id."""

    @abstractmethod
    async def query(
        self,
        vector: List[float],
        query_filter: QueryFilter,
        threshold: float,
        limit: int,
    ) -> List[Candidate]:
        """Return candidates scoring >= threshold, best first."""

    @abstractmethod
    async def touch(self, embedding_id: str) -> None:
        """Record that an embedding served a cache hit."""

    @abstractmethod
    async def adjust_trust(
        self, embedding_id: str, delta: float, floor: float, ceiling: float
    ) -> Optional[float]:
        """Shift trust_score by delta, clamped to [floor, ceiling]."""

    @abstractmethod
    async def embedding_for_message(self, message_id: str) -> Optional[str]:
        """Return the id of the embedding owned by message_id."""

    def close(self) -> None:
        pass


class SqlVectorStore(VectorStore):
    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except (OperationalError, InterfaceError) as e:
            raise UnavailableError(f"vector store unreachable: {e.__class__.__name__}") from e

    # ------------------------------------------------------------------ #

    async def get_by_hash(self, project_id: str, content_hash: str) -> Optional[StoredEmbedding]:
        return await self._run(self._get_by_hash, project_id, content_hash)

    def _get_by_hash(self, project_id: str, content_hash: str) -> Optional[StoredEmbedding]:
        with self._session_factory() as db:
            row = (
                db.query(Embedding)
                .filter(Embedding.project_id == project_id, Embedding.content_hash == content_hash)
                .first()
            )
            if row is None:
                return None
            return StoredEmbedding(
                id=row.id,
                message_id=row.message_id,
                vector=list(row.vector),
                usage_count=row.usage_count,
                trust_score=row.trust_score,
            )

    async def upsert(self, record: EmbeddingRecord) -> str:
        return await self._run(self._upsert, record)

    def _upsert(self, record: EmbeddingRecord) -> str:
        existing_id = self._update_existing(record)
        if existing_id is not None:
            return existing_id

        with self._session_factory() as db:
            row = Embedding(
                message_id=record.message_id,
                project_id=record.project_id,
                vector=list(record.vector),
                content_hash=record.content_hash,
                file_path=record.file_path,
                language=record.language,
                tags=list(record.tags),
                similarity_threshold=record.similarity_threshold,
                usage_count=1,
                last_used_at=utcnow(),
                trust_score=1.0,
            )
            db.add(row)
            try:
                db.commit()
                return row.id
            except IntegrityError:
                db.rollback()
                logger.info(
                    "Concurrent upsert for %s/%s, folding into existing row",
                    record.project_id,
                    record.content_hash[:12],
                )

        existing_id = self._update_existing(record)
        if existing_id is None:
            raise UnavailableError("embedding vanished between conflict and re-read")
        return existing_id

    def _update_existing(self, record: EmbeddingRecord) -> Optional[str]:
        with self._session_factory() as db:
            row = (
                db.query(Embedding)
                .filter(
                    Embedding.project_id == record.project_id,
                    Embedding.content_hash == record.content_hash,
                )
                .with_for_update()
                .first()
            )
            if row is None:
                return None
            if row.message_id != record.message_id:
                # new content for the same key starts with neutral trust
                row.message_id = record.message_id
                row.vector = list(record.vector)
                row.file_path = record.file_path
                row.language = record.language
                row.tags = list(record.tags)
                row.similarity_threshold = record.similarity_threshold
                row.trust_score = 1.0
                db.commit()
            return row.id

    async def query(
        self,
        vector: List[float],
        query_filter: QueryFilter,
        threshold: float,
        limit: int,
    ) -> List[Candidate]:
        return await self._run(self._query, vector, query_filter, threshold, limit)

    def _query(
        self,
        vector: List[float],
        query_filter: QueryFilter,
        threshold: float,
        limit: int,
    ) -> List[Candidate]:
        with self._session_factory() as db:
            q = (
                db.query(Embedding, ReviewMessage)
                .join(ReviewMessage, ReviewMessage.id == Embedding.message_id)
                .filter(Embedding.project_id == query_filter.project_id)
            )
            if query_filter.language is None:
                q = q.filter(Embedding.language.is_(None))
            else:
                q = q.filter(Embedding.language == query_filter.language)
            rows = q.all()

        wanted_tags = set(query_filter.tags)
        candidates: List[Candidate] = []
        for emb, msg in rows:
            if wanted_tags and not wanted_tags.issubset(set(emb.tags or [])):
                continue
            score = cosine_similarity(vector, emb.vector)
            if score < threshold:
                continue
            candidates.append(
                Candidate(
                    embedding_id=emb.id,
                    message_id=msg.id,
                    content=msg.content,
                    model=msg.model,
                    score=score,
                    trust_score=emb.trust_score,
                    language=emb.language,
                    file_path=emb.file_path,
                    usage_count=emb.usage_count,
                    last_used_at=emb.last_used_at,
                    confidence_score=msg.confidence_score,
                    tags=list(emb.tags or []),
                )
            )
        return rank_candidates(candidates)[:limit]

    async def touch(self, embedding_id: str) -> None:
        await self._run(self._touch, embedding_id)

    def _touch(self, embedding_id: str) -> None:
        with self._session_factory() as db:
            db.query(Embedding).filter(Embedding.id == embedding_id).update(
                {
                    Embedding.usage_count: Embedding.usage_count + 1,
                    Embedding.last_used_at: utcnow(),
                },
                synchronize_session=False,
            )
            db.commit()

    async def adjust_trust(
        self, embedding_id: str, delta: float, floor: float, ceiling: float
    ) -> Optional[float]:
        return await self._run(self._adjust_trust, embedding_id, delta, floor, ceiling)

    def _adjust_trust(
        self, embedding_id: str, delta: float, floor: float, ceiling: float
    ) -> Optional[float]:
        shifted = Embedding.trust_score + delta
        clamped = case(
            (shifted > ceiling, ceiling),
            (shifted < floor, floor),
            else_=shifted,
        )
        with self._session_factory() as db:
            updated = (
                db.query(Embedding)
                .filter(Embedding.id == embedding_id)
                .update({Embedding.trust_score: clamped}, synchronize_session=False)
            )
            db.commit()
            if not updated:
                return None
            return db.query(Embedding.trust_score).filter(Embedding.id == embedding_id).scalar()

    async def embedding_for_message(self, message_id: str) -> Optional[str]:
        return await self._run(self._embedding_for_message, message_id)

    def _embedding_for_message(self, message_id: str) -> Optional[str]:
        with self._session_factory() as db:
            return (
                db.query(Embedding.id).filter(Embedding.message_id == message_id).scalar()
            )
