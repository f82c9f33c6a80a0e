"""Text normalization, content hashing and embedding providers."""

import asyncio
import hashlib
import logging
import math
import re
from abc import ABC, abstractmethod
from typing import List, Optional

from review_rag.errors import FatalError, RetryableError

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*|\d+|[^\sA-Za-z0-9_]")


def normalize_text(text: str) -> str:
    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    lines = [line.rstrip() for line in lines]
    return "\n".join(lines).strip("\n")


def content_hash(normalized: str, language: Optional[str] = None) -> str:
    # language is part of the key so identical diffs never dedupe across languages
    base = f"{language or 'text'}\n{normalized}"
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


class EmbeddingProvider(ABC):
    """Converts normalized text into a fixed-dimension vector."""

    def __init__(self, dimension: int):
        self.dimension = dimension

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Embed one non-empty normalized text.

        Raises RetryableError on rate limits / 5xx and FatalError on
        malformed input or permanent 4xx.
        """


class HashingEmbeddingProvider(EmbeddingProvider):
    """Deterministic signed feature hashing over code tokens.

    No network and no model download: identical text always yields the
    identical unit vector, and texts sharing most tokens land close in
    cosine space. Used for local development and tests.
    """

    async def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise FatalError("cannot embed empty text")

        vector = [0.0] * self.dimension
        tokens = _TOKEN_RE.findall(text)
        # unigrams plus bigrams so token order carries some weight
        features = tokens + [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]
        for feature in features:
            digest = hashlib.md5(feature.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "little") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[index] += sign

        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]


class GeminiEmbeddingProvider(EmbeddingProvider):
    def __init__(self, api_key: str, model: str = "models/text-embedding-004", dimension: int = 768):
        super().__init__(dimension)
        import google.generativeai as genai

        genai.configure(api_key=api_key)
        self._genai = genai
        self._model = model

    async def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise FatalError("cannot embed empty text")

        from google.api_core import exceptions as google_exceptions

        try:
            result = await self._genai.embed_content_async(
                model=self._model,
                content=text,
                task_type="retrieval_document",
                output_dimensionality=self.dimension,
            )
        except (
            google_exceptions.ResourceExhausted,
            google_exceptions.ServiceUnavailable,
            google_exceptions.InternalServerError,
            google_exceptions.DeadlineExceeded,
        ) as e:
            raise RetryableError(f"embedding provider unavailable: {e}") from e
        except google_exceptions.GoogleAPICallError as e:
            raise FatalError(f"embedding request rejected: {e}") from e

        vector = list(result["embedding"])
        if len(vector) != self.dimension:
            raise FatalError(
                f"embedding provider returned {len(vector)} dimensions, expected {self.dimension}"
            )
        return vector


async def embed_with_retry(
    provider: EmbeddingProvider,
    text: str,
    max_attempts: int = 3,
    backoff_s: float = 0.5,
) -> List[float]:
    """Call provider.embed, retrying RetryableError with exponential backoff.

    FatalError propagates on the first occurrence.
    """
    for attempt in range(max_attempts):
        try:
            return await provider.embed(text)
        except RetryableError as e:
            if attempt == max_attempts - 1:
                logger.error(
                    "%s failed after %d attempts: %s",
                    provider.__class__.__name__,
                    max_attempts,
                    e,
                )
                raise
            delay = backoff_s * 2**attempt
            logger.warning(
                "%s error (attempt %d/%d): %s. Retrying in %.2fs...",
                provider.__class__.__name__,
                attempt + 1,
                max_attempts,
                e,
                delay,
            )
            await asyncio.sleep(delay)
    raise FatalError("embedding attempted zero times")


def build_embedding_provider(settings) -> EmbeddingProvider:
    if settings.embedding_backend == "hashing":
        return HashingEmbeddingProvider(settings.embedding_dimension)
    if settings.embedding_backend == "gemini":
        if not settings.gemini_api_key:
            raise ValueError("gemini_api_key is required for the gemini embedding backend")
        return GeminiEmbeddingProvider(
            api_key=settings.gemini_api_key,
            model=settings.embedding_model,
            dimension=settings.embedding_dimension,
        )
    raise ValueError(
        f"Unknown embedding backend: {settings.embedding_backend!r}. Choose 'gemini' or 'hashing'."
    )
