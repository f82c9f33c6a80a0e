"""Cache hit/miss policy.

Pure and synchronous: the engine only looks at the ranked candidates it is
handed and the request's policy. It never reorders candidates; only the
top-ranked one is eligible.
"""

from dataclasses import dataclass
from typing import List, Optional, Union

from review_rag.vector_store import Candidate

DEFAULT_SIMILARITY_THRESHOLD = 0.85


@dataclass(frozen=True)
class DecisionPolicy:
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    language: Optional[str] = None
    # when set, the candidate's file path must live under this prefix
    path_namespace: Optional[str] = None


@dataclass(frozen=True)
class Hit:
    candidate: Candidate
    score: float
    adjusted_score: float


@dataclass(frozen=True)
class Miss:
    reason: str
    best_score: Optional[float] = None


Decision = Union[Hit, Miss]


def _normalize_language(language: Optional[str]) -> Optional[str]:
    return language.strip().lower() if language else None


def _in_namespace(path: Optional[str], namespace: str) -> bool:
    if not path:
        return False
    prefix = namespace.rstrip("/") + "/"
    return path == namespace.rstrip("/") or path.startswith(prefix)


class CacheDecisionEngine:
    def decide(self, candidates: List[Candidate], policy: DecisionPolicy) -> Decision:
        if not candidates:
            return Miss(reason="no_candidates")

        top = candidates[0]

        # exact metadata match, no partial credit across languages
        if _normalize_language(top.language) != _normalize_language(policy.language):
            return Miss(reason="language_mismatch", best_score=top.score)
        if policy.path_namespace and not _in_namespace(top.file_path, policy.path_namespace):
            return Miss(reason="path_mismatch", best_score=top.score)

        adjusted = top.score * top.trust_score
        if adjusted < policy.similarity_threshold:
            return Miss(reason="below_threshold", best_score=top.score)

        return Hit(candidate=top, score=top.score, adjusted_score=adjusted)
