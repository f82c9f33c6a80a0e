import asyncio
import logging
from typing import Optional, Set

from review_rag.review_persistence import ReviewRepository
from review_rag.vector_store import VectorStore

logger = logging.getLogger(__name__)

ACCEPT_DELTA = 0.05
REJECT_DELTA = -0.10
TRUST_CEILING = 2.0
TRUST_FLOOR = 0.1


class FeedbackLearner:
    """Turns accept/reject signals into trust_score adjustments.

    Runs out of band: submit() schedules the adjustment and returns at once.
    Failures are logged and dropped; the caller never sees them.
    """

    def __init__(self, vector_store: VectorStore, repository: ReviewRepository):
        self.vector_store = vector_store
        self.repository = repository
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, message_id: str, accepted: bool) -> asyncio.Task:
        task = asyncio.create_task(self.apply(message_id, accepted))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def apply(self, message_id: str, accepted: bool) -> Optional[float]:
        try:
            embedding_id = await self._resolve_embedding(message_id)
            if embedding_id is None:
                logger.info("No embedding behind message %s, feedback not applied", message_id)
                return None
            delta = ACCEPT_DELTA if accepted else REJECT_DELTA
            trust = await self.vector_store.adjust_trust(
                embedding_id, delta, floor=TRUST_FLOOR, ceiling=TRUST_CEILING
            )
            logger.info(
                "Trust for embedding %s %s to %s",
                embedding_id,
                "raised" if accepted else "lowered",
                trust,
            )
            return trust
        except Exception:
            logger.exception("Feedback adjustment failed for message %s", message_id)
            return None

    async def _resolve_embedding(self, message_id: str) -> Optional[str]:
        embedding_id = await self.vector_store.embedding_for_message(message_id)
        if embedding_id is not None:
            return embedding_id
        # cache-hit messages point at the message whose content they served
        message = await asyncio.to_thread(self.repository.get_message, message_id)
        if message is None or not message.source_message_id:
            return None
        return await self.vector_store.embedding_for_message(message.source_message_id)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
