from datetime import date
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from review_rag.models import (
    MessageType,
    Project,
    ReviewAnalytics,
    ReviewMessage,
    ReviewRequest,
    ReviewStatus,
    utcnow,
)

ANALYTICS_COUNTERS = (
    "total_reviews",
    "cache_hits",
    "cache_misses",
    "total_tokens_used",
    "estimated_cost",
    "total_response_time_ms",
    "helpful_reviews",
    "total_feedback",
)


class ReviewRepository:
    """Create/read/update by id for review requests and messages.

    Every method opens and closes its own session, so callers can run them
    from worker threads.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory

    # projects ----------------------------------------------------------

    def create_project(self, org_id: str, name: str, project_id: Optional[str] = None) -> Project:
        with self._session_factory() as db:
            project = Project(org_id=org_id, name=name)
            if project_id is not None:
                project.id = project_id
            db.add(project)
            db.commit()
            return project

    def get_project(self, project_id: str) -> Optional[Project]:
        with self._session_factory() as db:
            return db.get(Project, project_id)

    # review requests ---------------------------------------------------

    def create_request(
        self,
        project_id: str,
        profile_id: str,
        org_id: str,
        diff_content: str,
        diff_hash: str,
        file_path: Optional[str],
        language: Optional[str],
        priority: int = 0,
    ) -> ReviewRequest:
        with self._session_factory() as db:
            request = ReviewRequest(
                project_id=project_id,
                profile_id=profile_id,
                org_id=org_id,
                diff_content=diff_content,
                diff_hash=diff_hash,
                file_path=file_path,
                language=language,
                priority=priority,
                status=ReviewStatus.pending,
            )
            db.add(request)
            db.commit()
            return request

    def get_request(self, request_id: str) -> Optional[ReviewRequest]:
        with self._session_factory() as db:
            return db.get(ReviewRequest, request_id)

    def update_status(
        self, request_id: str, status: ReviewStatus, cache_hit: Optional[bool] = None
    ) -> None:
        with self._session_factory() as db:
            request = db.get(ReviewRequest, request_id)
            if request is None:
                return
            request.status = status
            if cache_hit is not None:
                request.cache_hit = cache_hit
            if status == ReviewStatus.completed:
                request.completed_at = utcnow()
            db.commit()

    # review messages ---------------------------------------------------

    def create_message(
        self,
        request: ReviewRequest,
        content: str,
        model: Optional[str],
        token_count: int,
        generation_time_ms: Optional[int],
        confidence_score: Optional[float],
        source_message_id: Optional[str] = None,
        message_type: MessageType = MessageType.ai,
    ) -> str:
        with self._session_factory() as db:
            message = ReviewMessage(
                review_request_id=request.id,
                project_id=request.project_id,
                content=content,
                message_type=message_type,
                model=model,
                source_message_id=source_message_id,
                file_path=request.file_path,
                code_snippet=request.diff_content[:2000],
                language=request.language,
                token_count=token_count,
                generation_time_ms=generation_time_ms,
                confidence_score=confidence_score,
            )
            db.add(message)
            db.commit()
            return message.id

    def get_message(self, message_id: str) -> Optional[ReviewMessage]:
        with self._session_factory() as db:
            return db.get(ReviewMessage, message_id)

    def latest_ai_message(self, request_id: str) -> Optional[ReviewMessage]:
        with self._session_factory() as db:
            return (
                db.query(ReviewMessage)
                .filter(
                    ReviewMessage.review_request_id == request_id,
                    ReviewMessage.message_type == MessageType.ai,
                )
                .order_by(ReviewMessage.created_at.desc())
                .first()
            )

    def count_messages(self, request_id: str) -> int:
        with self._session_factory() as db:
            return db.query(ReviewMessage).filter(ReviewMessage.review_request_id == request_id).count()

    def record_feedback(
        self,
        message_id: str,
        accepted: bool,
        helpful: Optional[bool] = None,
        comment: Optional[str] = None,
    ) -> None:
        with self._session_factory() as db:
            message = db.get(ReviewMessage, message_id)
            if message is None:
                return
            message.was_accepted = accepted
            message.was_helpful = accepted if helpful is None else helpful
            if comment is not None:
                message.human_feedback = comment
            db.commit()

    # analytics ---------------------------------------------------------

    def record_analytics(self, project_id: str, profile_id: str, **counters) -> None:
        """Add counters to today's (project, profile) row, creating it if needed."""
        if not counters:
            return
        unknown = set(counters) - set(ANALYTICS_COUNTERS)
        if unknown:
            raise ValueError(f"Unknown analytics counters: {sorted(unknown)}")
        today = utcnow().date()

        if not self._increment_analytics(project_id, profile_id, today, counters):
            with self._session_factory() as db:
                db.add(ReviewAnalytics(project_id=project_id, profile_id=profile_id, date=today, **counters))
                try:
                    db.commit()
                    return
                except IntegrityError:
                    db.rollback()
            # lost the insert race; the row exists now
            self._increment_analytics(project_id, profile_id, today, counters)

    def _increment_analytics(self, project_id: str, profile_id: str, day: date, counters: dict) -> bool:
        with self._session_factory() as db:
            updated = (
                db.query(ReviewAnalytics)
                .filter(
                    ReviewAnalytics.project_id == project_id,
                    ReviewAnalytics.profile_id == profile_id,
                    ReviewAnalytics.date == day,
                )
                .update(
                    {getattr(ReviewAnalytics, k): getattr(ReviewAnalytics, k) + v for k, v in counters.items()},
                    synchronize_session=False,
                )
            )
            db.commit()
            return bool(updated)

    def list_analytics(self, project_id: str) -> List[ReviewAnalytics]:
        with self._session_factory() as db:
            return (
                db.query(ReviewAnalytics)
                .filter(ReviewAnalytics.project_id == project_id)
                .order_by(ReviewAnalytics.date.desc())
                .all()
            )
