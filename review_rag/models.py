import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from review_rag.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReviewStatus(str, enum.Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"


class MessageType(str, enum.Enum):
    human = "human"
    ai = "ai"
    system = "system"


class Project(Base):
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True, default=_uuid)
    org_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow)


class ReviewRequest(Base):
    __tablename__ = "review_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    profile_id = Column(String(64), nullable=False)
    org_id = Column(String(64), nullable=False, index=True)

    diff_content = Column(Text, nullable=False)
    diff_hash = Column(String(64), nullable=False, index=True)
    file_path = Column(Text)
    language = Column(String(50))

    status = Column(Enum(ReviewStatus), default=ReviewStatus.pending, nullable=False, index=True)
    priority = Column(Integer, default=0)
    cache_hit = Column(Boolean, default=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime)

    messages = relationship(
        "ReviewMessage",
        back_populates="review_request",
        cascade="all, delete-orphan",
        order_by="ReviewMessage.created_at",
    )


class ReviewMessage(Base):
    __tablename__ = "review_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    review_request_id = Column(
        String(36), ForeignKey("review_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    project_id = Column(String(36), nullable=False, index=True)

    content = Column(Text, nullable=False)
    message_type = Column(Enum(MessageType), nullable=False)
    model = Column(String(100))
    # set on cache hits: the message whose content was served
    source_message_id = Column(String(36), index=True)

    file_path = Column(Text)
    line_start = Column(Integer)
    line_end = Column(Integer)
    code_snippet = Column(Text)
    language = Column(String(50))

    token_count = Column(Integer, default=0)
    generation_time_ms = Column(Integer)
    confidence_score = Column(Float)

    was_accepted = Column(Boolean)
    was_helpful = Column(Boolean)
    human_feedback = Column(Text)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    review_request = relationship("ReviewRequest", back_populates="messages")
    embedding = relationship("Embedding", back_populates="message", uselist=False)


class Embedding(Base):
    __tablename__ = "embeddings"
    __table_args__ = (
        UniqueConstraint("project_id", "content_hash", name="uq_embeddings_project_hash"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    message_id = Column(String(36), ForeignKey("review_messages.id", ondelete="CASCADE"), nullable=False)
    project_id = Column(String(36), nullable=False, index=True)

    vector = Column(JSON, nullable=False)
    content_hash = Column(String(64), nullable=False)

    file_path = Column(Text)
    language = Column(String(50), index=True)
    tags = Column(JSON, default=list)

    similarity_threshold = Column(Float, default=0.85)
    usage_count = Column(Integer, default=1, nullable=False)
    last_used_at = Column(DateTime, default=utcnow)
    trust_score = Column(Float, default=1.0, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    message = relationship("ReviewMessage", back_populates="embedding")


class ReviewAnalytics(Base):
    __tablename__ = "review_analytics"
    __table_args__ = (
        UniqueConstraint("project_id", "profile_id", "date", name="uq_analytics_day"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(String(36), nullable=False, index=True)
    profile_id = Column(String(64), nullable=False)
    date = Column(Date, nullable=False)

    total_reviews = Column(Integer, default=0, nullable=False)
    cache_hits = Column(Integer, default=0, nullable=False)
    cache_misses = Column(Integer, default=0, nullable=False)
    total_tokens_used = Column(Integer, default=0, nullable=False)
    estimated_cost = Column(Float, default=0.0, nullable=False)
    total_response_time_ms = Column(Integer, default=0, nullable=False)
    helpful_reviews = Column(Integer, default=0, nullable=False)
    total_feedback = Column(Integer, default=0, nullable=False)
