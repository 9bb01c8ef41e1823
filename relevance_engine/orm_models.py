"""
SQLAlchemy ORM models for the relevance engine.

These models are internal to the database layer. The public interface
uses the dataclass models from models.py.
"""

import json
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from relevance_engine.models import (
    Article,
    Digest,
    DigestTier,
    Embedding,
    Exclusion,
    FeedbackAction,
    FeedbackEvent,
    Interest,
    LearnedPreference,
    RefType,
    RunLog,
    RunStatus,
    Sentiment,
    Source,
    SourceTrust,
    User,
    UserArticle,
)


class JSONEncodedList(TypeDecorator):
    """Represents a list as a JSON-encoded string."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[List], dialect) -> Optional[str]:
        if value is None:
            return None
        return json.dumps(value)

    def process_result_value(self, value: Optional[str], dialect) -> List:
        if value is None:
            return []
        return json.loads(value)


class JSONEncodedDict(TypeDecorator):
    """Represents a dict as a JSON-encoded string."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[dict], dialect) -> Optional[str]:
        if value is None or value == {}:
            return None
        return json.dumps(value)

    def process_result_value(self, value: Optional[str], dialect) -> dict:
        if value is None:
            return {}
        return json.loads(value)


class Base(DeclarativeBase):
    pass


class UserORM(Base):
    """SQLAlchemy model for users table."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)


class SourceORM(Base):
    """SQLAlchemy model for sources table."""

    __tablename__ = "sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_sources_user_id", "user_id"),
    )


class ArticleORM(Base):
    """SQLAlchemy model for articles table."""

    __tablename__ = "articles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int] = mapped_column(ForeignKey("sources.id"), nullable=False)
    external_id: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    published_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    discovered_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("source_id", "external_id", name="uq_articles_source_external"),
        Index("idx_articles_discovered_at", "discovered_at"),
    )


class InterestORM(Base):
    """SQLAlchemy model for interests table."""

    __tablename__ = "interests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expanded_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_interests_user_id", "user_id"),
    )


class ExclusionORM(Base):
    """SQLAlchemy model for exclusions table."""

    __tablename__ = "exclusions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expanded_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_exclusions_user_id", "user_id"),
    )


class EmbeddingORM(Base):
    """SQLAlchemy model for embeddings table."""

    __tablename__ = "embeddings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ref_type: Mapped[str] = mapped_column(Text, nullable=False)
    ref_id: Mapped[int] = mapped_column(Integer, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    vector: Mapped[List[float]] = mapped_column(JSONEncodedList, nullable=False)
    model: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("ref_type", "ref_id", name="uq_embeddings_ref"),
    )


class UserArticleORM(Base):
    """SQLAlchemy model for user_articles table."""

    __tablename__ = "user_articles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    article_id: Mapped[int] = mapped_column(ForeignKey("articles.id"), nullable=False)
    relevance_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    relevance_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_serendipity: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    embedding_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    digest_id: Mapped[Optional[int]] = mapped_column(ForeignKey("digests.id"), nullable=True)
    digest_tier: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sentiment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sentiment_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_bookmarked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_clicked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    scored_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "article_id", name="uq_user_articles_user_article"),
        Index("idx_user_articles_digest_id", "digest_id"),
        Index("idx_user_articles_user_score", "user_id", "relevance_score"),
    )


class FeedbackEventORM(Base):
    """SQLAlchemy model for feedback_events table (append-only)."""

    __tablename__ = "feedback_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    article_id: Mapped[int] = mapped_column(ForeignKey("articles.id"), nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_feedback_events_user_created", "user_id", "created_at"),
    )


class SourceTrustORM(Base):
    """SQLAlchemy model for source_trust table."""

    __tablename__ = "source_trust"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    source_id: Mapped[int] = mapped_column(ForeignKey("sources.id"), nullable=False)
    trust_factor: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    sample_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    computed_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "source_id", name="uq_source_trust_user_source"),
    )


class DigestORM(Base):
    """SQLAlchemy model for digests table."""

    __tablename__ = "digests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    generated_at: Mapped[int] = mapped_column(Integer, nullable=False)
    article_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_digests_user_generated", "user_id", "generated_at"),
    )


class LearnedPreferenceORM(Base):
    """SQLAlchemy model for learned_preferences table."""

    __tablename__ = "learned_preferences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    preference: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    derived_from_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_learned_preferences_user_id", "user_id"),
    )


class SettingORM(Base):
    """SQLAlchemy model for settings table (per-user key/value)."""

    __tablename__ = "settings"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[int] = mapped_column(Integer, nullable=False)


class RunLockORM(Base):
    """SQLAlchemy model for run_locks table. One row per user with a run in flight."""

    __tablename__ = "run_locks"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner: Mapped[str] = mapped_column(Text, nullable=False)
    acquired_at: Mapped[int] = mapped_column(Integer, nullable=False)


class RunLogORM(Base):
    """SQLAlchemy model for run_logs table."""

    __tablename__ = "run_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    trigger: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    started_at: Mapped[int] = mapped_column(Integer, nullable=False)
    finished_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    summary: Mapped[dict] = mapped_column(JSONEncodedDict, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_run_logs_user_started", "user_id", "started_at"),
    )


# Conversion functions between ORM models and dataclasses


def user_orm_to_dataclass(orm: UserORM) -> User:
    """Convert a UserORM instance to a User dataclass."""
    return User(id=orm.id, name=orm.name, is_active=orm.is_active, created_at=orm.created_at)


def source_orm_to_dataclass(orm: SourceORM) -> Source:
    """Convert a SourceORM instance to a Source dataclass."""
    return Source(
        id=orm.id,
        user_id=orm.user_id,
        name=orm.name,
        url=orm.url,
        enabled=orm.enabled,
        created_at=orm.created_at,
    )


def article_orm_to_dataclass(orm: ArticleORM) -> Article:
    """Convert an ArticleORM instance to an Article dataclass."""
    return Article(
        id=orm.id,
        source_id=orm.source_id,
        external_id=orm.external_id,
        title=orm.title,
        url=orm.url,
        content=orm.content,
        published_at=orm.published_at,
        discovered_at=orm.discovered_at,
    )


def article_dataclass_to_orm(article: Article, discovered_at: int) -> ArticleORM:
    """Convert an Article dataclass to an ArticleORM instance."""
    return ArticleORM(
        source_id=article.source_id,
        external_id=article.external_id,
        title=article.title,
        url=article.url,
        content=article.content,
        published_at=article.published_at,
        discovered_at=discovered_at,
    )


def interest_orm_to_dataclass(orm: InterestORM) -> Interest:
    """Convert an InterestORM instance to an Interest dataclass."""
    return Interest(
        id=orm.id,
        user_id=orm.user_id,
        category=orm.category,
        description=orm.description,
        expanded_description=orm.expanded_description,
        weight=orm.weight,
        is_active=orm.is_active,
        created_at=orm.created_at,
    )


def exclusion_orm_to_dataclass(orm: ExclusionORM) -> Exclusion:
    """Convert an ExclusionORM instance to an Exclusion dataclass."""
    return Exclusion(
        id=orm.id,
        user_id=orm.user_id,
        category=orm.category,
        description=orm.description,
        expanded_description=orm.expanded_description,
        is_active=orm.is_active,
        created_at=orm.created_at,
    )


def embedding_orm_to_dataclass(orm: EmbeddingORM) -> Embedding:
    """Convert an EmbeddingORM instance to an Embedding dataclass."""
    return Embedding(
        id=orm.id,
        ref_type=RefType(orm.ref_type),
        ref_id=orm.ref_id,
        text=orm.text,
        vector=list(orm.vector or []),
        model=orm.model,
        created_at=orm.created_at,
    )


def user_article_orm_to_dataclass(orm: UserArticleORM) -> UserArticle:
    """Convert a UserArticleORM instance to a UserArticle dataclass."""
    return UserArticle(
        id=orm.id,
        user_id=orm.user_id,
        article_id=orm.article_id,
        relevance_score=orm.relevance_score,
        relevance_reason=orm.relevance_reason,
        is_serendipity=orm.is_serendipity,
        embedding_score=orm.embedding_score,
        digest_id=orm.digest_id,
        digest_tier=DigestTier(orm.digest_tier) if orm.digest_tier else None,
        sentiment=Sentiment(orm.sentiment) if orm.sentiment else None,
        sentiment_at=orm.sentiment_at,
        is_bookmarked=orm.is_bookmarked,
        is_archived=orm.is_archived,
        is_clicked=orm.is_clicked,
        scored_at=orm.scored_at,
    )


def source_trust_orm_to_dataclass(orm: SourceTrustORM) -> SourceTrust:
    """Convert a SourceTrustORM instance to a SourceTrust dataclass."""
    return SourceTrust(
        user_id=orm.user_id,
        source_id=orm.source_id,
        trust_factor=orm.trust_factor,
        sample_size=orm.sample_size,
        computed_at=orm.computed_at,
    )


def digest_orm_to_dataclass(orm: DigestORM) -> Digest:
    """Convert a DigestORM instance to a Digest dataclass."""
    return Digest(
        id=orm.id,
        user_id=orm.user_id,
        provider=orm.provider,
        generated_at=orm.generated_at,
        article_count=orm.article_count,
    )


def preference_orm_to_dataclass(orm: LearnedPreferenceORM) -> LearnedPreference:
    """Convert a LearnedPreferenceORM instance to a LearnedPreference dataclass."""
    return LearnedPreference(
        id=orm.id,
        user_id=orm.user_id,
        preference=orm.preference,
        confidence=orm.confidence,
        derived_from_count=orm.derived_from_count,
        created_at=orm.created_at,
    )


def feedback_orm_to_dataclass(orm: FeedbackEventORM) -> FeedbackEvent:
    """Convert a FeedbackEventORM instance to a FeedbackEvent dataclass."""
    return FeedbackEvent(
        id=orm.id,
        user_id=orm.user_id,
        article_id=orm.article_id,
        action=FeedbackAction(orm.action),
        created_at=orm.created_at,
    )


def run_log_orm_to_dataclass(orm: RunLogORM) -> RunLog:
    """Convert a RunLogORM instance to a RunLog dataclass."""
    return RunLog(
        id=orm.id,
        user_id=orm.user_id,
        trigger=orm.trigger,
        status=RunStatus(orm.status),
        started_at=orm.started_at,
        finished_at=orm.finished_at,
        duration_ms=orm.duration_ms,
        summary=orm.summary or {},
        error=orm.error,
    )
