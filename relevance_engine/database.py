"""
Database operations for the relevance engine.

Uses SQLAlchemy ORM for database access. The public API uses dataclass models
from models.py, with conversion to/from ORM models handled internally.
"""

import time
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from relevance_engine.constants import EMBEDDING_FALLBACK_REASON, EXCLUDED_PREFIX, PREFILTERED_PREFIX
from relevance_engine.db_engine import get_engine, get_session
from relevance_engine.errors import PersistenceError, ValidationError
from relevance_engine.models import (
    Article,
    Digest,
    DigestArticle,
    DigestStats,
    DigestTier,
    Embedding,
    Exclusion,
    FeedbackAction,
    FeedbackContext,
    Interest,
    LearnedPreference,
    RefType,
    RunLog,
    RunStatus,
    ScoringResult,
    Sentiment,
    Source,
    SourceFeedbackStats,
    SourceTrust,
    User,
    UserArticle,
)
from relevance_engine.orm_models import (
    Base,
    ArticleORM,
    DigestORM,
    EmbeddingORM,
    ExclusionORM,
    FeedbackEventORM,
    InterestORM,
    LearnedPreferenceORM,
    RunLockORM,
    RunLogORM,
    SettingORM,
    SourceORM,
    SourceTrustORM,
    UserArticleORM,
    UserORM,
    article_dataclass_to_orm,
    article_orm_to_dataclass,
    digest_orm_to_dataclass,
    embedding_orm_to_dataclass,
    exclusion_orm_to_dataclass,
    interest_orm_to_dataclass,
    preference_orm_to_dataclass,
    run_log_orm_to_dataclass,
    source_orm_to_dataclass,
    source_trust_orm_to_dataclass,
    user_article_orm_to_dataclass,
    user_orm_to_dataclass,
)
from util.logging_util import setup_logger

logger = setup_logger(__name__)


def init_db():
    """Initialize the database schema."""
    engine = get_engine()
    Base.metadata.create_all(engine)


# Users and sources


def create_user(name: str, is_active: bool = True) -> int:
    """Create a user. Returns the user id."""
    orm = UserORM(name=name, is_active=is_active, created_at=int(time.time()))
    with get_session() as session:
        session.add(orm)
        session.flush()
        return orm.id


def get_user(user_id: int) -> Optional[User]:
    with get_session() as session:
        orm = session.get(UserORM, user_id)
        if orm is None:
            return None
        return user_orm_to_dataclass(orm)


def get_active_users() -> List[User]:
    """Get all active users, oldest first."""
    with get_session() as session:
        stmt = select(UserORM).where(UserORM.is_active.is_(True)).order_by(UserORM.id)
        return [user_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


def add_source(user_id: int, name: str, url: str, enabled: bool = True) -> int:
    """Add a source for a user. Returns the source id."""
    orm = SourceORM(
        user_id=user_id,
        name=name,
        url=url,
        enabled=enabled,
        created_at=int(time.time()),
    )
    with get_session() as session:
        session.add(orm)
        session.flush()
        return orm.id


def get_sources_for_user(user_id: int, enabled_only: bool = True) -> List[Source]:
    with get_session() as session:
        stmt = select(SourceORM).where(SourceORM.user_id == user_id)
        if enabled_only:
            stmt = stmt.where(SourceORM.enabled.is_(True))
        stmt = stmt.order_by(SourceORM.id)
        return [source_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


def set_source_enabled(source_id: int, enabled: bool) -> bool:
    """Enable or disable a source. Returns False if the source does not exist."""
    with get_session() as session:
        orm = session.get(SourceORM, source_id)
        if orm is None:
            return False
        orm.enabled = enabled
        return True


# Articles


def insert_article(article: Article) -> int:
    """Insert a new article into the database.

    Returns the article id.
    """
    discovered_at = article.discovered_at or int(time.time())
    orm = article_dataclass_to_orm(article, discovered_at)

    with get_session() as session:
        session.add(orm)
        session.flush()
        return orm.id


def get_article_by_id(article_id: int) -> Optional[Article]:
    """Get an article by its database ID."""
    with get_session() as session:
        orm = session.get(ArticleORM, article_id)
        if orm is None:
            return None
        return article_orm_to_dataclass(orm)


def get_articles_by_ids(article_ids: Iterable[int]) -> List[Article]:
    ids = list(article_ids)
    if not ids:
        return []
    with get_session() as session:
        stmt = select(ArticleORM).where(ArticleORM.id.in_(ids)).order_by(ArticleORM.id)
        return [article_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


def get_unscored_articles_for_user(user_id: int) -> List[Article]:
    """Get articles from the user's enabled sources that need scoring.

    An article needs scoring when the user has no row for it yet, when its
    row has no score (never scored, excluded, or reset), or when it only
    carries an embedding fallback score and has not been put in a digest.
    Archived rows and rows settled by the prefilter are never re-scored.
    """
    with get_session() as session:
        stmt = (
            select(ArticleORM)
            .join(SourceORM, SourceORM.id == ArticleORM.source_id)
            .outerjoin(
                UserArticleORM,
                and_(
                    UserArticleORM.article_id == ArticleORM.id,
                    UserArticleORM.user_id == user_id,
                ),
            )
            .where(
                SourceORM.user_id == user_id,
                SourceORM.enabled.is_(True),
                or_(
                    UserArticleORM.id.is_(None),
                    and_(
                        UserArticleORM.digest_id.is_(None),
                        UserArticleORM.is_archived.is_(False),
                        or_(
                            UserArticleORM.relevance_reason.is_(None),
                            UserArticleORM.relevance_reason.not_like(f"{PREFILTERED_PREFIX}%"),
                        ),
                        or_(
                            UserArticleORM.relevance_score.is_(None),
                            UserArticleORM.relevance_reason == EMBEDDING_FALLBACK_REASON,
                        ),
                    ),
                ),
            )
            .order_by(ArticleORM.discovered_at.desc(), ArticleORM.id)
        )
        return [article_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


# Interests and exclusions


def insert_interest(interest: Interest) -> int:
    """Insert an interest. Returns the interest id."""
    orm = InterestORM(
        user_id=interest.user_id,
        category=interest.category,
        description=interest.description,
        expanded_description=interest.expanded_description,
        weight=interest.weight,
        is_active=interest.is_active,
        created_at=interest.created_at or int(time.time()),
    )
    with get_session() as session:
        session.add(orm)
        session.flush()
        return orm.id


def get_interest(interest_id: int) -> Optional[Interest]:
    with get_session() as session:
        orm = session.get(InterestORM, interest_id)
        if orm is None:
            return None
        return interest_orm_to_dataclass(orm)


def get_active_interests(user_id: int) -> List[Interest]:
    """Get a user's active interests, highest weight first."""
    with get_session() as session:
        stmt = (
            select(InterestORM)
            .where(InterestORM.user_id == user_id, InterestORM.is_active.is_(True))
            .order_by(InterestORM.weight.desc(), InterestORM.id)
        )
        return [interest_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


def count_active_interests(user_id: int) -> int:
    with get_session() as session:
        stmt = select(func.count(InterestORM.id)).where(
            InterestORM.user_id == user_id, InterestORM.is_active.is_(True)
        )
        return session.execute(stmt).scalar() or 0


def update_interest(interest: Interest) -> bool:
    """Write back the mutable fields of an interest.

    Returns False if the interest does not exist.
    """
    with get_session() as session:
        orm = session.get(InterestORM, interest.id)
        if orm is None:
            return False
        orm.category = interest.category
        orm.description = interest.description
        orm.expanded_description = interest.expanded_description
        orm.weight = interest.weight
        orm.is_active = interest.is_active
        return True


def insert_exclusion(exclusion: Exclusion) -> int:
    """Insert an exclusion. Returns the exclusion id."""
    orm = ExclusionORM(
        user_id=exclusion.user_id,
        category=exclusion.category,
        description=exclusion.description,
        expanded_description=exclusion.expanded_description,
        is_active=exclusion.is_active,
        created_at=exclusion.created_at or int(time.time()),
    )
    with get_session() as session:
        session.add(orm)
        session.flush()
        return orm.id


def get_exclusion(exclusion_id: int) -> Optional[Exclusion]:
    with get_session() as session:
        orm = session.get(ExclusionORM, exclusion_id)
        if orm is None:
            return None
        return exclusion_orm_to_dataclass(orm)


def get_active_exclusions(user_id: int) -> List[Exclusion]:
    with get_session() as session:
        stmt = (
            select(ExclusionORM)
            .where(ExclusionORM.user_id == user_id, ExclusionORM.is_active.is_(True))
            .order_by(ExclusionORM.id)
        )
        return [exclusion_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


def count_active_exclusions(user_id: int) -> int:
    with get_session() as session:
        stmt = select(func.count(ExclusionORM.id)).where(
            ExclusionORM.user_id == user_id, ExclusionORM.is_active.is_(True)
        )
        return session.execute(stmt).scalar() or 0


def update_exclusion(exclusion: Exclusion) -> bool:
    """Write back the mutable fields of an exclusion.

    Returns False if the exclusion does not exist.
    """
    with get_session() as session:
        orm = session.get(ExclusionORM, exclusion.id)
        if orm is None:
            return False
        orm.category = exclusion.category
        orm.description = exclusion.description
        orm.expanded_description = exclusion.expanded_description
        orm.is_active = exclusion.is_active
        return True


# Embeddings


def _upsert(session: Session, orm_class, key_columns: List[str], values: dict) -> None:
    """Insert a row or overwrite the one sharing its unique key, in one statement."""
    if session.get_bind().dialect.name == "postgresql":
        stmt = postgresql_insert(orm_class).values(**values)
    else:
        stmt = sqlite_insert(orm_class).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=key_columns,
        set_={name: stmt.excluded[name] for name in values if name not in key_columns},
    )
    session.execute(stmt)


def upsert_embedding(
    ref_type: RefType,
    ref_id: int,
    text: str,
    vector: List[float],
    model: str,
    now: Optional[int] = None,
) -> None:
    """Store an embedding, replacing any existing one for (ref_type, ref_id)."""
    now = now if now is not None else int(time.time())
    with get_session() as session:
        _upsert(
            session,
            EmbeddingORM,
            ["ref_type", "ref_id"],
            dict(
                ref_type=ref_type.value,
                ref_id=ref_id,
                text=text,
                vector=list(vector),
                model=model,
                created_at=now,
            ),
        )


def get_embedding(ref_type: RefType, ref_id: int) -> Optional[Embedding]:
    with get_session() as session:
        stmt = select(EmbeddingORM).where(
            EmbeddingORM.ref_type == ref_type.value,
            EmbeddingORM.ref_id == ref_id,
        )
        orm = session.execute(stmt).scalar_one_or_none()
        if orm is None:
            return None
        return embedding_orm_to_dataclass(orm)


def get_embeddings(ref_type: RefType, ref_ids: Iterable[int]) -> Dict[int, Embedding]:
    """Get stored embeddings keyed by ref id. Missing ids are absent from the result."""
    ids = list(ref_ids)
    if not ids:
        return {}
    with get_session() as session:
        stmt = select(EmbeddingORM).where(
            EmbeddingORM.ref_type == ref_type.value,
            EmbeddingORM.ref_id.in_(ids),
        )
        return {
            orm.ref_id: embedding_orm_to_dataclass(orm)
            for orm in session.execute(stmt).scalars().all()
        }


def delete_embedding(ref_type: RefType, ref_id: int) -> bool:
    with get_session() as session:
        result = session.execute(
            delete(EmbeddingORM).where(
                EmbeddingORM.ref_type == ref_type.value,
                EmbeddingORM.ref_id == ref_id,
            )
        )
        return result.rowcount > 0


def get_interests_missing_embeddings() -> List[Interest]:
    """Active interests across all users that have no stored embedding."""
    with get_session() as session:
        stmt = (
            select(InterestORM)
            .outerjoin(
                EmbeddingORM,
                and_(
                    EmbeddingORM.ref_type == RefType.INTEREST.value,
                    EmbeddingORM.ref_id == InterestORM.id,
                ),
            )
            .where(InterestORM.is_active.is_(True), EmbeddingORM.id.is_(None))
            .order_by(InterestORM.id)
        )
        return [interest_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


def get_exclusions_missing_embeddings() -> List[Exclusion]:
    """Active exclusions across all users that have no stored embedding."""
    with get_session() as session:
        stmt = (
            select(ExclusionORM)
            .outerjoin(
                EmbeddingORM,
                and_(
                    EmbeddingORM.ref_type == RefType.EXCLUSION.value,
                    EmbeddingORM.ref_id == ExclusionORM.id,
                ),
            )
            .where(ExclusionORM.is_active.is_(True), EmbeddingORM.id.is_(None))
            .order_by(ExclusionORM.id)
        )
        return [exclusion_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


def get_articles_missing_embeddings(discovered_since: int, limit: int) -> List[Article]:
    """Recently discovered articles that have no stored embedding."""
    with get_session() as session:
        stmt = (
            select(ArticleORM)
            .outerjoin(
                EmbeddingORM,
                and_(
                    EmbeddingORM.ref_type == RefType.ARTICLE.value,
                    EmbeddingORM.ref_id == ArticleORM.id,
                ),
            )
            .where(ArticleORM.discovered_at >= discovered_since, EmbeddingORM.id.is_(None))
            .order_by(ArticleORM.discovered_at.desc())
            .limit(limit)
        )
        return [article_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


def prune_article_embeddings(discovered_before: int) -> int:
    """Delete embeddings of articles discovered before the cutoff.

    Returns the number of embeddings removed.
    """
    with get_session() as session:
        old_ids = select(ArticleORM.id).where(ArticleORM.discovered_at < discovered_before)
        result = session.execute(
            delete(EmbeddingORM)
            .where(
                EmbeddingORM.ref_type == RefType.ARTICLE.value,
                EmbeddingORM.ref_id.in_(old_ids),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


# Scoring assignments


def get_user_article(user_id: int, article_id: int) -> Optional[UserArticle]:
    with get_session() as session:
        stmt = select(UserArticleORM).where(
            UserArticleORM.user_id == user_id,
            UserArticleORM.article_id == article_id,
        )
        orm = session.execute(stmt).scalar_one_or_none()
        if orm is None:
            return None
        return user_article_orm_to_dataclass(orm)


def get_user_articles(user_id: int) -> List[UserArticle]:
    with get_session() as session:
        stmt = (
            select(UserArticleORM)
            .where(UserArticleORM.user_id == user_id)
            .order_by(UserArticleORM.article_id)
        )
        return [user_article_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


def _user_article_rows(session, user_id: int, article_ids: List[int]) -> Dict[int, UserArticleORM]:
    stmt = select(UserArticleORM).where(
        UserArticleORM.user_id == user_id,
        UserArticleORM.article_id.in_(article_ids),
    )
    return {orm.article_id: orm for orm in session.execute(stmt).scalars().all()}


def save_scoring_results(
    user_id: int,
    results: List[ScoringResult],
    embedding_scores: Dict[int, float],
    now: Optional[int] = None,
) -> int:
    """Persist final scores onto user_articles, creating rows as needed.

    Returns the number of rows written.
    """
    if not results:
        return 0
    now = now if now is not None else int(time.time())
    with get_session() as session:
        rows = _user_article_rows(session, user_id, [r.article_id for r in results])
        for result in results:
            if not 0.0 <= result.relevance_score <= 1.0:
                raise ValidationError(
                    f"relevance_score {result.relevance_score} out of range for article {result.article_id}"
                )
            orm = rows.get(result.article_id)
            if orm is None:
                orm = UserArticleORM(user_id=user_id, article_id=result.article_id)
                session.add(orm)
            orm.relevance_score = result.relevance_score
            orm.relevance_reason = result.relevance_reason
            orm.is_serendipity = result.is_serendipity
            orm.embedding_score = embedding_scores.get(result.article_id)
            orm.digest_tier = None
            orm.scored_at = now
        return len(results)


def mark_articles_excluded(
    user_id: int,
    exclusions_by_article: Dict[int, str],
    embedding_scores: Dict[int, float],
) -> int:
    """Record exclusion vetoes. The rows keep a null score so they never tier.

    Returns the number of rows written.
    """
    if not exclusions_by_article:
        return 0
    with get_session() as session:
        rows = _user_article_rows(session, user_id, list(exclusions_by_article))
        for article_id, category in exclusions_by_article.items():
            orm = rows.get(article_id)
            if orm is None:
                orm = UserArticleORM(user_id=user_id, article_id=article_id)
                session.add(orm)
            orm.relevance_score = None
            orm.relevance_reason = f"{EXCLUDED_PREFIX}{category}"
            orm.is_serendipity = False
            orm.embedding_score = embedding_scores.get(article_id)
            orm.digest_tier = None
            orm.scored_at = None
        return len(exclusions_by_article)


def mark_articles_prefiltered(user_id: int, reasons_by_article: Dict[int, str]) -> int:
    """Settle articles the prefilter dropped so later runs do not reload them.

    The rows keep a null score, so they never tier. Returns the number of rows written.
    """
    if not reasons_by_article:
        return 0
    with get_session() as session:
        rows = _user_article_rows(session, user_id, list(reasons_by_article))
        for article_id, reason in reasons_by_article.items():
            orm = rows.get(article_id)
            if orm is None:
                orm = UserArticleORM(user_id=user_id, article_id=article_id)
                session.add(orm)
            orm.relevance_score = None
            orm.relevance_reason = f"{PREFILTERED_PREFIX}{reason}"
            orm.is_serendipity = False
            orm.digest_tier = None
        return len(reasons_by_article)


# Feedback


def record_feedback(
    user_id: int,
    article_id: int,
    action: FeedbackAction,
    now: Optional[int] = None,
) -> int:
    """Append a feedback event and apply it to the user's article state.

    Sentiment actions set the sentiment; bookmark, click and archive set
    their flags. Archiving requires a prior sentiment.

    Returns the feedback event id.

    Raises:
        ValidationError: if archiving an article without sentiment.
    """
    now = now if now is not None else int(time.time())
    with get_session() as session:
        if session.get(ArticleORM, article_id) is None:
            raise ValidationError(f"Article {article_id} does not exist")

        orm = _user_article_rows(session, user_id, [article_id]).get(article_id)
        if orm is None:
            orm = UserArticleORM(
                user_id=user_id,
                article_id=article_id,
                is_serendipity=False,
                is_bookmarked=False,
                is_archived=False,
                is_clicked=False,
            )
            session.add(orm)

        sentiment = action.sentiment
        if sentiment is not None:
            orm.sentiment = sentiment.value
            orm.sentiment_at = now
        elif action == FeedbackAction.BOOKMARK:
            orm.is_bookmarked = True
        elif action == FeedbackAction.CLICK:
            orm.is_clicked = True
        elif action == FeedbackAction.ARCHIVE:
            if orm.sentiment is None:
                raise ValidationError("Rate an article before archiving it")
            orm.is_archived = True

        event = FeedbackEventORM(
            user_id=user_id,
            article_id=article_id,
            action=action.value,
            created_at=now,
        )
        session.add(event)
        session.flush()
        return event.id


def count_feedback_events(user_id: int) -> int:
    with get_session() as session:
        stmt = select(func.count(FeedbackEventORM.id)).where(FeedbackEventORM.user_id == user_id)
        return session.execute(stmt).scalar() or 0


def get_recent_feedback_context(user_id: int, limit: int) -> List[FeedbackContext]:
    """Most recent feedback events joined with article, source and prior reason."""
    with get_session() as session:
        stmt = (
            select(
                FeedbackEventORM.action,
                FeedbackEventORM.created_at,
                ArticleORM.title,
                SourceORM.name,
                UserArticleORM.relevance_reason,
            )
            .join(ArticleORM, ArticleORM.id == FeedbackEventORM.article_id)
            .join(SourceORM, SourceORM.id == ArticleORM.source_id)
            .outerjoin(
                UserArticleORM,
                and_(
                    UserArticleORM.article_id == FeedbackEventORM.article_id,
                    UserArticleORM.user_id == FeedbackEventORM.user_id,
                ),
            )
            .where(FeedbackEventORM.user_id == user_id)
            .order_by(FeedbackEventORM.created_at.desc(), FeedbackEventORM.id.desc())
            .limit(limit)
        )
        return [
            FeedbackContext(
                action=FeedbackAction(row.action),
                title=row.title,
                source_name=row.name,
                relevance_reason=row.relevance_reason,
                created_at=row.created_at,
            )
            for row in session.execute(stmt).all()
        ]


def get_source_feedback_stats(user_id: int, since: int) -> Dict[int, SourceFeedbackStats]:
    """Sentiment counts per source for feedback given at or after ``since``."""

    def _count(sentiment: Sentiment):
        return func.sum(case((UserArticleORM.sentiment == sentiment.value, 1), else_=0))

    with get_session() as session:
        stmt = (
            select(
                ArticleORM.source_id,
                _count(Sentiment.LIKED).label("liked"),
                _count(Sentiment.NEUTRAL).label("neutral"),
                _count(Sentiment.DISLIKED).label("disliked"),
            )
            .join(ArticleORM, ArticleORM.id == UserArticleORM.article_id)
            .where(
                UserArticleORM.user_id == user_id,
                UserArticleORM.sentiment.is_not(None),
                UserArticleORM.sentiment_at >= since,
            )
            .group_by(ArticleORM.source_id)
        )
        return {
            row.source_id: SourceFeedbackStats(
                source_id=row.source_id,
                liked=int(row.liked or 0),
                neutral=int(row.neutral or 0),
                disliked=int(row.disliked or 0),
            )
            for row in session.execute(stmt).all()
        }


# Source trust


def upsert_source_trust(
    user_id: int,
    source_id: int,
    trust_factor: float,
    sample_size: int,
    now: Optional[int] = None,
) -> None:
    now = now if now is not None else int(time.time())
    with get_session() as session:
        _upsert(
            session,
            SourceTrustORM,
            ["user_id", "source_id"],
            dict(
                user_id=user_id,
                source_id=source_id,
                trust_factor=trust_factor,
                sample_size=sample_size,
                computed_at=now,
            ),
        )


def get_source_trust(user_id: int, source_id: int) -> Optional[SourceTrust]:
    with get_session() as session:
        stmt = select(SourceTrustORM).where(
            SourceTrustORM.user_id == user_id,
            SourceTrustORM.source_id == source_id,
        )
        orm = session.execute(stmt).scalar_one_or_none()
        if orm is None:
            return None
        return source_trust_orm_to_dataclass(orm)


def get_trust_factors(user_id: int) -> Dict[int, float]:
    """Trust factor per source id. Sources without a row are absent."""
    with get_session() as session:
        stmt = select(SourceTrustORM.source_id, SourceTrustORM.trust_factor).where(
            SourceTrustORM.user_id == user_id
        )
        return {row.source_id: row.trust_factor for row in session.execute(stmt).all()}


# Digests


def get_digest_candidates(user_id: int) -> List[UserArticle]:
    """Scored, unarchived rows not yet in any digest, best score first."""
    with get_session() as session:
        stmt = (
            select(UserArticleORM)
            .where(
                UserArticleORM.user_id == user_id,
                UserArticleORM.relevance_score.is_not(None),
                UserArticleORM.is_archived.is_(False),
                UserArticleORM.digest_id.is_(None),
            )
            .order_by(UserArticleORM.relevance_score.desc(), UserArticleORM.id)
        )
        return [user_article_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


def create_digest_with_assignments(
    user_id: int,
    provider: str,
    assignments: List[Tuple[int, DigestTier]],
    generated_at: Optional[int] = None,
) -> Digest:
    """Create a digest and assign user_article rows to it in one transaction.

    ``assignments`` holds (user_article_id, tier) pairs. A row that has been
    assigned elsewhere in the meantime aborts the whole unit of work.

    Raises:
        PersistenceError: if any row could not be assigned.
    """
    generated_at = generated_at if generated_at is not None else int(time.time())
    with get_session() as session:
        digest = DigestORM(
            user_id=user_id,
            provider=provider,
            generated_at=generated_at,
            article_count=len(assignments),
        )
        session.add(digest)
        session.flush()

        by_tier: Dict[DigestTier, List[int]] = {}
        for user_article_id, tier in assignments:
            by_tier.setdefault(tier, []).append(user_article_id)

        assigned = 0
        for tier, ids in by_tier.items():
            result = session.execute(
                update(UserArticleORM)
                .where(
                    UserArticleORM.id.in_(ids),
                    UserArticleORM.user_id == user_id,
                    UserArticleORM.digest_id.is_(None),
                )
                .values(digest_id=digest.id, digest_tier=tier.value)
                .execution_options(synchronize_session=False)
            )
            assigned += result.rowcount

        if assigned != len(assignments):
            raise PersistenceError(
                f"Digest assignment conflict: expected {len(assignments)} rows, assigned {assigned}"
            )
        return digest_orm_to_dataclass(digest)


def clear_digest(digest_id: int) -> Optional[int]:
    """Reset a digest so its articles can be re-scored, then delete it.

    Non-archived members lose digest membership, score, reason, tier and
    scored_at. Archived members only lose digest membership.

    Returns the number of member rows released, or None if no such digest.
    """
    with get_session() as session:
        digest = session.get(DigestORM, digest_id)
        if digest is None:
            return None

        reset = session.execute(
            update(UserArticleORM)
            .where(
                UserArticleORM.digest_id == digest_id,
                UserArticleORM.is_archived.is_(False),
            )
            .values(
                digest_id=None,
                digest_tier=None,
                relevance_score=None,
                relevance_reason=None,
                is_serendipity=False,
                scored_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        released = session.execute(
            update(UserArticleORM)
            .where(
                UserArticleORM.digest_id == digest_id,
                UserArticleORM.is_archived.is_(True),
            )
            .values(digest_id=None)
            .execution_options(synchronize_session=False)
        )
        session.delete(digest)
        return reset.rowcount + released.rowcount


def get_digest(digest_id: int) -> Optional[Digest]:
    with get_session() as session:
        orm = session.get(DigestORM, digest_id)
        if orm is None:
            return None
        return digest_orm_to_dataclass(orm)


def get_recent_digests(user_id: int, limit: int = 10) -> List[Digest]:
    """Most recent digests for a user, newest first."""
    with get_session() as session:
        stmt = (
            select(DigestORM)
            .where(DigestORM.user_id == user_id)
            .order_by(DigestORM.generated_at.desc(), DigestORM.id.desc())
            .limit(limit)
        )
        return [digest_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


def get_latest_digest(user_id: int) -> Optional[Digest]:
    digests = get_recent_digests(user_id, limit=1)
    return digests[0] if digests else None


def get_digest_articles(digest_id: int, include_archived: bool = False) -> List[DigestArticle]:
    """Articles in a digest, best score first."""
    with get_session() as session:
        stmt = (
            select(UserArticleORM, ArticleORM, SourceORM.name)
            .join(ArticleORM, ArticleORM.id == UserArticleORM.article_id)
            .join(SourceORM, SourceORM.id == ArticleORM.source_id)
            .where(UserArticleORM.digest_id == digest_id)
        )
        if not include_archived:
            stmt = stmt.where(UserArticleORM.is_archived.is_(False))
        stmt = stmt.order_by(UserArticleORM.relevance_score.desc(), UserArticleORM.id)
        return [
            DigestArticle(
                article=article_orm_to_dataclass(article),
                user_article=user_article_orm_to_dataclass(user_article),
                source_name=source_name,
            )
            for user_article, article, source_name in session.execute(stmt).all()
        ]


def get_digest_tier_counts(digest_id: int) -> Dict[DigestTier, int]:
    with get_session() as session:
        stmt = (
            select(UserArticleORM.digest_tier, func.count(UserArticleORM.id))
            .where(UserArticleORM.digest_id == digest_id)
            .group_by(UserArticleORM.digest_tier)
        )
        return {DigestTier(tier): count for tier, count in session.execute(stmt).all() if tier}


def get_digest_stats(digest_id: int) -> DigestStats:
    """Completion stats for a digest."""

    def _flag_sum(column):
        return func.sum(case((column.is_(True), 1), else_=0))

    def _sentiment_sum(sentiment: Sentiment):
        return func.sum(case((UserArticleORM.sentiment == sentiment.value, 1), else_=0))

    with get_session() as session:
        stmt = select(
            func.count(UserArticleORM.id),
            _flag_sum(UserArticleORM.is_archived),
            _sentiment_sum(Sentiment.LIKED),
            _sentiment_sum(Sentiment.NEUTRAL),
            _sentiment_sum(Sentiment.DISLIKED),
            _flag_sum(UserArticleORM.is_bookmarked),
        ).where(UserArticleORM.digest_id == digest_id)
        total, archived, liked, neutral, disliked, bookmarked = session.execute(stmt).one()
        return DigestStats(
            total=int(total or 0),
            archived=int(archived or 0),
            liked=int(liked or 0),
            neutral=int(neutral or 0),
            disliked=int(disliked or 0),
            bookmarked=int(bookmarked or 0),
        )


# Learned preferences


def get_learned_preferences(user_id: int) -> List[LearnedPreference]:
    """A user's learned preferences, most confident first."""
    with get_session() as session:
        stmt = (
            select(LearnedPreferenceORM)
            .where(LearnedPreferenceORM.user_id == user_id)
            .order_by(LearnedPreferenceORM.confidence.desc(), LearnedPreferenceORM.id)
        )
        return [preference_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]


def replace_learned_preferences(
    user_id: int,
    preferences: List[LearnedPreference],
    now: Optional[int] = None,
) -> int:
    """Replace all of a user's learned preferences in one transaction.

    Returns the number of preferences stored.
    """
    now = now if now is not None else int(time.time())
    with get_session() as session:
        session.execute(
            delete(LearnedPreferenceORM).where(LearnedPreferenceORM.user_id == user_id)
        )
        for preference in preferences:
            session.add(
                LearnedPreferenceORM(
                    user_id=user_id,
                    preference=preference.preference,
                    confidence=preference.confidence,
                    derived_from_count=preference.derived_from_count,
                    created_at=now,
                )
            )
        return len(preferences)


# Settings


def get_setting(user_id: int, key: str) -> Optional[str]:
    with get_session() as session:
        orm = session.get(SettingORM, (user_id, key))
        return orm.value if orm is not None else None


def set_setting(user_id: int, key: str, value: str, now: Optional[int] = None) -> None:
    now = now if now is not None else int(time.time())
    with get_session() as session:
        _upsert(session, SettingORM, ["user_id", "key"], dict(user_id=user_id, key=key, value=value, updated_at=now))


# Run serialization


def acquire_run_lock(user_id: int, owner: str, stale_seconds: int, now: Optional[int] = None) -> bool:
    """Take the per-user run lock.

    A lock older than ``stale_seconds`` is treated as abandoned and taken over.

    Returns False if another run holds the lock.
    """
    now = now if now is not None else int(time.time())
    try:
        with get_session() as session:
            existing = session.get(RunLockORM, user_id)
            if existing is None:
                session.add(RunLockORM(user_id=user_id, owner=owner, acquired_at=now))
                session.flush()
                return True

            if now - existing.acquired_at < stale_seconds:
                return False

            logger.warning(
                f"Taking over stale run lock for user {user_id} held by {existing.owner} "
                f"since {existing.acquired_at}"
            )
            result = session.execute(
                update(RunLockORM)
                .where(
                    RunLockORM.user_id == user_id,
                    RunLockORM.acquired_at == existing.acquired_at,
                )
                .values(owner=owner, acquired_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1
    except PersistenceError as e:
        if isinstance(e.__cause__, IntegrityError):
            return False
        raise


def release_run_lock(user_id: int, owner: str) -> bool:
    with get_session() as session:
        result = session.execute(
            delete(RunLockORM).where(RunLockORM.user_id == user_id, RunLockORM.owner == owner)
        )
        return result.rowcount > 0


# Run logs


def start_run_log(user_id: int, trigger: str, started_at: Optional[int] = None) -> int:
    """Open a run log row in the ``partial`` state. Returns the run log id."""
    orm = RunLogORM(
        user_id=user_id,
        trigger=trigger,
        status=RunStatus.PARTIAL.value,
        started_at=started_at if started_at is not None else int(time.time()),
    )
    with get_session() as session:
        session.add(orm)
        session.flush()
        return orm.id


def finish_run_log(
    run_log_id: int,
    status: RunStatus,
    duration_ms: int,
    summary: dict,
    error: Optional[str] = None,
    finished_at: Optional[int] = None,
) -> None:
    with get_session() as session:
        orm = session.get(RunLogORM, run_log_id)
        if orm is None:
            logger.warning(f"Run log {run_log_id} vanished before it could be closed")
            return
        orm.status = status.value
        orm.finished_at = finished_at if finished_at is not None else int(time.time())
        orm.duration_ms = duration_ms
        orm.summary = summary
        orm.error = error


def get_recent_run_logs(user_id: int, limit: int = 20) -> List[RunLog]:
    with get_session() as session:
        stmt = (
            select(RunLogORM)
            .where(RunLogORM.user_id == user_id)
            .order_by(RunLogORM.started_at.desc(), RunLogORM.id.desc())
            .limit(limit)
        )
        return [run_log_orm_to_dataclass(orm) for orm in session.execute(stmt).scalars().all()]
