"""
Data models for the relevance engine.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List


class RefType(Enum):
    INTEREST = "interest"
    EXCLUSION = "exclusion"
    ARTICLE = "article"


class Sentiment(Enum):
    LIKED = "liked"
    NEUTRAL = "neutral"
    DISLIKED = "disliked"


class DigestTier(Enum):
    RECOMMENDED = "recommended"
    SERENDIPITY = "serendipity"
    BONUS = "bonus"


class FeedbackAction(Enum):
    LIKED = "liked"
    NEUTRAL = "neutral"
    DISLIKED = "disliked"
    BOOKMARK = "bookmark"
    ARCHIVE = "archive"
    CLICK = "click"

    @property
    def sentiment(self) -> Optional[Sentiment]:
        try:
            return Sentiment(self.value)
        except ValueError:
            return None


class RunStatus(Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class User:
    """An account that owns sources, interests and digests."""
    name: str
    id: Optional[int] = None
    is_active: bool = True
    created_at: int = 0


@dataclass
class Source:
    """A feed or site a user follows."""
    user_id: int
    name: str
    url: str
    id: Optional[int] = None
    enabled: bool = True
    created_at: int = 0


@dataclass
class Article:
    """A content item. Ingested once, shared across users."""
    source_id: int
    external_id: str
    title: str
    url: str
    id: Optional[int] = None
    content: Optional[str] = None
    published_at: Optional[int] = None
    discovered_at: int = 0


@dataclass
class Interest:
    """A positive topical preference."""
    user_id: int
    category: str
    id: Optional[int] = None
    description: Optional[str] = None
    expanded_description: Optional[str] = None
    weight: float = 1.0
    is_active: bool = True
    created_at: int = 0


@dataclass
class Exclusion:
    """A negative topical filter. Only ever used to veto."""
    user_id: int
    category: str
    id: Optional[int] = None
    description: Optional[str] = None
    expanded_description: Optional[str] = None
    is_active: bool = True
    created_at: int = 0


@dataclass
class Embedding:
    ref_type: RefType
    ref_id: int
    text: str
    vector: List[float]
    model: str
    id: Optional[int] = None
    created_at: int = 0


@dataclass
class UserArticle:
    """Per-(user, article) relevance state."""
    user_id: int
    article_id: int
    id: Optional[int] = None
    relevance_score: Optional[float] = None
    relevance_reason: Optional[str] = None
    is_serendipity: bool = False
    embedding_score: Optional[float] = None
    digest_id: Optional[int] = None
    digest_tier: Optional[DigestTier] = None
    sentiment: Optional[Sentiment] = None
    sentiment_at: Optional[int] = None
    is_bookmarked: bool = False
    is_archived: bool = False
    is_clicked: bool = False
    scored_at: Optional[int] = None


@dataclass
class SourceTrust:
    user_id: int
    source_id: int
    trust_factor: float
    sample_size: int
    computed_at: int = 0


@dataclass
class SourceFeedbackStats:
    """Windowed sentiment counts for one source."""
    source_id: int
    liked: int = 0
    neutral: int = 0
    disliked: int = 0

    @property
    def total(self) -> int:
        return self.liked + self.neutral + self.disliked


@dataclass
class Digest:
    """Immutable snapshot of the articles delivered together."""
    user_id: int
    provider: str
    generated_at: int
    article_count: int
    id: Optional[int] = None


@dataclass
class DigestArticle:
    """An article as it appears inside a digest."""
    article: Article
    user_article: UserArticle
    source_name: str = ""


@dataclass
class DigestStats:
    total: int = 0
    archived: int = 0
    liked: int = 0
    neutral: int = 0
    disliked: int = 0
    bookmarked: int = 0

    @property
    def remaining(self) -> int:
        return self.total - self.archived


@dataclass
class LearnedPreference:
    user_id: int
    preference: str
    confidence: float
    derived_from_count: int
    id: Optional[int] = None
    created_at: int = 0


@dataclass
class FeedbackEvent:
    user_id: int
    article_id: int
    action: FeedbackAction
    id: Optional[int] = None
    created_at: int = 0


@dataclass
class FeedbackContext:
    """A feedback event joined with the article it was about."""
    action: FeedbackAction
    title: str
    source_name: str
    relevance_reason: Optional[str]
    created_at: int


@dataclass
class ScoringResult:
    article_id: int
    relevance_score: float
    relevance_reason: str
    is_serendipity: bool = False
    degraded: bool = False


@dataclass
class LimitRejection:
    """Returned when a soft per-user limit would be exceeded."""
    kind: str
    limit: int
    current: int

    @property
    def message(self) -> str:
        return f"Maximum of {self.limit} {self.kind} entries reached ({self.current} active)"


@dataclass
class RunError:
    stage: str
    message: str
    affected_count: int = 0


@dataclass
class RunResult:
    """Outcome of one relevance run for one user."""
    user_id: int
    status: RunStatus
    trigger: str = "manual"
    articles_considered: int = 0
    prefiltered: int = 0
    excluded: int = 0
    deferred: int = 0
    scored: int = 0
    fallback: int = 0
    batches_total: int = 0
    batches_completed: int = 0
    trust_sources_updated: int = 0
    learning_ran: bool = False
    digest_id: Optional[int] = None
    duration_seconds: float = 0.0
    errors: List[RunError] = field(default_factory=list)

    def summary(self) -> dict:
        return {
            "articles_considered": self.articles_considered,
            "prefiltered": self.prefiltered,
            "excluded": self.excluded,
            "deferred": self.deferred,
            "scored": self.scored,
            "fallback": self.fallback,
            "batches_total": self.batches_total,
            "batches_completed": self.batches_completed,
            "trust_sources_updated": self.trust_sources_updated,
            "learning_ran": self.learning_ran,
            "digest_id": self.digest_id,
        }


@dataclass
class RunLog:
    user_id: int
    trigger: str
    status: RunStatus
    started_at: int
    id: Optional[int] = None
    finished_at: Optional[int] = None
    duration_ms: Optional[int] = None
    summary: dict = field(default_factory=dict)
    error: Optional[str] = None
