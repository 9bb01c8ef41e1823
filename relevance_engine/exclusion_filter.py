"""
Exclusion veto and per-user soft limits.

An exclusion is a hard veto: an article that is too close to any active
exclusion is never sent to the scoring model and never tiered.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from relevance_engine.config import EngineConfig
from relevance_engine.embeddings import cosine_similarity
from relevance_engine.models import Article, Exclusion, LimitRejection
from util.logging_util import setup_logger

logger = setup_logger(__name__)


def max_exclusion_similarity(
    article_vector: Sequence[float],
    exclusion_vectors: Dict[int, Sequence[float]],
) -> Tuple[Optional[int], float]:
    """The closest exclusion to an article, as (exclusion_id, similarity)."""
    best_id = None
    best = -1.0
    for exclusion_id, vector in exclusion_vectors.items():
        similarity = cosine_similarity(article_vector, vector)
        if similarity > best:
            best_id, best = exclusion_id, similarity
    return best_id, best


def is_excluded(
    article_vector: Sequence[float],
    exclusion_vectors: Dict[int, Sequence[float]],
    threshold: float,
) -> bool:
    """True if any exclusion's similarity to the article exceeds the threshold."""
    _, similarity = max_exclusion_similarity(article_vector, exclusion_vectors)
    return similarity > threshold


@dataclass
class ExclusionOutcome:
    allowed: List[Article] = field(default_factory=list)
    # article id -> category of the exclusion that vetoed it
    excluded: Dict[int, str] = field(default_factory=dict)


def filter_excluded(
    articles: List[Article],
    article_vectors: Dict[int, Sequence[float]],
    exclusions: List[Exclusion],
    exclusion_vectors: Dict[int, Sequence[float]],
    config: EngineConfig,
) -> ExclusionOutcome:
    """Split articles into those allowed through and those vetoed.

    Articles without a vector pass through; callers decide whether to defer
    them before calling this.
    """
    outcome = ExclusionOutcome()
    if not exclusion_vectors:
        outcome.allowed = list(articles)
        return outcome

    categories = {e.id: e.category for e in exclusions}
    for article in articles:
        vector = article_vectors.get(article.id)
        if vector is None:
            outcome.allowed.append(article)
            continue

        exclusion_id, similarity = max_exclusion_similarity(vector, exclusion_vectors)
        if similarity > config.exclusion_veto_threshold:
            category = categories.get(exclusion_id, str(exclusion_id))
            outcome.excluded[article.id] = category
            logger.info(
                f"Excluded article {article.id} '{article.title}' "
                f"(matches exclusion '{category}' at {similarity:.2f})"
            )
        else:
            outcome.allowed.append(article)

    return outcome


def check_exclusion_limit(current_count: int, config: EngineConfig) -> Optional[LimitRejection]:
    """A rejection if one more exclusion would exceed the per-user limit."""
    if current_count >= config.max_exclusions_per_user:
        return LimitRejection(kind="exclusion", limit=config.max_exclusions_per_user, current=current_count)
    return None


def check_interest_limit(current_count: int, config: EngineConfig) -> Optional[LimitRejection]:
    """A rejection if one more interest would exceed the per-user limit."""
    if current_count >= config.max_interests_per_user:
        return LimitRejection(kind="interest", limit=config.max_interests_per_user, current=current_count)
    return None
