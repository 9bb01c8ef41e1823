"""
Digest assembly and reset.

A digest is created from the scored, unarchived articles that are not yet
in any digest. Creation and assignment happen in one transaction, and an
article belongs to at most one digest.
"""

import time
from typing import Dict, List, Optional

from relevance_engine import database
from relevance_engine.config import EngineConfig
from relevance_engine.models import Digest, DigestArticle, DigestStats, DigestTier, UserArticle
from util.logging_util import setup_logger

logger = setup_logger(__name__)


def classify_tier(candidate: UserArticle, config: EngineConfig) -> Optional[DigestTier]:
    """Tier for a scored article, or None if it should stay unassigned."""
    if candidate.is_serendipity:
        return DigestTier.SERENDIPITY
    if candidate.relevance_score is None:
        return None
    if candidate.relevance_score >= config.min_relevance_score:
        return DigestTier.RECOMMENDED
    if candidate.relevance_score >= config.bonus_floor:
        return DigestTier.BONUS
    return None


def assemble_digest(
    user_id: int,
    provider_label: str,
    config: EngineConfig,
    now: Optional[int] = None,
) -> Optional[Digest]:
    """Bucket unassigned candidates into tiers and snapshot them as a digest.

    Returns None without writing anything when no candidate reaches a tier.
    Candidates below the bonus floor stay unassigned for a later run.
    """
    candidates = database.get_digest_candidates(user_id)
    if not candidates:
        logger.info(f"No digest candidates for user {user_id}")
        return None

    assignments = []
    for candidate in candidates:
        tier = classify_tier(candidate, config)
        if tier is not None:
            assignments.append((candidate.id, tier))

    if not assignments:
        logger.info(f"None of {len(candidates)} candidates for user {user_id} reached a tier")
        return None

    digest = database.create_digest_with_assignments(
        user_id,
        provider_label,
        assignments,
        generated_at=now if now is not None else int(time.time()),
    )

    counts: Dict[DigestTier, int] = {}
    for _, tier in assignments:
        counts[tier] = counts.get(tier, 0) + 1
    tier_text = ", ".join(f"{counts.get(t, 0)} {t.value}" for t in DigestTier)
    logger.info(
        f"Created digest {digest.id} for user {user_id} with {digest.article_count} articles "
        f"({tier_text}); {len(candidates) - len(assignments)} left unassigned"
    )
    return digest


def clear_digest(digest_id: int) -> bool:
    """Reset a digest so its unarchived articles are re-scored on the next run.

    Returns False if the digest does not exist.
    """
    released = database.clear_digest(digest_id)
    if released is None:
        logger.warning(f"Digest {digest_id} not found, nothing to clear")
        return False
    logger.info(f"Cleared digest {digest_id}, released {released} articles")
    return True


def clear_recent_digests(user_id: int, count: int = 1) -> int:
    """Clear a user's ``count`` most recent digests. Returns how many were cleared."""
    cleared = 0
    for digest in database.get_recent_digests(user_id, limit=count):
        if clear_digest(digest.id):
            cleared += 1
    return cleared


def get_digest_with_articles(digest_id: int, include_archived: bool = False) -> Optional[Dict]:
    """A digest with its articles grouped by tier, for display."""
    digest = database.get_digest(digest_id)
    if digest is None:
        return None

    articles = database.get_digest_articles(digest_id, include_archived=include_archived)
    by_tier: Dict[DigestTier, List[DigestArticle]] = {tier: [] for tier in DigestTier}
    for item in articles:
        if item.user_article.digest_tier is not None:
            by_tier[item.user_article.digest_tier].append(item)

    return {"digest": digest, "tiers": by_tier, "stats": database.get_digest_stats(digest_id)}


def format_digest_summary(digest: Digest, stats: DigestStats, tier_counts: Dict[DigestTier, int]) -> str:
    """One-line human readable summary of a digest."""
    tiers = ", ".join(f"{tier.value}: {tier_counts.get(tier, 0)}" for tier in DigestTier)
    return (
        f"Digest {digest.id} ({digest.provider}) - {digest.article_count} articles [{tiers}] - "
        f"{stats.remaining} remaining, {stats.liked} liked, {stats.disliked} disliked"
    )
