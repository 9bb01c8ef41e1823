"""
Per-source trust factors derived from a user's sentiment feedback.
"""

import time
from typing import Optional

from relevance_engine import database
from relevance_engine.config import EngineConfig
from relevance_engine.constants import SECONDS_PER_DAY
from relevance_engine.models import SourceFeedbackStats
from util.logging_util import setup_logger

logger = setup_logger(__name__)

NEUTRAL_TRUST = 1.0


def compute_trust_factor(
    stats: SourceFeedbackStats,
    trust_min: float,
    trust_max: float,
    min_samples: int,
) -> float:
    """Map net sentiment linearly onto [trust_min, trust_max].

    Sources with fewer than ``min_samples`` feedback events stay neutral.
    The factor is rounded to three decimals before clamping, and that rounded
    value is what gets stored. Scores scaled by it keep full precision.
    """
    if stats.total < min_samples:
        return NEUTRAL_TRUST

    sentiment = (stats.liked - stats.disliked) / stats.total
    midpoint = (trust_min + trust_max) / 2
    half_range = (trust_max - trust_min) / 2
    factor = round(midpoint + sentiment * half_range, 3)
    return max(trust_min, min(trust_max, factor))


def recompute_source_trust(user_id: int, config: EngineConfig, now: Optional[int] = None) -> int:
    """Recompute and store the trust factor of every enabled source of a user.

    Returns the number of sources whose factor was computed from enough
    feedback. Cold-start sources are still written, at the neutral factor.
    """
    now = now if now is not None else int(time.time())
    since = now - config.trust_window_days * SECONDS_PER_DAY
    stats_by_source = database.get_source_feedback_stats(user_id, since)

    updated = 0
    for source in database.get_sources_for_user(user_id, enabled_only=True):
        stats = stats_by_source.get(source.id, SourceFeedbackStats(source_id=source.id))
        factor = compute_trust_factor(stats, config.trust_min, config.trust_max, config.trust_min_samples)
        database.upsert_source_trust(user_id, source.id, factor, stats.total, now=now)
        if stats.total >= config.trust_min_samples:
            updated += 1
            logger.debug(
                f"Source {source.id} ({source.name}): {stats.liked}+/{stats.neutral}="
                f"/{stats.disliked}- -> trust {factor:.2f}"
            )

    logger.info(f"Recomputed trust for user {user_id}: {updated} sources with enough feedback")
    return updated
