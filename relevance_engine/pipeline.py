"""
Per-user relevance run: trust, prefilter, embeddings, exclusion veto,
scoring and digest assembly.

Runs for one user are serialized through a lock row. Runs for different
users share nothing but the database.
"""

import time
import uuid
from typing import Callable, Dict, Optional

from relevance_engine import database
from relevance_engine.config import EngineConfig
from relevance_engine.digest import assemble_digest
from relevance_engine.embeddings import ensure_article_embeddings, ensure_profile_embeddings
from relevance_engine.errors import PersistenceError, RelevanceEngineError
from relevance_engine.exclusion_filter import filter_excluded
from relevance_engine.learner import learn_preferences, should_run_learning
from relevance_engine.models import RunError, RunResult, RunStatus
from relevance_engine.prefilter import prefilter_articles
from relevance_engine.providers import EmbeddingProvider, ScoringProvider
from relevance_engine.scorer import (
    ScoringContext,
    compute_embedding_scores,
    score_articles,
    summarize_recent_feedback,
)
from relevance_engine.source_trust import recompute_source_trust
from util.logging_util import setup_logger

logger = setup_logger(__name__)


def run_relevance(
    user_id: int,
    provider_label: str,
    config: EngineConfig,
    scoring_provider: ScoringProvider,
    embedding_provider: EmbeddingProvider,
    trigger: str = "manual",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
    now: Optional[int] = None,
) -> RunResult:
    """Score a user's new articles and assemble a digest from them.

    Safe to re-invoke: a concurrent run for the same user is skipped, and
    work committed before a failure or a budget stop is kept.
    """
    started = clock()
    deadline = started + config.run_budget_seconds
    now = now if now is not None else int(time.time())
    owner = uuid.uuid4().hex
    result = RunResult(user_id=user_id, status=RunStatus.SUCCESS, trigger=trigger)

    if not database.acquire_run_lock(user_id, owner, config.lock_stale_seconds, now=now):
        logger.warning(f"Run for user {user_id} skipped: another run holds the lock")
        result.status = RunStatus.SKIPPED
        return result

    run_log_id = None
    stage = "setup"
    affected = 0
    try:
        run_log_id = database.start_run_log(user_id, trigger, started_at=now)

        stage = "trust"
        result.trust_sources_updated = recompute_source_trust(user_id, config, now=now)

        stage = "load"
        articles = database.get_unscored_articles_for_user(user_id)
        result.articles_considered = affected = len(articles)
        prefiltered = prefilter_articles(articles, config, now)
        result.prefiltered = len(prefiltered.removed)
        database.mark_articles_prefiltered(user_id, {a.id: reason for a, reason in prefiltered.removed})
        candidates = prefiltered.kept
        affected = len(candidates)

        stage = "embedding"
        interests = database.get_active_interests(user_id)
        exclusions = database.get_active_exclusions(user_id)
        interest_vectors, exclusion_vectors = ensure_profile_embeddings(
            interests, exclusions, embedding_provider, config, sleep=sleep
        )
        article_vectors = ensure_article_embeddings(candidates, embedding_provider, config, sleep=sleep)

        if exclusions:
            if len(exclusion_vectors) < len(exclusions):
                logger.warning(
                    f"User {user_id}: {len(exclusions) - len(exclusion_vectors)} exclusions "
                    f"have no embedding yet and cannot veto this run"
                )
            unembedded = [a for a in candidates if a.id not in article_vectors]
            if unembedded:
                result.deferred = len(unembedded)
                logger.warning(
                    f"Deferring {len(unembedded)} articles for user {user_id}: "
                    f"no embedding to check against exclusions"
                )
                candidates = [a for a in candidates if a.id in article_vectors]

        stage = "exclusion"
        exclusion_outcome = filter_excluded(candidates, article_vectors, exclusions, exclusion_vectors, config)
        embedding_scores = compute_embedding_scores(
            candidates,
            article_vectors,
            interests,
            interest_vectors,
            weighted=config.weight_embedding_scores,
        )
        database.mark_articles_excluded(user_id, exclusion_outcome.excluded, embedding_scores)
        result.excluded = len(exclusion_outcome.excluded)

        stage = "learning"
        if should_run_learning(user_id, config):
            result.learning_ran = learn_preferences(user_id, config, scoring_provider, sleep=sleep)

        stage = "scoring"
        to_score = exclusion_outcome.allowed
        affected = len(to_score)
        context = ScoringContext(
            interests=interests,
            preferences=database.get_learned_preferences(user_id),
            recent_feedback=summarize_recent_feedback(
                database.get_recent_feedback_context(user_id, config.recent_feedback_limit)
            ),
            embedding_scores=embedding_scores,
            trust_factors=database.get_trust_factors(user_id),
        )
        outcome = score_articles(
            user_id,
            to_score,
            context,
            scoring_provider,
            config,
            deadline=deadline,
            clock=clock,
            sleep=sleep,
            now=now,
        )
        result.scored = len(outcome.results)
        result.fallback = outcome.fallback_count
        result.batches_total = outcome.batches_total
        result.batches_completed = outcome.batches_completed
        if outcome.degraded_batches:
            result.errors.append(
                RunError(
                    "scoring",
                    f"scoring provider failed for {outcome.degraded_batches} batches, embedding scores used",
                    result.fallback,
                )
            )
        elif outcome.failures:
            result.errors.append(
                RunError("scoring", "malformed or missing model records, embedding scores used", len(outcome.failures))
            )
        if outcome.timed_out:
            result.status = RunStatus.PARTIAL
            result.errors.append(
                RunError(
                    "scoring",
                    f"run budget of {config.run_budget_seconds}s exhausted",
                    len(to_score) - result.scored,
                )
            )

        stage = "digest"
        if outcome.results:
            affected = result.scored
            digest = assemble_digest(user_id, provider_label, config, now=now)
            result.digest_id = digest.id if digest is not None else None

    except PersistenceError as e:
        logger.error(f"Run for user {user_id} failed during {stage}: {e}")
        result.status = RunStatus.FAILED
        result.errors.append(RunError(stage, str(e), affected))

    finally:
        result.duration_seconds = clock() - started
        try:
            if run_log_id is not None:
                database.finish_run_log(
                    run_log_id,
                    result.status,
                    int(result.duration_seconds * 1000),
                    result.summary(),
                    error="; ".join(f"{err.stage}: {err.message}" for err in result.errors) or None,
                )
        finally:
            database.release_run_lock(user_id, owner)

    logger.info(
        f"Run for user {user_id} finished {result.status.value} in {result.duration_seconds:.2f}s: "
        f"{result.scored} scored ({result.fallback} fallback), {result.excluded} excluded, "
        f"{result.prefiltered} prefiltered, digest {result.digest_id}"
    )
    return result


def run_relevance_for_all_users(
    provider_label: str,
    config: EngineConfig,
    scoring_provider: ScoringProvider,
    embedding_provider: EmbeddingProvider,
    trigger: str = "scheduled",
    **kwargs,
) -> Dict[int, RunResult]:
    """Run every active user independently. One user's failure never stops the others."""
    results = {}
    for user in database.get_active_users():
        try:
            results[user.id] = run_relevance(
                user.id,
                provider_label,
                config,
                scoring_provider,
                embedding_provider,
                trigger=trigger,
                **kwargs,
            )
        except RelevanceEngineError as e:
            logger.error(f"Run for user {user.id} aborted: {e}")
            results[user.id] = RunResult(
                user_id=user.id,
                status=RunStatus.FAILED,
                trigger=trigger,
                errors=[RunError("run", str(e))],
            )
    return results


def run_preference_learning(
    user_id: int,
    config: EngineConfig,
    scoring_provider: ScoringProvider,
    force: bool = False,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Entry point for learning outside a relevance run.

    Without ``force`` it follows the scheduled gate, including the
    re-learn interval.
    """
    if not force and not should_run_learning(user_id, config):
        logger.info(f"Preference learning for user {user_id} not due")
        return False
    return learn_preferences(user_id, config, scoring_provider, force=force, sleep=sleep)
