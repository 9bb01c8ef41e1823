"""End-to-end tests for relevance runs."""

import itertools
import json
import re
from unittest.mock import patch

import pytest

from relevance_engine import database
from relevance_engine.config import EngineConfig
from relevance_engine.errors import PersistenceError, ProviderError
from relevance_engine.models import (
    DigestTier,
    Exclusion,
    FeedbackAction,
    Interest,
    RunResult,
    RunStatus,
)
from relevance_engine.pipeline import run_relevance, run_relevance_for_all_users

from fakes import (
    CRYPTO,
    DAY,
    ML,
    NOW,
    FakeEmbeddingProvider,
    FakeScoringProvider,
    make_article,
    no_sleep,
    scoring_response,
    unit_with_similarity,
)

ARTICLE_ID_RE = re.compile(r"^ID: (\d+)$", re.MULTILINE)


def score_everything(score=0.8):
    def respond(prompt):
        if "Analyze this user's content feedback" in prompt:
            return json.dumps([
                {"preference_text": "Enjoys applied ML case studies", "confidence": 0.7, "derived_from_count": 20}
            ])
        return scoring_response([
            {
                "article_id": int(article_id),
                "relevance_score": score,
                "relevance_reason": "Matches: Machine Learning",
                "is_serendipity": False,
            }
            for article_id in ARTICLE_ID_RE.findall(prompt)
        ])
    return respond


@pytest.fixture
def embedder():
    return FakeEmbeddingProvider({
        "machine learning": ML,
        "cryptocurrency": CRYPTO,
        "token launch": unit_with_similarity(0.86, axis=1, other_axis=0),
        "quantum": unit_with_similarity(0.55),
    })


@pytest.fixture
def profile(user_id):
    interest_id = database.insert_interest(Interest(user_id=user_id, category="Machine Learning", weight=1.0))
    return {"interest_id": interest_id}


@pytest.fixture
def crypto_exclusion(user_id):
    return database.insert_exclusion(Exclusion(user_id=user_id, category="Cryptocurrency"))


def _run(user_id, config, scorer, embedder, **kwargs):
    kwargs.setdefault("sleep", no_sleep)
    kwargs.setdefault("now", NOW)
    return run_relevance(user_id, "gemini", config, scorer, embedder, **kwargs)


class TestRunRelevance:
    """Tests for a full scoring and assembly pass."""

    def test_end_to_end_with_exclusion(self, user_id, source_id, profile, crypto_exclusion, embedder, config):
        ml_id = make_article(source_id, "Machine learning breakthrough in protein folding")
        token_id = make_article(source_id, "New token launch shakes the markets")
        scorer = FakeScoringProvider(respond=score_everything(0.8))

        result = _run(user_id, config, scorer, embedder)

        assert result.status == RunStatus.SUCCESS
        assert result.excluded == 1
        assert result.scored == 1
        assert result.digest_id is not None

        excluded_row = database.get_user_article(user_id, token_id)
        assert excluded_row.relevance_score is None
        assert excluded_row.relevance_reason == "Excluded: Cryptocurrency"
        assert excluded_row.digest_id is None
        assert all("token launch" not in prompt for prompt in scorer.prompts)

        ml_row = database.get_user_article(user_id, ml_id)
        assert ml_row.digest_id == result.digest_id
        assert ml_row.digest_tier == DigestTier.RECOMMENDED
        assert ml_row.relevance_score == pytest.approx(0.8)

        logs = database.get_recent_run_logs(user_id)
        assert logs[0].status == RunStatus.SUCCESS
        assert logs[0].summary["scored"] == 1

    def test_excluded_article_never_reaches_a_digest(self, user_id, source_id, profile, crypto_exclusion,
                                                     embedder, config):
        token_id = make_article(source_id, "New token launch shakes the markets")
        scorer = FakeScoringProvider(respond=score_everything(0.9))

        _run(user_id, config, scorer, embedder)
        _run(user_id, config, scorer, embedder)

        assert database.get_user_article(user_id, token_id).digest_id is None
        assert database.get_recent_digests(user_id) == []

    def test_removed_exclusion_lets_article_through(self, user_id, source_id, profile, crypto_exclusion,
                                                    embedder, config):
        from relevance_engine.profile import remove_exclusion

        token_id = make_article(source_id, "New token launch shakes the markets")
        scorer = FakeScoringProvider(respond=score_everything(0.9))
        _run(user_id, config, scorer, embedder)

        remove_exclusion(crypto_exclusion)
        result = _run(user_id, config, scorer, embedder)

        assert result.excluded == 0
        assert database.get_user_article(user_id, token_id).digest_id == result.digest_id

    def test_trust_boosted_fallback(self, user_id, source_id, profile, embedder, config):
        """A 0.55 fallback score from a 1.12-trust source lands as 0.616 recommended."""
        for i, action in enumerate([FeedbackAction.LIKED] * 4 + [FeedbackAction.DISLIKED]):
            rated = make_article(source_id, f"Older rated article {i}", discovered_at=NOW - 30 * DAY)
            database.record_feedback(user_id, rated, action, now=NOW - DAY)
        new_id = make_article(source_id, "Quantum error correction milestone")
        scorer = FakeScoringProvider(error=ProviderError("503 Service Unavailable"))

        result = _run(user_id, config, scorer, embedder)

        assert result.status == RunStatus.SUCCESS
        assert result.trust_sources_updated == 1
        assert result.prefiltered == 5
        assert result.fallback == 1
        assert result.errors[0].stage == "scoring"
        row = database.get_user_article(user_id, new_id)
        assert row.relevance_score == pytest.approx(0.616)
        assert row.relevance_reason == "Embedding fallback"
        assert row.embedding_score == pytest.approx(0.55)
        assert row.digest_tier == DigestTier.RECOMMENDED

    def test_prefiltered_articles_settled_after_one_run(self, user_id, source_id, profile, embedder, config):
        stale_id = make_article(source_id, "Machine learning retrospective", discovered_at=NOW - 30 * DAY)
        scorer = FakeScoringProvider(respond=score_everything(0.8))

        first = _run(user_id, config, scorer, embedder)
        second = _run(user_id, config, scorer, embedder)

        assert first.prefiltered == 1
        assert second.articles_considered == 0
        assert second.prefiltered == 0
        assert database.get_user_article(user_id, stale_id).relevance_reason == "Prefiltered: stale"

    def test_rerun_without_new_articles_creates_no_digest(self, user_id, source_id, profile, embedder, config):
        make_article(source_id, "Machine learning breakthrough in protein folding")
        scorer = FakeScoringProvider(respond=score_everything(0.8))

        first = _run(user_id, config, scorer, embedder)
        second = _run(user_id, config, scorer, embedder)

        assert first.digest_id is not None
        assert second.status == RunStatus.SUCCESS
        assert second.scored == 0
        assert second.digest_id is None
        assert len(database.get_recent_digests(user_id)) == 1

    def test_fallback_rows_rescored_next_run(self, user_id, source_id, profile, embedder, config):
        article_id = make_article(source_id, "Sourdough starter troubleshooting")
        _run(user_id, config, FakeScoringProvider(error=ProviderError("timeout")), embedder)
        first = database.get_user_article(user_id, article_id)
        assert first.relevance_reason == "Embedding fallback"
        assert first.digest_id is None

        result = _run(user_id, config, FakeScoringProvider(respond=score_everything(0.7)), embedder)

        assert result.scored == 1
        row = database.get_user_article(user_id, article_id)
        assert row.relevance_reason == "Matches: Machine Learning"
        assert row.digest_id == result.digest_id

    def test_articles_without_embeddings_deferred_when_user_has_exclusions(
        self, user_id, source_id, profile, crypto_exclusion, config
    ):
        make_article(source_id, "Machine learning breakthrough in protein folding")
        make_article(source_id, "New token launch shakes the markets")
        scorer = FakeScoringProvider(respond=score_everything(0.8))

        result = _run(user_id, config, scorer, FakeEmbeddingProvider(fail=True))

        assert result.status == RunStatus.SUCCESS
        assert result.deferred == 2
        assert result.scored == 0
        assert scorer.prompts == []
        assert len(database.get_unscored_articles_for_user(user_id)) == 2

    def test_learning_runs_when_due(self, user_id, source_id, profile, embedder, config):
        rated = [make_article(source_id, f"Older rated article {i}", discovered_at=NOW - 30 * DAY)
                 for i in range(5)]
        for i in range(50):
            database.record_feedback(user_id, rated[i % 5], FeedbackAction.LIKED, now=NOW - DAY + i)
        make_article(source_id, "Machine learning breakthrough in protein folding")
        scorer = FakeScoringProvider(respond=score_everything(0.8))

        result = _run(user_id, config, scorer, embedder)

        assert result.learning_ran
        assert "Enjoys applied ML case studies" in scorer.prompts[-1]


class TestRunSerialization:
    """Tests for the per-user run lock."""

    def test_concurrent_run_skipped(self, user_id, source_id, profile, embedder, config):
        make_article(source_id, "Machine learning breakthrough in protein folding")
        database.acquire_run_lock(user_id, "another-worker", config.lock_stale_seconds, now=NOW)
        scorer = FakeScoringProvider(respond=score_everything())

        result = _run(user_id, config, scorer, embedder)

        assert result.status == RunStatus.SKIPPED
        assert scorer.prompts == []
        assert database.get_user_articles(user_id) == []

    def test_stale_lock_taken_over(self, user_id, source_id, profile, embedder, config):
        make_article(source_id, "Machine learning breakthrough in protein folding")
        database.acquire_run_lock(user_id, "crashed-worker", config.lock_stale_seconds,
                                  now=NOW - config.lock_stale_seconds - 1)

        result = _run(user_id, config, FakeScoringProvider(respond=score_everything()), embedder)

        assert result.status == RunStatus.SUCCESS

    def test_lock_released_after_run(self, user_id, profile, embedder, config):
        _run(user_id, config, FakeScoringProvider(respond=score_everything()), embedder)

        assert database.acquire_run_lock(user_id, "next", config.lock_stale_seconds, now=NOW)


class TestRunBudgetAndFailures:
    """Tests for partial and failed runs."""

    def test_budget_exhaustion_is_partial(self, user_id, source_id, profile, embedder):
        config = EngineConfig(scoring_batch_size=1, run_budget_seconds=10, retry_base_delay_seconds=0.0,
                              expand_profile_entries=False)
        for i in range(3):
            make_article(source_id, f"Machine learning article number {i}")
        ticks = itertools.count(0, 6)

        result = _run(user_id, config, FakeScoringProvider(respond=score_everything(0.8)), embedder,
                      clock=lambda: next(ticks))

        assert result.status == RunStatus.PARTIAL
        assert result.batches_total == 3
        assert result.batches_completed == 1
        assert result.scored == 1
        assert result.errors[-1].affected_count == 2
        assert result.digest_id is not None
        assert database.get_digest(result.digest_id).article_count == 1
        assert len(database.get_unscored_articles_for_user(user_id)) == 2

    def test_persistence_failure_fails_run_and_keeps_committed_work(
        self, user_id, source_id, profile, embedder, config
    ):
        article_id = make_article(source_id, "Machine learning breakthrough in protein folding")

        with patch("relevance_engine.pipeline.assemble_digest", side_effect=PersistenceError("database is locked")):
            result = _run(user_id, config, FakeScoringProvider(respond=score_everything()), embedder)

        assert result.status == RunStatus.FAILED
        assert result.errors[-1].stage == "digest"
        assert result.errors[-1].affected_count == 1
        assert database.get_user_article(user_id, article_id).relevance_score == pytest.approx(0.8)
        assert database.get_recent_run_logs(user_id)[0].status == RunStatus.FAILED
        assert database.acquire_run_lock(user_id, "next", config.lock_stale_seconds, now=NOW)


class TestRunAllUsers:
    """Tests for running every active user."""

    def test_one_failure_does_not_stop_others(self, temp_db, config, embedder):
        first = database.create_user("first")
        second = database.create_user("second")
        database.create_user("inactive", is_active=False)
        ok = RunResult(user_id=second, status=RunStatus.SUCCESS)

        with patch("relevance_engine.pipeline.run_relevance",
                   side_effect=[PersistenceError("disk full"), ok]) as mock_run:
            results = run_relevance_for_all_users("gemini", config, FakeScoringProvider(), embedder)

        assert mock_run.call_count == 2
        assert results[first].status == RunStatus.FAILED
        assert results[first].errors[0].message == "disk full"
        assert results[second] is ok
