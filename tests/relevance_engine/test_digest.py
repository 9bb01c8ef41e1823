"""Tests for digest assembly and reset."""

import pytest
from hypothesis import given, strategies as st

from relevance_engine import database
from relevance_engine.config import EngineConfig
from relevance_engine.digest import (
    assemble_digest,
    classify_tier,
    clear_digest,
    clear_recent_digests,
    get_digest_with_articles,
)
from relevance_engine.models import DigestTier, FeedbackAction, ScoringResult, UserArticle

from fakes import NOW, make_article


def _score(user_id, article_id, score, reason="Matches: Machine Learning", serendipity=False):
    database.save_scoring_results(
        user_id,
        [ScoringResult(article_id, score, reason, serendipity)],
        {article_id: score},
        now=NOW,
    )


@pytest.fixture
def scored(user_id, source_id):
    """Four scored articles: recommended, bonus, too low, and a low-scoring serendipity pick."""
    ids = {
        "recommended": make_article(source_id, "Great machine learning paper"),
        "bonus": make_article(source_id, "Somewhat related ML news"),
        "low": make_article(source_id, "Unrelated gardening tips"),
        "serendipity": make_article(source_id, "Surprising history of maps"),
    }
    _score(user_id, ids["recommended"], 0.616)
    _score(user_id, ids["bonus"], 0.45)
    _score(user_id, ids["low"], 0.1)
    _score(user_id, ids["serendipity"], 0.2, reason="Serendipity", serendipity=True)
    return ids


class TestClassifyTier:
    """Tests for the tiering policy."""

    def _candidate(self, score, serendipity=False):
        return UserArticle(user_id=1, article_id=1, relevance_score=score, is_serendipity=serendipity)

    def test_tiers(self):
        config = EngineConfig()
        assert classify_tier(self._candidate(0.616), config) == DigestTier.RECOMMENDED
        assert classify_tier(self._candidate(0.6), config) == DigestTier.RECOMMENDED
        assert classify_tier(self._candidate(0.59), config) == DigestTier.BONUS
        assert classify_tier(self._candidate(0.3), config) == DigestTier.BONUS
        assert classify_tier(self._candidate(0.29), config) is None

    def test_serendipity_regardless_of_score(self):
        config = EngineConfig()
        assert classify_tier(self._candidate(0.05, True), config) == DigestTier.SERENDIPITY
        assert classify_tier(self._candidate(0.95, True), config) == DigestTier.SERENDIPITY

    @given(score=st.floats(min_value=0.0, max_value=1.0), serendipity=st.booleans())
    def test_tier_consistent_with_thresholds(self, score, serendipity):
        config = EngineConfig()
        tier = classify_tier(self._candidate(score, serendipity), config)
        if serendipity:
            assert tier == DigestTier.SERENDIPITY
        elif score >= config.min_relevance_score:
            assert tier == DigestTier.RECOMMENDED
        elif score >= config.bonus_floor:
            assert tier == DigestTier.BONUS
        else:
            assert tier is None


class TestAssembleDigest:
    """Tests for creating digests."""

    def test_assigns_tiers(self, user_id, scored, config):
        digest = assemble_digest(user_id, "gemini", config, now=NOW)

        assert digest.article_count == 3
        assert digest.provider == "gemini"
        rows = {ua.article_id: ua for ua in database.get_user_articles(user_id)}
        assert rows[scored["recommended"]].digest_tier == DigestTier.RECOMMENDED
        assert rows[scored["bonus"]].digest_tier == DigestTier.BONUS
        assert rows[scored["serendipity"]].digest_tier == DigestTier.SERENDIPITY
        assert rows[scored["low"]].digest_id is None
        assert rows[scored["low"]].relevance_score == pytest.approx(0.1)

    def test_tier_counts_sum_to_article_count(self, user_id, scored, config):
        digest = assemble_digest(user_id, "gemini", config, now=NOW)

        counts = database.get_digest_tier_counts(digest.id)
        assert sum(counts.values()) == digest.article_count

    def test_second_assembly_is_a_no_op(self, user_id, scored, config):
        first = assemble_digest(user_id, "gemini", config, now=NOW)
        second = assemble_digest(user_id, "gemini", config, now=NOW)

        assert first is not None
        assert second is None
        assert len(database.get_recent_digests(user_id)) == 1

    def test_no_candidates(self, user_id, config):
        assert assemble_digest(user_id, "gemini", config) is None
        assert database.get_recent_digests(user_id) == []

    def test_only_low_scores_creates_nothing(self, user_id, source_id, config):
        _score(user_id, make_article(source_id, "Unrelated gardening tips"), 0.1)

        assert assemble_digest(user_id, "gemini", config) is None
        assert database.get_recent_digests(user_id) == []

    def test_archived_rows_are_not_candidates(self, user_id, source_id, config):
        article_id = make_article(source_id, "Great machine learning paper")
        _score(user_id, article_id, 0.9)
        database.record_feedback(user_id, article_id, FeedbackAction.LIKED, now=NOW)
        database.record_feedback(user_id, article_id, FeedbackAction.ARCHIVE, now=NOW)

        assert assemble_digest(user_id, "gemini", config) is None

    def test_article_in_only_one_digest(self, user_id, scored, source_id, config):
        first = assemble_digest(user_id, "gemini", config, now=NOW)
        _score(user_id, make_article(source_id, "Another machine learning paper"), 0.8)
        second = assemble_digest(user_id, "gemini", config, now=NOW + 60)

        assert second.article_count == 1
        first_members = {a.article.id for a in database.get_digest_articles(first.id, include_archived=True)}
        second_members = {a.article.id for a in database.get_digest_articles(second.id, include_archived=True)}
        assert first_members.isdisjoint(second_members)


class TestClearDigest:
    """Tests for resetting a digest."""

    def test_clear_resets_unarchived_and_keeps_archived(self, user_id, scored, config):
        digest = assemble_digest(user_id, "gemini", config, now=NOW)
        archived_id = scored["bonus"]
        database.record_feedback(user_id, archived_id, FeedbackAction.DISLIKED, now=NOW)
        database.record_feedback(user_id, archived_id, FeedbackAction.ARCHIVE, now=NOW)

        assert clear_digest(digest.id)

        rows = {ua.article_id: ua for ua in database.get_user_articles(user_id)}
        reset = rows[scored["recommended"]]
        assert reset.digest_id is None
        assert reset.relevance_score is None
        assert reset.relevance_reason is None
        assert reset.digest_tier is None
        assert reset.scored_at is None

        kept = rows[archived_id]
        assert kept.digest_id is None
        assert kept.relevance_score == pytest.approx(0.45)
        assert kept.relevance_reason == "Matches: Machine Learning"
        assert kept.digest_tier == DigestTier.BONUS

        assert database.get_digest(digest.id) is None

    def test_cleared_articles_become_unscored(self, user_id, scored, config):
        digest = assemble_digest(user_id, "gemini", config, now=NOW)
        clear_digest(digest.id)

        unscored = {a.id for a in database.get_unscored_articles_for_user(user_id)}
        assert scored["recommended"] in unscored
        assert scored["serendipity"] in unscored

    def test_clear_missing_digest(self, temp_db):
        assert not clear_digest(999)

    def test_clear_recent_digests(self, user_id, scored, source_id, config):
        assemble_digest(user_id, "gemini", config, now=NOW)
        _score(user_id, make_article(source_id, "Another machine learning paper"), 0.8)
        assemble_digest(user_id, "gemini", config, now=NOW + 60)

        assert clear_recent_digests(user_id, count=5) == 2
        assert database.get_recent_digests(user_id) == []


class TestDigestReadSide:
    """Tests for digest lookups and stats."""

    def test_digest_with_articles_and_stats(self, user_id, scored, config):
        digest = assemble_digest(user_id, "gemini", config, now=NOW)
        database.record_feedback(user_id, scored["recommended"], FeedbackAction.LIKED, now=NOW)
        database.record_feedback(user_id, scored["recommended"], FeedbackAction.BOOKMARK, now=NOW)
        database.record_feedback(user_id, scored["recommended"], FeedbackAction.ARCHIVE, now=NOW)

        view = get_digest_with_articles(digest.id)

        assert view["digest"].id == digest.id
        assert len(view["tiers"][DigestTier.RECOMMENDED]) == 0
        assert len(view["tiers"][DigestTier.BONUS]) == 1
        stats = view["stats"]
        assert stats.total == 3
        assert stats.archived == 1
        assert stats.remaining == 2
        assert stats.liked == 1
        assert stats.bookmarked == 1

        with_archived = get_digest_with_articles(digest.id, include_archived=True)
        assert len(with_archived["tiers"][DigestTier.RECOMMENDED]) == 1

    def test_latest_digest(self, user_id, scored, config):
        digest = assemble_digest(user_id, "gemini", config, now=NOW)
        assert database.get_latest_digest(user_id).id == digest.id
