"""Tests for the embedding store."""

import pytest
from hypothesis import given, strategies as st

from relevance_engine import database
from relevance_engine.config import EngineConfig
from relevance_engine.embeddings import (
    EmbeddingTaskRunner,
    backfill_embeddings,
    build_article_embedding_text,
    build_profile_embedding_text,
    clean_excerpt,
    cosine_similarity,
    embed_texts,
    ensure_article_embeddings,
    ensure_profile_embeddings,
    expand_description,
    prune_embeddings,
)
from relevance_engine.errors import ProviderError
from relevance_engine.models import Article, Exclusion, Interest, RefType

from fakes import CRYPTO, DAY, ML, NOW, FakeEmbeddingProvider, FakeScoringProvider, make_article, no_sleep


class TestCosineSimilarity:
    """Tests for the similarity measure."""

    def test_identical_and_orthogonal(self):
        assert cosine_similarity(ML, ML) == pytest.approx(1.0)
        assert cosine_similarity(ML, CRYPTO) == pytest.approx(0.0)

    def test_scale_invariant(self):
        assert cosine_similarity([2.0, 0.0], [5.0, 5.0]) == pytest.approx(0.7071, abs=1e-4)

    def test_degenerate_vectors(self):
        assert cosine_similarity([], ML) == 0.0
        assert cosine_similarity([0.0, 0.0, 0.0], ML) == 0.0
        assert cosine_similarity([1.0, 0.0], ML) == 0.0

    @given(
        a=st.lists(st.floats(min_value=-1e6, max_value=1e6), min_size=3, max_size=3),
        b=st.lists(st.floats(min_value=-1e6, max_value=1e6), min_size=3, max_size=3),
    )
    def test_always_in_range(self, a, b):
        assert -1.0 <= cosine_similarity(a, b) <= 1.0


class TestEmbeddingText:
    """Tests for the text that gets embedded."""

    def test_profile_text(self):
        assert build_profile_embedding_text("Rust") == "Rust"
        assert build_profile_embedding_text(" Rust ", "systems language", "") == "Rust\n\nsystems language"
        assert build_profile_embedding_text("Rust", None, "Memory safety") == "Rust\n\nMemory safety"

    def test_clean_excerpt_strips_markup(self):
        raw = '<p>Read the <a href="https://example.com/paper">full paper</a>\n\n  now.</p>'
        excerpt = clean_excerpt(raw, 500)
        assert "<" not in excerpt
        assert "https://example.com/paper" not in excerpt
        assert "full paper" in excerpt
        assert "  " not in excerpt

    def test_clean_excerpt_truncates(self):
        assert len(clean_excerpt("word " * 200, 50)) <= 50
        assert clean_excerpt(None, 50) == ""

    def test_article_text(self):
        article = Article(source_id=1, external_id="a", title="Big news", url="https://example.com/a",
                          content="<p>Details here</p>")
        assert build_article_embedding_text(article, 500) == "Big news. Details here"
        article.content = None
        assert build_article_embedding_text(article, 500) == "Big news"


class TestEmbedTexts:
    """Tests for batched embedding calls."""

    def test_batches_preserve_order(self):
        config = EngineConfig(embedding_batch_size=2, retry_base_delay_seconds=0.0)
        provider = FakeEmbeddingProvider({"ml": ML, "crypto": CRYPTO})

        vectors = embed_texts(["ml one", "crypto two", "ml three"], provider, config)

        assert vectors == [ML, CRYPTO, ML]
        assert [len(call) for call in provider.calls] == [2, 1]

    def test_failure_raises_after_retries(self, config):
        provider = FakeEmbeddingProvider(fail=True)

        with pytest.raises(ProviderError):
            embed_texts(["text"], provider, config, sleep=no_sleep)
        assert len(provider.calls) == config.provider_max_attempts


class TestEnsureEmbeddings:
    """Tests for generating and reusing stored vectors."""

    def test_article_vectors_reused(self, source_id, config):
        article_id = make_article(source_id, "Machine learning breakthrough")
        articles = database.get_articles_by_ids([article_id])
        provider = FakeEmbeddingProvider({"machine learning": ML})

        first = ensure_article_embeddings(articles, provider, config)
        second = ensure_article_embeddings(articles, provider, config)

        assert first == second == {article_id: ML}
        assert len(provider.calls) == 1
        stored = database.get_embedding(RefType.ARTICLE, article_id)
        assert stored.text.startswith("Machine learning breakthrough")
        assert stored.model == config.embedding_model

    def test_article_failure_degrades(self, source_id, config):
        articles = database.get_articles_by_ids([make_article(source_id, "Machine learning breakthrough")])

        assert ensure_article_embeddings(articles, FakeEmbeddingProvider(fail=True), config, sleep=no_sleep) == {}

    def test_profile_vectors(self, user_id, config):
        interest = database.get_interest(
            database.insert_interest(Interest(user_id=user_id, category="Machine Learning"))
        )
        exclusion = database.get_exclusion(
            database.insert_exclusion(Exclusion(user_id=user_id, category="Cryptocurrency"))
        )
        provider = FakeEmbeddingProvider({"machine learning": ML, "cryptocurrency": CRYPTO})

        interest_vectors, exclusion_vectors = ensure_profile_embeddings([interest], [exclusion], provider, config)

        assert interest_vectors == {interest.id: ML}
        assert exclusion_vectors == {exclusion.id: CRYPTO}

    def test_upsert_keeps_one_row_per_entry(self, user_id):
        database.upsert_embedding(RefType.INTEREST, 7, "old", ML, "model-a", now=NOW)
        database.upsert_embedding(RefType.INTEREST, 7, "new", CRYPTO, "model-b", now=NOW + 1)

        stored = database.get_embedding(RefType.INTEREST, 7)
        assert stored.text == "new"
        assert stored.vector == CRYPTO
        assert list(database.get_embeddings(RefType.INTEREST, [7])) == [7]


class TestExpandDescription:
    """Tests for model-written topic descriptions."""

    def test_quotes_stripped(self):
        config = EngineConfig(retry_base_delay_seconds=0.0)
        provider = FakeScoringProvider(['"Deep learning, neural networks and model training."'])

        expanded = expand_description("Machine Learning", None, provider, config)

        assert expanded == "Deep learning, neural networks and model training."
        assert "Machine Learning" in provider.prompts[0]

    def test_failure_returns_none(self, config):
        provider = FakeScoringProvider(error=ProviderError("quota exceeded"))

        assert expand_description("Machine Learning", "ML", provider, config, sleep=no_sleep) is None


class TestEmbeddingTaskRunner:
    """Tests for background profile embedding."""

    def test_submit_embeds_entry(self, user_id, config):
        interest_id = database.insert_interest(Interest(user_id=user_id, category="Machine Learning"))
        provider = FakeEmbeddingProvider({"machine learning": ML})

        with EmbeddingTaskRunner(provider, config) as runner:
            assert runner.submit(RefType.INTEREST, interest_id).result(timeout=10)

        assert database.get_embedding(RefType.INTEREST, interest_id).vector == ML

    def test_expansion_stored_when_enabled(self, user_id):
        config = EngineConfig(retry_base_delay_seconds=0.0, expand_profile_entries=True)
        exclusion_id = database.insert_exclusion(Exclusion(user_id=user_id, category="Cryptocurrency"))
        scorer = FakeScoringProvider(["Tokens, blockchains and coin prices."])

        with EmbeddingTaskRunner(FakeEmbeddingProvider(), config, scoring_provider=scorer) as runner:
            assert runner.submit(RefType.EXCLUSION, exclusion_id).result(timeout=10)

        assert database.get_exclusion(exclusion_id).expanded_description == "Tokens, blockchains and coin prices."
        stored = database.get_embedding(RefType.EXCLUSION, exclusion_id)
        assert stored.text == "Cryptocurrency\n\nTokens, blockchains and coin prices."

    def test_missing_entry_returns_false(self, temp_db, config):
        with EmbeddingTaskRunner(FakeEmbeddingProvider(), config) as runner:
            assert runner.submit(RefType.INTEREST, 404).result(timeout=10) is False


class TestBackfillAndPrune:
    """Tests for maintenance jobs."""

    def test_backfill_fills_missing(self, user_id, source_id, config):
        database.insert_interest(Interest(user_id=user_id, category="Machine Learning"))
        database.insert_exclusion(Exclusion(user_id=user_id, category="Cryptocurrency"))
        make_article(source_id, "Fresh article about things", discovered_at=NOW - DAY)
        make_article(source_id, "Ancient article about things", discovered_at=NOW - 30 * DAY)

        created = backfill_embeddings(FakeEmbeddingProvider(), config, include_articles=True, now=NOW)

        assert created == {"interest": 1, "exclusion": 1, "article": 1}
        assert database.get_interests_missing_embeddings() == []
        assert backfill_embeddings(FakeEmbeddingProvider(), config, now=NOW)["interest"] == 0

    def test_prune_old_article_embeddings(self, source_id, config):
        old_id = make_article(source_id, "Ancient article about things", discovered_at=NOW - 30 * DAY)
        new_id = make_article(source_id, "Fresh article about things", discovered_at=NOW - DAY)
        ensure_article_embeddings(database.get_articles_by_ids([old_id, new_id]), FakeEmbeddingProvider(), config)

        assert prune_embeddings(14, now=NOW) == 1
        assert database.get_embedding(RefType.ARTICLE, old_id) is None
        assert database.get_embedding(RefType.ARTICLE, new_id) is not None
