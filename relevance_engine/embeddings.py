"""
Embedding store for the relevance engine.

Generates and persists embeddings for interests, exclusions and articles,
and provides the similarity measure the exclusion filter and scorer use.
"""

import math
import re
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from html2text import html2text

from relevance_engine import database
from relevance_engine.config import EngineConfig
from relevance_engine.constants import PROMPTS_DIR, SECONDS_PER_DAY
from relevance_engine.errors import ProviderError, RelevanceEngineError
from relevance_engine.models import Article, Exclusion, Interest, RefType
from relevance_engine.providers import EmbeddingProvider, ScoringProvider, call_with_retries
from llm.llm_util import render_prompt
from util.logging_util import setup_logger

logger = setup_logger(__name__)

Vector = List[float]

MARKDOWN_LINK_RE = re.compile(r"!?\[([^\]]*)\]\([^)]*\)")
WHITESPACE_RE = re.compile(r"\s+")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]. Empty, zero or mismatched vectors give 0.0."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


def clip_similarity(value: float) -> float:
    return max(0.0, min(1.0, value))


def build_profile_embedding_text(
    category: str,
    description: Optional[str] = None,
    expanded_description: Optional[str] = None,
) -> str:
    """Text embedded for an interest or exclusion."""
    parts = [category.strip()]
    if description and description.strip():
        parts.append(description.strip())
    if expanded_description and expanded_description.strip():
        parts.append(expanded_description.strip())
    return "\n\n".join(parts)


def clean_excerpt(raw: Optional[str], max_chars: int) -> str:
    """Plain-text excerpt of article content, cut at a character boundary."""
    if not raw:
        return ""
    text = html2text(raw, bodywidth=0)
    text = MARKDOWN_LINK_RE.sub(r"\1", text)
    text = WHITESPACE_RE.sub(" ", text).strip()
    return text[:max_chars].rstrip()


def build_article_embedding_text(article: Article, max_chars: int) -> str:
    excerpt = clean_excerpt(article.content, max_chars)
    if not excerpt:
        return article.title
    return f"{article.title}. {excerpt}"


def embed_texts(
    texts: List[str],
    provider: EmbeddingProvider,
    config: EngineConfig,
    sleep: Callable[[float], None] = time.sleep,
) -> List[Vector]:
    """Embed texts in batches, preserving input order.

    Raises:
        ProviderError: if any batch still fails after retries.
    """
    vectors: List[Vector] = []
    batch_size = config.embedding_batch_size
    for start in range(0, len(texts), batch_size):
        batch = texts[start:start + batch_size]
        vectors.extend(
            call_with_retries(
                lambda: provider.embed(batch),
                config.provider_max_attempts,
                config.retry_base_delay_seconds,
                f"Embedding batch of {len(batch)}",
                sleep=sleep,
            )
        )
    return vectors


def ensure_article_embeddings(
    articles: List[Article],
    provider: EmbeddingProvider,
    config: EngineConfig,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[int, Vector]:
    """Get a vector for every article, generating the missing ones.

    A provider failure is logged and the articles without a stored vector are
    left out of the result.
    """
    if not articles:
        return {}

    stored = database.get_embeddings(RefType.ARTICLE, [a.id for a in articles])
    vectors = {ref_id: embedding.vector for ref_id, embedding in stored.items()}

    missing = [a for a in articles if a.id not in vectors]
    if not missing:
        return vectors

    texts = [build_article_embedding_text(a, config.embedding_excerpt_chars) for a in missing]
    try:
        new_vectors = embed_texts(texts, provider, config, sleep=sleep)
    except ProviderError as e:
        logger.warning(f"Could not embed {len(missing)} articles, continuing without them: {e}")
        return vectors

    for article, text, vector in zip(missing, texts, new_vectors):
        database.upsert_embedding(RefType.ARTICLE, article.id, text, vector, config.embedding_model)
        vectors[article.id] = vector

    logger.info(f"Embedded {len(missing)} new articles ({len(stored)} already stored)")
    return vectors


def _ensure_profile_vectors(
    ref_type: RefType,
    entries: List[Union[Interest, Exclusion]],
    provider: EmbeddingProvider,
    config: EngineConfig,
    sleep: Callable[[float], None],
) -> Dict[int, Vector]:
    if not entries:
        return {}

    stored = database.get_embeddings(ref_type, [e.id for e in entries])
    vectors = {ref_id: embedding.vector for ref_id, embedding in stored.items()}

    missing = [e for e in entries if e.id not in vectors]
    if not missing:
        return vectors

    texts = [
        build_profile_embedding_text(e.category, e.description, e.expanded_description)
        for e in missing
    ]
    try:
        new_vectors = embed_texts(texts, provider, config, sleep=sleep)
    except ProviderError as e:
        logger.warning(f"Could not embed {len(missing)} {ref_type.value} entries: {e}")
        return vectors

    for entry, text, vector in zip(missing, texts, new_vectors):
        database.upsert_embedding(ref_type, entry.id, text, vector, config.embedding_model)
        vectors[entry.id] = vector
    return vectors


def ensure_profile_embeddings(
    interests: List[Interest],
    exclusions: List[Exclusion],
    provider: EmbeddingProvider,
    config: EngineConfig,
    sleep: Callable[[float], None] = time.sleep,
) -> Tuple[Dict[int, Vector], Dict[int, Vector]]:
    """Vectors for a user's interests and exclusions, keyed by entry id."""
    interest_vectors = _ensure_profile_vectors(RefType.INTEREST, interests, provider, config, sleep)
    exclusion_vectors = _ensure_profile_vectors(RefType.EXCLUSION, exclusions, provider, config, sleep)
    return interest_vectors, exclusion_vectors


def expand_description(
    category: str,
    description: Optional[str],
    provider: ScoringProvider,
    config: EngineConfig,
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[str]:
    """Ask the model for a dense paragraph describing a topic.

    Returns None if the model call fails.
    """
    prompt = render_prompt(
        str(PROMPTS_DIR / "expand_description.jinja2"),
        {"category": category, "description": description or ""},
    )
    try:
        response = call_with_retries(
            lambda: provider.complete(prompt, config.learning_max_output_tokens),
            config.provider_max_attempts,
            config.retry_base_delay_seconds,
            f"Expansion of '{category}'",
            sleep=sleep,
        )
    except ProviderError as e:
        logger.warning(f"Expansion of '{category}' failed, embedding without it: {e}")
        return None

    expanded = response.strip().strip('"').strip("'").strip()
    return expanded or None


def embed_profile_entry(
    ref_type: RefType,
    entry: Union[Interest, Exclusion],
    embedding_provider: EmbeddingProvider,
    config: EngineConfig,
    scoring_provider: Optional[ScoringProvider] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Vector:
    """Expand (optionally) and embed one interest or exclusion, replacing any stored vector.

    Raises:
        ProviderError: if embedding fails after retries.
    """
    if config.expand_profile_entries and scoring_provider is not None:
        expanded = expand_description(entry.category, entry.description, scoring_provider, config, sleep)
        if expanded is not None:
            entry.expanded_description = expanded
            if ref_type == RefType.INTEREST:
                database.update_interest(entry)
            else:
                database.update_exclusion(entry)

    text = build_profile_embedding_text(entry.category, entry.description, entry.expanded_description)
    vector = embed_texts([text], embedding_provider, config, sleep=sleep)[0]
    database.upsert_embedding(ref_type, entry.id, text, vector, config.embedding_model)
    logger.info(f"Stored {ref_type.value} embedding for '{entry.category}' (id {entry.id})")
    return vector


class EmbeddingTaskRunner:
    """Generates profile embeddings in the background.

    Entries are usable before their embedding lands: until then articles are
    scored without them. Failures are logged by the task itself.
    """

    def __init__(
        self,
        embedding_provider: EmbeddingProvider,
        config: EngineConfig,
        scoring_provider: Optional[ScoringProvider] = None,
        max_workers: int = 2,
    ):
        self.embedding_provider = embedding_provider
        self.scoring_provider = scoring_provider
        self.config = config
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="embedding")

    def submit(self, ref_type: RefType, ref_id: int) -> "Future[bool]":
        return self._executor.submit(self._run, ref_type, ref_id)

    def _run(self, ref_type: RefType, ref_id: int) -> bool:
        if ref_type == RefType.INTEREST:
            entry = database.get_interest(ref_id)
        elif ref_type == RefType.EXCLUSION:
            entry = database.get_exclusion(ref_id)
        else:
            logger.error(f"Background embedding does not handle {ref_type.value} entries")
            return False

        if entry is None:
            logger.warning(f"{ref_type.value} {ref_id} disappeared before it could be embedded")
            return False

        try:
            embed_profile_entry(
                ref_type,
                entry,
                self.embedding_provider,
                self.config,
                scoring_provider=self.scoring_provider,
            )
        except RelevanceEngineError as e:
            logger.error(f"Background embedding of {ref_type.value} {ref_id} failed: {e}")
            return False
        return True

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown(wait=True)


def backfill_embeddings(
    embedding_provider: EmbeddingProvider,
    config: EngineConfig,
    scoring_provider: Optional[ScoringProvider] = None,
    include_articles: bool = False,
    article_days: int = 7,
    article_limit: int = 1000,
    now: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, int]:
    """Generate embeddings for entries that have none.

    Returns counts of embeddings created per ref type.
    """
    now = now if now is not None else int(time.time())
    created = {RefType.INTEREST.value: 0, RefType.EXCLUSION.value: 0, RefType.ARTICLE.value: 0}

    for ref_type, entries in (
        (RefType.INTEREST, database.get_interests_missing_embeddings()),
        (RefType.EXCLUSION, database.get_exclusions_missing_embeddings()),
    ):
        for entry in entries:
            try:
                embed_profile_entry(
                    ref_type, entry, embedding_provider, config,
                    scoring_provider=scoring_provider, sleep=sleep,
                )
                created[ref_type.value] += 1
            except ProviderError as e:
                logger.warning(f"Backfill of {ref_type.value} {entry.id} failed: {e}")

    if include_articles:
        articles = database.get_articles_missing_embeddings(
            now - article_days * SECONDS_PER_DAY, article_limit
        )
        vectors = ensure_article_embeddings(articles, embedding_provider, config, sleep=sleep)
        created[RefType.ARTICLE.value] = len(vectors)

    logger.info(f"Embedding backfill complete: {created}")
    return created


def prune_embeddings(older_than_days: int, now: Optional[int] = None) -> int:
    """Delete embeddings of articles discovered more than ``older_than_days`` ago."""
    now = now if now is not None else int(time.time())
    removed = database.prune_article_embeddings(now - older_than_days * SECONDS_PER_DAY)
    logger.info(f"Pruned {removed} article embeddings older than {older_than_days} days")
    return removed
