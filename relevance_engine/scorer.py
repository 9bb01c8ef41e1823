"""
Hybrid relevance scoring.

Every article first gets a cheap embedding score against the user's
interests. The scoring model's judgment replaces it when the model returns a
valid record for the article; otherwise the embedding score is kept as the
fallback. The source trust factor is applied last and the result clamped.
"""

import json
import math
import re
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Union

from relevance_engine import database
from relevance_engine.config import EngineConfig
from relevance_engine.constants import (
    EMBEDDING_FALLBACK_REASON,
    MATCHES_PREFIX,
    NO_PREFERENCES_MARKER,
    PROMPTS_DIR,
    SERENDIPITY_REASON,
)
from relevance_engine.embeddings import clean_excerpt, clip_similarity, cosine_similarity
from relevance_engine.errors import PartialItemFailure, ProviderError, ProviderFormatError
from relevance_engine.models import (
    Article,
    FeedbackAction,
    FeedbackContext,
    Interest,
    LearnedPreference,
    ScoringResult,
)
from relevance_engine.providers import ScoringProvider, call_with_retries
from llm.llm_util import render_prompt
from util.logging_util import setup_logger

logger = setup_logger(__name__)

SCORE_ARTICLES_TEMPLATE = PROMPTS_DIR / "score_articles.jinja2"

CODE_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


@dataclass
class ScoringContext:
    """Everything about the user the scorer needs, loaded once per run."""
    interests: List[Interest]
    preferences: List[LearnedPreference]
    recent_feedback: str
    embedding_scores: Dict[int, float]
    trust_factors: Dict[int, float]


@dataclass
class BatchOutcome:
    results: List[ScoringResult] = field(default_factory=list)
    failures: List[PartialItemFailure] = field(default_factory=list)
    degraded: bool = False

    @property
    def fallback_count(self) -> int:
        return sum(1 for r in self.results if r.relevance_reason == EMBEDDING_FALLBACK_REASON)


@dataclass
class ScoringOutcome:
    results: List[ScoringResult] = field(default_factory=list)
    failures: List[PartialItemFailure] = field(default_factory=list)
    batches_total: int = 0
    batches_completed: int = 0
    degraded_batches: int = 0
    timed_out: bool = False

    @property
    def fallback_count(self) -> int:
        return sum(1 for r in self.results if r.relevance_reason == EMBEDDING_FALLBACK_REASON)


def compute_embedding_scores(
    articles: List[Article],
    article_vectors: Dict[int, Sequence[float]],
    interests: List[Interest],
    interest_vectors: Dict[int, Sequence[float]],
    weighted: bool = True,
) -> Dict[int, float]:
    """Best clipped interest similarity per article, optionally scaled by interest weight.

    Articles without a vector, or users without embedded interests, score 0.0.
    """
    embedded = [(i, interest_vectors[i.id]) for i in interests if i.id in interest_vectors]
    scores = {}
    for article in articles:
        vector = article_vectors.get(article.id)
        if vector is None or not embedded:
            scores[article.id] = 0.0
            continue
        best = 0.0
        for interest, interest_vector in embedded:
            similarity = clip_similarity(cosine_similarity(vector, interest_vector))
            if weighted:
                similarity *= interest.weight
            best = max(best, similarity)
        scores[article.id] = best
    return scores


def summarize_recent_feedback(feedback: List[FeedbackContext], max_titles: int = 5) -> str:
    """Compact summary of recent feedback for the scoring prompt."""
    if not feedback:
        return ""

    counts = Counter(item.action for item in feedback)
    count_text = ", ".join(
        f"{counts[action]} {action.value}" for action in FeedbackAction if counts[action]
    )
    lines = [f"Last {len(feedback)} interactions: {count_text}."]

    for action, label in ((FeedbackAction.LIKED, "Liked"), (FeedbackAction.DISLIKED, "Disliked")):
        titles = [item.title for item in feedback if item.action == action][:max_titles]
        if titles:
            lines.append(f"{label}: " + "; ".join(titles))

    liked_reasons = Counter(
        item.relevance_reason for item in feedback
        if item.action == FeedbackAction.LIKED and item.relevance_reason
    )
    if liked_reasons:
        top = ", ".join(f"{reason} ({n})" for reason, n in liked_reasons.most_common(3))
        lines.append(f"Most liked categories: {top}")

    return "\n".join(lines)


def build_scoring_prompt(
    articles: List[Article],
    interests: List[Interest],
    preferences: List[LearnedPreference],
    recent_feedback: str,
    excerpt_chars: int,
) -> str:
    interest_list = "\n".join(
        f"- {i.category} (weight: {i.weight}): {i.description or 'No description'}"
        for i in interests
    )
    if preferences:
        preference_list = "\n".join(
            f"- {p.preference} (confidence: {p.confidence})" for p in preferences
        )
    else:
        preference_list = NO_PREFERENCES_MARKER

    article_list = "\n---\n".join(
        f"ID: {a.id}\nTitle: {a.title}\nURL: {a.url}\nContent: {clean_excerpt(a.content, excerpt_chars)}"
        for a in articles
    )

    return render_prompt(
        str(SCORE_ARTICLES_TEMPLATE),
        {
            "interest_list": interest_list or "No stated interests.",
            "interest_names": ", ".join(i.category for i in interests),
            "preference_list": preference_list,
            "recent_feedback": recent_feedback or "No recent feedback data.",
            "article_list": article_list,
        },
    )


def parse_json_array(text: str) -> list:
    """Pull a JSON array out of a model response.

    Tries the raw text, then a markdown code fence, then the outermost
    bracketed span.

    Raises:
        ProviderFormatError: if no JSON array can be found.
    """
    candidates = [text.strip()]
    fence = CODE_FENCE_RE.search(text)
    if fence:
        candidates.append(fence.group(1).strip())
    array = JSON_ARRAY_RE.search(text)
    if array:
        candidates.append(array.group(0))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, list):
            return parsed

    logger.error(f"Unparseable model response: {text[:500]}")
    raise ProviderFormatError("Could not parse a JSON array from the model response")


def _decode_article_id(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def decode_scoring_record(
    record: object,
    active_categories: Set[str],
) -> Union[ScoringResult, PartialItemFailure]:
    """Validate one model record field by field.

    Returns a ScoringResult, or a PartialItemFailure describing the first
    field outside its allowed values.
    """
    if not isinstance(record, dict):
        return PartialItemFailure(None, "record is not an object", record)

    article_id = _decode_article_id(record.get("article_id"))
    if article_id is None:
        return PartialItemFailure(None, f"invalid article_id {record.get('article_id')!r}", record)

    score = record.get("relevance_score")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        return PartialItemFailure(article_id, f"relevance_score is not a number: {score!r}", record)
    if not math.isfinite(score) or not 0.0 <= score <= 1.0:
        return PartialItemFailure(article_id, f"relevance_score out of range: {score!r}", record)

    reason = record.get("relevance_reason")
    if not isinstance(reason, str):
        return PartialItemFailure(article_id, f"relevance_reason is not a string: {reason!r}", record)
    reason = reason.strip()
    if reason != SERENDIPITY_REASON:
        if not reason.startswith(MATCHES_PREFIX):
            return PartialItemFailure(article_id, f"relevance_reason not allowed: {reason!r}", record)
        category = reason[len(MATCHES_PREFIX):].strip()
        if category not in active_categories:
            return PartialItemFailure(article_id, f"unknown interest category: {category!r}", record)
        reason = f"{MATCHES_PREFIX}{category}"

    is_serendipity = record.get("is_serendipity")
    if not isinstance(is_serendipity, bool):
        return PartialItemFailure(article_id, f"is_serendipity is not a boolean: {is_serendipity!r}", record)

    return ScoringResult(
        article_id=article_id,
        relevance_score=float(score),
        relevance_reason=reason,
        is_serendipity=is_serendipity,
    )


def _fallback(article: Article, context: ScoringContext) -> ScoringResult:
    return ScoringResult(
        article_id=article.id,
        relevance_score=context.embedding_scores.get(article.id, 0.0),
        relevance_reason=EMBEDDING_FALLBACK_REASON,
        is_serendipity=False,
        degraded=True,
    )


def apply_trust(result: ScoringResult, trust_factor: float) -> ScoringResult:
    """Scale a score by the source trust factor and clamp it back into [0, 1]."""
    result.relevance_score = max(0.0, min(1.0, result.relevance_score * trust_factor))
    return result


def score_batch(
    batch: List[Article],
    context: ScoringContext,
    provider: ScoringProvider,
    config: EngineConfig,
    sleep: Callable[[float], None] = time.sleep,
) -> BatchOutcome:
    """Score one batch of articles with a single model call.

    Never raises for provider problems: a failed call degrades the whole
    batch to embedding scores, and a bad or missing record degrades only
    its own article.
    """
    outcome = BatchOutcome()
    prompt = build_scoring_prompt(
        batch,
        context.interests,
        context.preferences,
        context.recent_feedback,
        config.prompt_excerpt_chars,
    )

    try:
        records = call_with_retries(
            lambda: parse_json_array(provider.complete(prompt, config.scoring_max_output_tokens)),
            config.provider_max_attempts,
            config.retry_base_delay_seconds,
            f"Scoring batch of {len(batch)}",
            sleep=sleep,
        )
    except ProviderError as e:
        logger.warning(f"Scoring provider failed for batch of {len(batch)}, using embedding scores: {e}")
        outcome.degraded = True
        records = []

    decoded: Dict[int, ScoringResult] = {}
    batch_ids = {a.id for a in batch}
    active_categories = {i.category for i in context.interests}
    for record in records:
        item = decode_scoring_record(record, active_categories)
        if isinstance(item, PartialItemFailure):
            outcome.failures.append(item)
            logger.warning(f"Discarding scoring record: {item}")
        elif item.article_id not in batch_ids:
            logger.warning(f"Model scored article {item.article_id}, which was not in the batch")
        elif item.article_id not in decoded:
            decoded[item.article_id] = item

    for article in batch:
        result = decoded.get(article.id)
        if result is None:
            if not outcome.degraded and not any(f.article_id == article.id for f in outcome.failures):
                failure = PartialItemFailure(article.id, "missing from model response")
                outcome.failures.append(failure)
                logger.warning(f"Scoring record {failure}")
            result = _fallback(article, context)
        outcome.results.append(apply_trust(result, context.trust_factors.get(article.source_id, 1.0)))

    logger.info(
        f"Scored batch of {len(batch)}: {len(batch) - outcome.fallback_count} by model, "
        f"{outcome.fallback_count} by embedding fallback"
    )
    return outcome


def score_articles(
    user_id: int,
    articles: List[Article],
    context: ScoringContext,
    provider: ScoringProvider,
    config: EngineConfig,
    deadline: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
    now: Optional[int] = None,
) -> ScoringOutcome:
    """Score articles batch by batch, persisting each batch as it completes.

    When ``deadline`` (in ``clock`` time) has passed before a batch starts,
    scoring stops and the outcome is marked as timed out. Completed batches
    stay persisted.
    """
    outcome = ScoringOutcome()
    batch_size = config.scoring_batch_size
    batches = [articles[i:i + batch_size] for i in range(0, len(articles), batch_size)]
    outcome.batches_total = len(batches)

    for index, batch in enumerate(batches):
        if deadline is not None and clock() >= deadline:
            outcome.timed_out = True
            logger.warning(
                f"Run budget exhausted for user {user_id} after {index}/{len(batches)} batches"
            )
            break

        batch_outcome = score_batch(batch, context, provider, config, sleep=sleep)
        scored_at = now if now is not None else int(time.time())
        database.save_scoring_results(user_id, batch_outcome.results, context.embedding_scores, now=scored_at)

        outcome.results.extend(batch_outcome.results)
        outcome.failures.extend(batch_outcome.failures)
        outcome.batches_completed += 1
        if batch_outcome.degraded:
            outcome.degraded_batches += 1

    return outcome
