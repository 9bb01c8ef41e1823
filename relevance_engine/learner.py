"""
Preference learning.

Distills a user's recent feedback into a few natural-language preference
statements that are fed into future scoring prompts. The statements are a
cache of the feedback corpus: each learning pass replaces them wholesale.
"""

import math
import time
from typing import Callable, List, Optional

from relevance_engine import database
from relevance_engine.config import EngineConfig
from relevance_engine.constants import LAST_LEARNING_COUNT_KEY, PROMPTS_DIR
from relevance_engine.errors import ProviderError
from relevance_engine.models import LearnedPreference
from relevance_engine.providers import ScoringProvider, call_with_retries
from relevance_engine.scorer import parse_json_array
from llm.llm_util import render_prompt
from util.logging_util import setup_logger

logger = setup_logger(__name__)

LEARN_PREFERENCES_TEMPLATE = PROMPTS_DIR / "learn_preferences.jinja2"

MAX_PREFERENCES = 10


def last_learning_count(user_id: int) -> int:
    value = database.get_setting(user_id, LAST_LEARNING_COUNT_KEY)
    try:
        return int(value) if value is not None else 0
    except ValueError:
        logger.warning(f"Ignoring malformed {LAST_LEARNING_COUNT_KEY} setting {value!r} for user {user_id}")
        return 0


def should_run_learning(user_id: int, config: EngineConfig) -> bool:
    """Whether the scheduled path should learn now.

    Requires the feedback gate and enough new events since the last pass.
    """
    count = database.count_feedback_events(user_id)
    if count < config.learning_min_feedback:
        return False
    return count - last_learning_count(user_id) >= config.learning_relearn_interval


def build_learning_prompt(user_id: int, config: EngineConfig) -> Optional[str]:
    feedback = database.get_recent_feedback_context(user_id, config.learning_feedback_window)
    if not feedback:
        return None

    feedback_list = "\n".join(
        f"Action: {f.action.value} | Title: {f.title} | Source: {f.source_name} | "
        f"Category: {f.relevance_reason or 'unknown'}"
        for f in feedback
    )
    existing = database.get_learned_preferences(user_id)
    preference_list = (
        "\n".join(f"- {p.preference} (confidence: {p.confidence})" for p in existing)
        if existing
        else "None yet."
    )
    return render_prompt(
        str(LEARN_PREFERENCES_TEMPLATE),
        {
            "feedback_count": len(feedback),
            "feedback_list": feedback_list,
            "preference_list": preference_list,
            "max_preferences": MAX_PREFERENCES,
        },
    )


def decode_preferences(records: list, user_id: int) -> List[LearnedPreference]:
    """Keep the well-formed preference records, clamping confidence into [0, 1]."""
    preferences = []
    for record in records:
        if not isinstance(record, dict):
            continue
        text = record.get("preference_text")
        confidence = record.get("confidence")
        derived = record.get("derived_from_count", 0)
        if not isinstance(text, str) or not text.strip():
            continue
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or not math.isfinite(confidence):
            continue
        if isinstance(derived, bool) or not isinstance(derived, (int, float)):
            derived = 0
        preferences.append(
            LearnedPreference(
                user_id=user_id,
                preference=text.strip(),
                confidence=max(0.0, min(1.0, float(confidence))),
                derived_from_count=max(0, int(derived)),
            )
        )
    return preferences[:MAX_PREFERENCES]


def learn_preferences(
    user_id: int,
    config: EngineConfig,
    provider: ScoringProvider,
    force: bool = False,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Replace a user's learned preferences with a fresh distillation.

    ``force`` lowers the feedback gate for operational use. Returns False,
    leaving existing preferences untouched, when gated or when the model
    call fails.
    """
    gate = config.learning_force_min_feedback if force else config.learning_min_feedback
    count = database.count_feedback_events(user_id)
    if count < gate:
        logger.info(f"Skipping preference learning for user {user_id}: {count} feedback events, need {gate}")
        return False

    prompt = build_learning_prompt(user_id, config)
    if prompt is None:
        return False

    try:
        records = call_with_retries(
            lambda: parse_json_array(provider.complete(prompt, config.learning_max_output_tokens)),
            config.provider_max_attempts,
            config.retry_base_delay_seconds,
            f"Preference learning for user {user_id}",
            sleep=sleep,
        )
        preferences = decode_preferences(records, user_id)
    except ProviderError as e:
        logger.warning(f"Preference learning failed for user {user_id}, keeping existing preferences: {e}")
        return False

    if not preferences:
        logger.warning(f"Model returned no usable preferences for user {user_id}, keeping existing ones")
        return False

    database.replace_learned_preferences(user_id, preferences)
    database.set_setting(user_id, LAST_LEARNING_COUNT_KEY, str(count))
    logger.info(f"Learned {len(preferences)} preferences for user {user_id} from {count} feedback events")
    return True
