"""
Engine configuration.

An EngineConfig is built once per process (or per test) and passed into every
engine call. Nothing downstream reads thresholds or model names from globals.
"""

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Tuple, Union

import yaml

from relevance_engine.constants import ENGINE_CONFIG_PATH
from relevance_engine.errors import ValidationError
from util.logging_util import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    """Immutable thresholds, sizes and model names for one engine run."""
    min_relevance_score: float = 0.6
    bonus_floor: float = 0.3
    exclusion_veto_threshold: float = 0.8
    trust_min: float = 0.8
    trust_max: float = 1.2
    trust_window_days: int = 60
    trust_min_samples: int = 5
    scoring_batch_size: int = 200
    prompt_excerpt_chars: int = 300
    embedding_excerpt_chars: int = 500
    embedding_batch_size: int = 100
    weight_embedding_scores: bool = True
    provider_max_attempts: int = 3
    retry_base_delay_seconds: float = 2.0
    run_budget_seconds: float = 300
    learning_min_feedback: int = 50
    learning_force_min_feedback: int = 10
    learning_feedback_window: int = 200
    learning_relearn_interval: int = 50
    recent_feedback_limit: int = 50
    max_exclusions_per_user: int = 15
    max_interests_per_user: int = 30
    freshness_cutoff_hours: int = 168
    min_title_length: int = 10
    spam_domains: Tuple[str, ...] = ("bit.ly", "t.co", "tinyurl.com")
    scoring_model: str = "gemini-2.5-flash"
    embedding_model: str = "models/text-embedding-004"
    scoring_max_output_tokens: int = 8192
    learning_max_output_tokens: int = 2048
    expand_profile_entries: bool = True
    lock_stale_seconds: int = 900

    def __post_init__(self):
        for name in ("min_relevance_score", "bonus_floor", "exclusion_veto_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValidationError(f"{name} must be within [0, 1], got {value}")

        if self.bonus_floor > self.min_relevance_score:
            raise ValidationError(
                f"bonus_floor ({self.bonus_floor}) cannot exceed "
                f"min_relevance_score ({self.min_relevance_score})"
            )

        if not 0.0 < self.trust_min <= 1.0 <= self.trust_max:
            raise ValidationError(
                f"trust range must satisfy 0 < trust_min <= 1 <= trust_max, "
                f"got [{self.trust_min}, {self.trust_max}]"
            )

        for name in (
            "trust_window_days",
            "trust_min_samples",
            "scoring_batch_size",
            "prompt_excerpt_chars",
            "embedding_excerpt_chars",
            "embedding_batch_size",
            "provider_max_attempts",
            "run_budget_seconds",
            "learning_min_feedback",
            "learning_force_min_feedback",
            "learning_feedback_window",
            "learning_relearn_interval",
            "recent_feedback_limit",
            "max_exclusions_per_user",
            "max_interests_per_user",
            "freshness_cutoff_hours",
            "scoring_max_output_tokens",
            "learning_max_output_tokens",
            "lock_stale_seconds",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValidationError(f"{name} must be positive, got {value}")

        if self.retry_base_delay_seconds < 0:
            raise ValidationError("retry_base_delay_seconds cannot be negative")

        if self.learning_force_min_feedback > self.learning_min_feedback:
            raise ValidationError(
                "learning_force_min_feedback cannot exceed learning_min_feedback"
            )


def load_engine_config(path: Union[str, Path] = ENGINE_CONFIG_PATH) -> EngineConfig:
    """Load an EngineConfig from a YAML mapping, falling back to defaults.

    Raises:
        ValidationError: on unknown keys, a non-mapping document or invalid values.
    """
    path = Path(path)
    if not path.exists():
        logger.warning(f"Engine config {path} not found, using defaults")
        return EngineConfig()

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        return EngineConfig()
    if not isinstance(raw, dict):
        raise ValidationError(f"Engine config {path} must be a mapping")

    known = {f.name for f in fields(EngineConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValidationError(f"Unknown engine config keys: {', '.join(unknown)}")

    if "spam_domains" in raw and raw["spam_domains"] is not None:
        raw["spam_domains"] = tuple(raw["spam_domains"])

    config = EngineConfig(**raw)
    logger.info(f"Loaded engine config from {path}")
    return config
