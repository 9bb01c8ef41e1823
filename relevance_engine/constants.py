"""
Constants for the relevance engine.
"""

from pathlib import Path

MODULE_ROOT = Path(__file__).parent

PROMPTS_DIR = MODULE_ROOT / "prompts"

DATA_DIR = MODULE_ROOT / "data"

ENGINE_CONFIG_PATH = DATA_DIR / "engine.yaml"

DB_NAME = "relevance_engine.db"

# Reason tags written onto user_articles
SERENDIPITY_REASON = "Serendipity"
MATCHES_PREFIX = "Matches: "
EMBEDDING_FALLBACK_REASON = "Embedding fallback"
EXCLUDED_PREFIX = "Excluded: "
PREFILTERED_PREFIX = "Prefiltered: "

# Settings keys
LAST_LEARNING_COUNT_KEY = "last_learning_feedback_count"

SECONDS_PER_DAY = 24 * 60 * 60

NO_PREFERENCES_MARKER = "No learned preferences yet."
