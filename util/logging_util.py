import logging
import os
import sys

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
LOG_LEVEL_VARIABLE = 'RELEVANCE_ENGINE_LOG_LEVEL'
RESPONSE_PREVIEW_CHARS = 200


def _default_level() -> int:
    name = os.environ.get(LOG_LEVEL_VARIABLE, 'INFO').upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def setup_logger(name: str, level=None) -> logging.Logger:
    """
    Sets up a module logger writing to stderr, so CLI output on stdout stays clean.

    Args:
        name: Name of the logger (typically __name__ from the calling module)
        level: Logging level. Defaults to $RELEVANCE_ENGINE_LOG_LEVEL, else INFO.

    Returns:
        Configured logger instance
    """
    if level is None:
        level = _default_level()

    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        logger.addHandler(handler)

    return logger


def _duration(duration_ms) -> str:
    return f" in {duration_ms:.0f}ms" if duration_ms is not None else ""


def log_llm_interaction(logger: logging.Logger, purpose: str, prompt: str,
                        response: str, model_name: str, duration_ms: float = None):
    """
    Logs one completion call: model, purpose and sizes at INFO, a response preview at DEBUG.

    Args:
        logger: Logger instance to use
        purpose: Short label for the call (e.g. "scoring", "learning")
        prompt: The rendered prompt that was sent
        response: Response from the LLM
        model_name: Name of the model used
        duration_ms: Optional duration of the call in milliseconds
    """
    logger.info(
        f"{model_name} {purpose} call{_duration(duration_ms)}: "
        f"{len(prompt)} prompt chars -> {len(response)} response chars"
    )
    preview = response[:RESPONSE_PREVIEW_CHARS]
    logger.debug(f"  Response: {preview}{'...' if len(response) > RESPONSE_PREVIEW_CHARS else ''}")


def log_embedding_call(logger: logging.Logger, model_name: str, n_texts: int,
                       duration_ms: float = None):
    """Logs a batched embedding call."""
    logger.info(f"{model_name} embedding call{_duration(duration_ms)}: {n_texts} texts")
