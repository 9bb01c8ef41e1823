"""
Model provider adapters.

The engine only needs two capabilities from a model provider: text completion
for scoring/learning and batched text embedding. Both are expressed as small
protocols so tests can substitute fakes, and both report failures through the
ProviderError taxonomy.
"""

import time
from typing import Callable, List, Protocol, TypeVar

from relevance_engine.errors import ProviderError, ProviderFormatError
from llm.llm_util import get_embeddings, get_llm_response
from util.logging_util import setup_logger

logger = setup_logger(__name__)

T = TypeVar("T")


class ScoringProvider(Protocol):
    def complete(self, prompt: str, max_output_tokens: int) -> str:
        ...


class EmbeddingProvider(Protocol):
    def embed(self, texts: List[str]) -> List[List[float]]:
        ...


class GeminiScoringProvider:
    """Completion through LangChain's Gemini chat model."""

    def __init__(self, model_name: str, purpose: str = "scoring"):
        self.model_name = model_name
        self.purpose = purpose

    def complete(self, prompt: str, max_output_tokens: int) -> str:
        try:
            response = get_llm_response(
                prompt,
                model_name=self.model_name,
                max_output_tokens=max_output_tokens,
                purpose=self.purpose,
            )
        except Exception as e:
            raise ProviderError(f"{self.model_name} completion failed: {e}") from e

        if not response or not response.strip():
            raise ProviderError(f"{self.model_name} returned an empty response")
        return response


class GeminiEmbeddingProvider:
    """Embeddings through LangChain's Gemini embedding model."""

    def __init__(self, model_name: str):
        self.model_name = model_name

    def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            vectors = get_embeddings(texts, model_name=self.model_name)
        except Exception as e:
            raise ProviderError(f"{self.model_name} embedding failed: {e}") from e

        if len(vectors) != len(texts):
            raise ProviderFormatError(
                f"{self.model_name} returned {len(vectors)} vectors for {len(texts)} texts"
            )
        return vectors


def call_with_retries(
    fn: Callable[[], T],
    max_attempts: int,
    base_delay: float,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` until it succeeds, backing off exponentially on ProviderError.

    Raises the last ProviderError once ``max_attempts`` is exhausted.
    """
    for attempt in range(max_attempts):
        try:
            return fn()
        except ProviderError as e:
            if attempt == max_attempts - 1:
                logger.error(f"{description} failed after {max_attempts} attempts: {e}")
                raise
            delay = base_delay * (2 ** attempt)
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{max_attempts}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            sleep(delay)
    raise ProviderError(f"{description} was not attempted")
