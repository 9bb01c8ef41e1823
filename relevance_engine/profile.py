"""
Interest and exclusion management.

Creating or re-describing an entry schedules its embedding in the
background; the entry is usable straight away.
"""

from typing import Optional

from relevance_engine import database
from relevance_engine.config import EngineConfig
from relevance_engine.embeddings import EmbeddingTaskRunner
from relevance_engine.errors import LimitExceededError, ValidationError
from relevance_engine.exclusion_filter import check_exclusion_limit, check_interest_limit
from relevance_engine.models import Exclusion, Interest, RefType
from util.logging_util import setup_logger

logger = setup_logger(__name__)


def _clean_category(category: str) -> str:
    if not isinstance(category, str) or not category.strip():
        raise ValidationError("Category must be a non-empty string")
    return category.strip()


def _clean_description(description: Optional[str]) -> Optional[str]:
    if description is None:
        return None
    return description.strip() or None


def _check_weight(weight: float) -> float:
    if isinstance(weight, bool) or not isinstance(weight, (int, float)) or not 0.0 <= weight <= 1.0:
        raise ValidationError(f"Weight must be a number within [0, 1], got {weight!r}")
    return float(weight)


def add_interest(
    user_id: int,
    category: str,
    config: EngineConfig,
    description: Optional[str] = None,
    weight: float = 1.0,
    embedder: Optional[EmbeddingTaskRunner] = None,
) -> Interest:
    """Create an interest and schedule its embedding.

    Raises:
        ValidationError: on a blank category or out-of-range weight.
        LimitExceededError: if the user already has the maximum number of interests.
    """
    interest = Interest(
        user_id=user_id,
        category=_clean_category(category),
        description=_clean_description(description),
        weight=_check_weight(weight),
    )
    rejection = check_interest_limit(database.count_active_interests(user_id), config)
    if rejection is not None:
        raise LimitExceededError(rejection)

    interest.id = database.insert_interest(interest)
    logger.info(f"Added interest '{interest.category}' (id {interest.id}) for user {user_id}")
    if embedder is not None:
        embedder.submit(RefType.INTEREST, interest.id)
    return interest


def update_interest(
    interest_id: int,
    category: Optional[str] = None,
    description: Optional[str] = None,
    weight: Optional[float] = None,
    is_active: Optional[bool] = None,
    embedder: Optional[EmbeddingTaskRunner] = None,
) -> Interest:
    """Change an interest. The embedding is regenerated only when its text changes.

    Raises:
        ValidationError: if the interest does not exist or a value is invalid.
    """
    interest = database.get_interest(interest_id)
    if interest is None:
        raise ValidationError(f"Interest {interest_id} does not exist")

    text_changed = False
    if category is not None:
        new_category = _clean_category(category)
        text_changed |= new_category != interest.category
        interest.category = new_category
    if description is not None:
        new_description = _clean_description(description)
        text_changed |= new_description != interest.description
        interest.description = new_description
    if weight is not None:
        interest.weight = _check_weight(weight)
    if is_active is not None:
        interest.is_active = is_active

    if text_changed:
        interest.expanded_description = None

    database.update_interest(interest)
    if text_changed:
        if embedder is not None:
            embedder.submit(RefType.INTEREST, interest.id)
        else:
            # regenerated by the next run
            database.delete_embedding(RefType.INTEREST, interest.id)
    return interest


def deactivate_interest(interest_id: int) -> Interest:
    """Soft-delete an interest. Its history keeps referring to it."""
    return update_interest(interest_id, is_active=False)


def add_exclusion(
    user_id: int,
    category: str,
    config: EngineConfig,
    description: Optional[str] = None,
    embedder: Optional[EmbeddingTaskRunner] = None,
) -> Exclusion:
    """Create an exclusion and schedule its embedding.

    Raises:
        ValidationError: on a blank category.
        LimitExceededError: if the user already has the maximum number of exclusions.
    """
    exclusion = Exclusion(
        user_id=user_id,
        category=_clean_category(category),
        description=_clean_description(description),
    )
    rejection = check_exclusion_limit(database.count_active_exclusions(user_id), config)
    if rejection is not None:
        raise LimitExceededError(rejection)

    exclusion.id = database.insert_exclusion(exclusion)
    logger.info(f"Added exclusion '{exclusion.category}' (id {exclusion.id}) for user {user_id}")
    if embedder is not None:
        embedder.submit(RefType.EXCLUSION, exclusion.id)
    return exclusion


def remove_exclusion(exclusion_id: int) -> bool:
    """Deactivate an exclusion and drop its embedding.

    Articles it vetoed are re-evaluated on the next run. Returns False if
    the exclusion does not exist.
    """
    exclusion = database.get_exclusion(exclusion_id)
    if exclusion is None:
        return False
    exclusion.is_active = False
    database.update_exclusion(exclusion)
    database.delete_embedding(RefType.EXCLUSION, exclusion_id)
    logger.info(f"Removed exclusion '{exclusion.category}' (id {exclusion_id})")
    return True
