"""
Cheap rule-based filtering before any embedding or model call.
"""

from dataclasses import dataclass, field
from typing import List, Tuple
from urllib.parse import urlparse

from relevance_engine.config import EngineConfig
from relevance_engine.models import Article
from util.logging_util import setup_logger

logger = setup_logger(__name__)

REASON_SHORT_TITLE = "short_title"
REASON_INVALID_URL = "invalid_url"
REASON_SPAM_DOMAIN = "spam_domain"
REASON_DUPLICATE_TITLE = "duplicate_title"
REASON_STALE = "stale"


@dataclass
class PrefilterResult:
    kept: List[Article] = field(default_factory=list)
    removed: List[Tuple[Article, str]] = field(default_factory=list)


def _host(url: str) -> str:
    try:
        parsed = urlparse(url)
    except ValueError:
        return ""
    if parsed.scheme not in ("http", "https"):
        return ""
    return (parsed.hostname or "").lower()


def _is_spam_host(host: str, spam_domains) -> bool:
    return any(host == domain or host.endswith("." + domain) for domain in spam_domains)


def prefilter_articles(articles: List[Article], config: EngineConfig, now: int) -> PrefilterResult:
    """Drop articles that are not worth embedding or scoring."""
    result = PrefilterResult()
    seen_titles = set()
    cutoff = now - config.freshness_cutoff_hours * 3600

    for article in articles:
        title = (article.title or "").strip()
        host = _host(article.url)
        title_key = title.lower()

        if len(title) < config.min_title_length:
            reason = REASON_SHORT_TITLE
        elif not host:
            reason = REASON_INVALID_URL
        elif _is_spam_host(host, config.spam_domains):
            reason = REASON_SPAM_DOMAIN
        elif title_key in seen_titles:
            reason = REASON_DUPLICATE_TITLE
        elif (article.published_at or article.discovered_at) < cutoff:
            reason = REASON_STALE
        else:
            seen_titles.add(title_key)
            result.kept.append(article)
            continue

        result.removed.append((article, reason))

    if result.removed:
        logger.info(f"Prefilter removed {len(result.removed)} of {len(articles)} articles")
    return result
