"""Keyword extraction for re-ranking retrieved pages.

A short LLM call turns the user's question into a comma-separated list of
keywords and phrases. Retrieval uses them to break ties between documents the
search index scored equally. Results are cached per provider and question, and
any failure falls back to the original question.
"""

import threading

import structlog
from cachetools import TTLCache

from firestarter_api.config import get_settings
from firestarter_api.llm_client import LLMClient

logger = structlog.get_logger()


KEYWORD_EXTRACTION_PROMPT = """You are a search keyword extractor. Given a user question, extract the most relevant search keywords and phrases.
Return ONLY a comma-separated list of keywords/phrases, nothing else.
Focus on nouns, important concepts, and specific terms.
Include variations and related terms for better search coverage."""

_cache: TTLCache | None = None
_cache_lock = threading.Lock()


def _get_cache() -> TTLCache:
    global _cache
    with _cache_lock:
        if _cache is None:
            settings = get_settings()
            _cache = TTLCache(maxsize=settings.keyword_cache_size, ttl=settings.keyword_cache_ttl)
        return _cache


def reset_keyword_cache() -> None:
    """Drop cached keywords (useful for testing)."""
    global _cache
    with _cache_lock:
        _cache = None


def keyword_terms(keywords: str) -> list[str]:
    """Split extracted keywords into lower-cased, non-empty terms."""
    return [term.strip().lower() for term in keywords.split(",") if term.strip()]


async def extract_keywords(question: str, llm_client: LLMClient | None) -> str:
    """
    Extract search keywords from a question.

    Args:
        question: The user's natural language question.
        llm_client: Client for the selected provider, or None when no provider
            is available.

    Returns:
        Comma-separated keywords, or the original question on failure.
    """
    if llm_client is None:
        logger.debug("No LLM provider available, skipping keyword extraction")
        return question

    if not question.strip():
        return question

    cache = _get_cache()
    cache_key = (llm_client.provider_name, question)
    with _cache_lock:
        cached = cache.get(cache_key)
    if cached is not None:
        return cached

    settings = get_settings()
    try:
        response = await llm_client.chat(
            [
                {"role": "system", "content": KEYWORD_EXTRACTION_PROMPT},
                {"role": "user", "content": question},
            ],
            temperature=settings.keyword_temperature,
            max_tokens=settings.keyword_max_tokens,
        )
    except Exception as e:
        logger.warning(
            "Keyword extraction failed, using original",
            error=str(e),
            question=question[:50],
        )
        return question

    keywords = response.content.strip()
    if not keyword_terms(keywords):
        logger.warning("No valid keywords extracted", output=keywords[:100])
        return question

    logger.info(
        "Keywords extracted",
        original=question[:50],
        keywords=keywords[:100],
        tokens_used=response.tokens_used,
    )
    with _cache_lock:
        cache[cache_key] = keywords
    return keywords
