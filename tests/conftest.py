"""Pytest configuration and fixtures."""

import os
from collections.abc import Callable, Iterator

import pytest

from firestarter_api.config import Settings

# Set test environment variables before importing app modules.
# Credentials are blanked so a developer's shell cannot leak real keys into tests.
for _var in (
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GOOGLE_AI_STUDIO_API_KEY",
    "GROQ_API_KEY",
    "FIRECRAWL_API_KEY",
    "UPSTASH_SEARCH_REST_URL",
    "UPSTASH_SEARCH_REST_TOKEN",
    "REDIS_URL",
):
    os.environ[_var] = ""
os.environ.setdefault("ENVIRONMENT", "development")
os.environ["RATE_LIMIT_ENABLED"] = "false"
# Enable mock mode for LLM providers and the search index in tests
os.environ["MOCK_LLM"] = "true"
os.environ["MOCK_SEARCH_CLIENT"] = "true"


@pytest.fixture(autouse=True)
def reset_caches() -> Iterator[None]:
    """Reset cached settings, clients and stores before each test."""
    from firestarter_api.config import get_settings
    from firestarter_api.index_store import reset_index_store
    from firestarter_api.query_transform import reset_keyword_cache
    from firestarter_api.search_client import reset_mock_index, reset_search_client

    def _reset() -> None:
        get_settings.cache_clear()
        reset_search_client()
        reset_mock_index()
        reset_index_store()
        reset_keyword_cache()

    _reset()
    yield
    _reset()


@pytest.fixture
def mock_settings(monkeypatch: pytest.MonkeyPatch) -> Callable[..., Settings]:
    """Fixture to set test settings."""

    def _mock_settings(**kwargs: str) -> Settings:
        for key, value in kwargs.items():
            monkeypatch.setenv(key.upper(), str(value))
        from firestarter_api.config import get_settings

        get_settings.cache_clear()
        return get_settings()

    return _mock_settings


def _make_page(
    url: str,
    title: str = "Example page",
    markdown: str = "",
    description: str = "",
    **metadata: str,
) -> dict:
    """A crawled page as Firecrawl returns it."""
    return {
        "url": url,
        "markdown": markdown,
        "metadata": {"sourceURL": url, "title": title, "description": description, **metadata},
    }


@pytest.fixture
def make_page() -> Callable[..., dict]:
    """Factory for crawled pages."""
    return _make_page
