"""Environment configuration using pydantic-settings."""

from functools import lru_cache
from typing import Any, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Mock control (opt-in feature gates for local development and tests)
    mock_llm: bool = False  # Canned LLM responses when no provider key is configured
    mock_search_client: bool = False  # In-process search index instead of Upstash

    # Application
    app_name: str = "Firestarter"
    next_public_url: str = "http://localhost:3000"
    next_public_app_url: str = ""
    logo_path: str = "/firecrawl-logo-with-fire.png"

    # LLM provider credentials
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    google_ai_studio_api_key: str = ""
    groq_api_key: str = ""

    # Provider selection: first entry with a credential wins
    llm_provider_priority: str = "openai,anthropic,google,groq"
    openai_model: str = "gpt-4o"
    anthropic_model: str = "claude-3-5-sonnet-20241022"
    google_model: str = "gemini-2.5-flash"
    groq_model: str = "meta-llama/llama-4-scout-17b-16e-instruct"
    llm_timeout_seconds: float = 60.0

    # Generation defaults
    llm_temperature: float = 0.7
    llm_max_tokens: int = 800
    max_history_messages: int = 10
    keyword_temperature: float = 0.3
    keyword_max_tokens: int = 50
    keyword_cache_ttl: int = 3600
    keyword_cache_size: int = 512

    # Follow-up questions appended to non-streaming proxy responses (0 disables)
    followup_count: int = 0
    followup_temperature: float = 0.5
    followup_prompt: str = (
        "Suggest {count} short follow-up questions the user might ask next about "
        "the topic of their last message. Return one question per line, nothing else."
    )

    system_prompt: str = """You are a helpful assistant that answers questions based on the provided context from a website.
- Answer questions comprehensively using the context provided
- Use bullet points or numbered lists when appropriate for clarity
- Cite specific information from the sources when relevant
- If the context doesn't contain enough information, say so
- Be concise but thorough"""

    # Firecrawl
    firecrawl_api_key: str = ""
    firecrawl_base_url: str = "https://api.firecrawl.dev"
    crawl_default_limit: int = 10
    crawl_min_limit: int = 10
    crawl_max_limit: int = 100
    crawl_limit_options: list[int] = [10, 25, 50, 100]
    scrape_timeout_ms: int = 15000
    cache_max_age: int = 604800  # 1 week in seconds
    crawl_poll_interval_seconds: float = 2.0
    crawl_timeout_seconds: float = 300.0
    firestarter_disable_creation_dashboard: bool = False

    # Upstash Search
    upstash_search_rest_url: str = ""
    upstash_search_rest_token: str = ""
    search_index_name: str = "firestarter"
    search_timeout_seconds: float = 15.0
    search_max_results: int = 100
    search_max_context_docs: int = 10
    search_max_context_length: int = 1500
    search_max_sources_display: int = 20
    search_snippet_length: int = 200
    upsert_batch_size: int = 10

    # Index metadata storage
    redis_url: str = ""
    max_indexes: int = 50
    redis_indexes_key: str = "firestarter:indexes"
    redis_index_prefix: str = "firestarter:index:"

    # Rate limiting (fixed window per client IP)
    rate_limit_enabled: bool = True
    rate_limit_create: str = "20/day"
    rate_limit_query: str = "100/hour"
    rate_limit_scrape: str = "50/day"

    # Server configuration
    port: int = 3000
    host: str = "0.0.0.0"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    environment: Literal["development", "production"] = "development"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def provider_priority(self) -> list[str]:
        """Provider names in priority order, normalized to lower case."""
        return [
            name.strip().lower() for name in self.llm_provider_priority.split(",") if name.strip()
        ]

    @property
    def enable_creation(self) -> bool:
        return not self.firestarter_disable_creation_dashboard

    @property
    def enable_redis(self) -> bool:
        return bool(self.redis_url)

    @property
    def enable_search(self) -> bool:
        return bool(self.upstash_search_rest_url and self.upstash_search_rest_token)

    @property
    def cors_allowed_origins(self) -> list[str]:
        """Origins allowed to call the API from a browser."""
        origins = ["http://localhost:3000", self.next_public_app_url, "https://firecrawl.dev"]
        return [origin for origin in origins if origin]

    def client_config(self) -> dict[str, Any]:
        """Configuration that is safe to hand to a browser (no credentials)."""
        return {
            "app": {
                "name": self.app_name,
                "url": self.next_public_url,
                "logoPath": self.logo_path,
            },
            "crawling": {
                "defaultLimit": self.crawl_default_limit,
                "maxLimit": self.crawl_max_limit,
                "minLimit": self.crawl_min_limit,
                "limitOptions": self.crawl_limit_options,
                "scrapeTimeout": self.scrape_timeout_ms,
                "cacheMaxAge": self.cache_max_age,
            },
            "search": {
                "maxResults": self.search_max_results,
                "maxContextDocs": self.search_max_context_docs,
                "maxContextLength": self.search_max_context_length,
                "maxSourcesDisplay": self.search_max_sources_display,
                "snippetLength": self.search_snippet_length,
            },
            "storage": {
                "maxIndexes": self.max_indexes,
                "redisPrefix": {
                    "indexes": self.redis_indexes_key,
                    "index": self.redis_index_prefix,
                },
            },
            "features": {
                "enableCreation": self.enable_creation,
                "enableRedis": self.enable_redis,
                "enableSearch": self.enable_search,
            },
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
