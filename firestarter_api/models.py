"""Pydantic models for API requests and responses."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# Search Index Models
# =============================================================================


class SearchContent(BaseModel):
    """Searchable part of an indexed page."""

    model_config = ConfigDict(extra="allow")

    text: str = ""
    url: str = ""
    title: str = ""


class SearchDocument(BaseModel):
    """A document stored in, or returned by, the search index."""

    id: str = Field(..., description="Document ID (<namespace>-<n>)")
    score: float = Field(default=0.0, description="Relevance score from the index")
    content: SearchContent = Field(default_factory=SearchContent)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def namespace(self) -> str | None:
        return self.metadata.get("namespace")


class Source(BaseModel):
    """A page cited in an answer."""

    url: str
    title: str
    snippet: str


# =============================================================================
# Firestarter API Models
# =============================================================================


class CreateRequest(BaseModel):
    """Request body for crawling and indexing a website."""

    model_config = ConfigDict(populate_by_name=True)

    url: str = Field(..., min_length=1, description="Website URL to crawl")
    limit: int = Field(default=10, ge=1, le=100, description="Maximum pages to crawl")
    include_paths: list[str] | None = Field(default=None, alias="includePaths")
    exclude_paths: list[str] | None = Field(default=None, alias="excludePaths")


class ChatMessage(BaseModel):
    """A single message in an OpenAI-style conversation."""

    model_config = ConfigDict(extra="allow")

    role: str = Field(default="user", description="Message role")
    content: str | None = Field(default="", description="Message content")
    name: str | None = None


class QueryRequest(BaseModel):
    """Request body for the RAG query endpoint."""

    query: str | None = None
    namespace: str | None = None
    stream: bool = False
    messages: list[ChatMessage] = Field(default_factory=list)


class QueryResponse(BaseModel):
    """Non-streaming RAG answer."""

    answer: str
    sources: list[Source] = Field(default_factory=list)


class RagStreamEvent(BaseModel):
    """Server-sent event for streaming RAG answers."""

    type: Literal["sources", "content", "done", "error"]
    sources: list[Source] | None = None
    content: str | None = None
    error: str | None = None


class IndexPageMetadata(BaseModel):
    """Descriptive metadata of the crawled site's first page."""

    model_config = ConfigDict(populate_by_name=True)

    title: str | None = None
    description: str | None = None
    favicon: str | None = None
    og_image: str | None = Field(default=None, alias="ogImage")


class IndexMetadata(BaseModel):
    """A crawled site registered in the index list."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    namespace: str = Field(..., min_length=1)
    pages_crawled: int = Field(default=0, alias="pagesCrawled")
    created_at: str = Field(default="", alias="createdAt")
    metadata: IndexPageMetadata = Field(default_factory=IndexPageMetadata)

    def to_client(self) -> dict[str, Any]:
        """Serialize with the camelCase keys the web client expects."""
        return self.model_dump(by_alias=True)


# =============================================================================
# Chat Completions Models
# =============================================================================


class ChatCompletionRequest(BaseModel):
    """OpenAI-compatible chat completion request."""

    model_config = ConfigDict(extra="allow")

    model: str | None = None
    messages: list[ChatMessage] = Field(default_factory=list)
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = False

    def message_dicts(self) -> list[dict[str, str]]:
        return [m.model_dump(exclude_none=True) for m in self.messages]

    def last_user_content(self) -> str:
        for message in reversed(self.messages):
            if message.role == "user":
                return message.content or ""
        return ""


# =============================================================================
# Scrape Models
# =============================================================================


class ScrapeRequest(BaseModel):
    """Single or batch scrape request; extra fields pass through to Firecrawl."""

    model_config = ConfigDict(extra="allow")

    url: str | None = None
    urls: list[str] | None = None

    def passthrough_params(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


# =============================================================================
# Health API Models
# =============================================================================


class HealthResponse(BaseModel):
    """Response for health check endpoint."""

    status: Literal["healthy", "degraded", "unhealthy"] = Field(..., description="Service status")
    search_connected: bool = Field(..., description="Search index reachable")
    redis_connected: bool | None = Field(None, description="Redis reachable (None when unused)")
    providers: list[str] = Field(..., description="Configured LLM providers in priority order")
    version: str = Field(..., description="API version")
