"""Async client for the Upstash Search REST API."""

import asyncio
import re
import threading
import time
from typing import Any

import httpx
import structlog
from prometheus_client import Histogram
from pydantic import ValidationError

from firestarter_api.config import get_settings
from firestarter_api.models import SearchDocument
from firestarter_api.observability import get_trace_id

logger = structlog.get_logger()

search_latency = Histogram(
    "search_latency_seconds",
    "Upstash Search latency in seconds",
    ["operation"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

UPSERT_PATH = "upsert-data"
SEARCH_PATH = "search"

_FILTER_RE = re.compile(r'^\s*metadata\.(\w+)\s*=\s*"([^"]*)"\s*$')


class SearchClientError(Exception):
    """Base exception for search client errors."""

    pass


class SearchConnectionError(SearchClientError):
    """Raised when the search service is unreachable or not configured."""

    pass


class SearchError(SearchClientError):
    """Raised when a search or upsert operation fails."""

    pass


# In-process index used when MOCK_SEARCH_CLIENT=true
_mock_index: dict[str, SearchDocument] = {}
_mock_lock = threading.Lock()


def reset_mock_index() -> None:
    """Drop every document from the in-process index (for testing)."""
    with _mock_lock:
        _mock_index.clear()


def namespace_filter(namespace: str) -> str:
    """Filter expression matching documents of one namespace."""
    return f'metadata.namespace = "{namespace}"'


class SearchClient:
    """Async client for one Upstash Search index."""

    def __init__(
        self,
        url: str | None = None,
        token: str | None = None,
        index_name: str | None = None,
        timeout: float | None = None,
    ):
        """Initialize the search client.

        Args:
            url: Upstash Search REST URL. Defaults to config value.
            token: Upstash Search REST token. Defaults to config value.
            index_name: Index holding the crawled documents. Defaults to config value.
            timeout: Request timeout in seconds. Defaults to config value.
        """
        settings = get_settings()
        self._url = (url or settings.upstash_search_rest_url).rstrip("/")
        self._token = token or settings.upstash_search_rest_token
        self._index_name = index_name or settings.search_index_name
        self._timeout = timeout or settings.search_timeout_seconds
        self._client: httpx.AsyncClient | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self._url and self._token)

    @property
    def is_mock(self) -> bool:
        return not self.is_configured and get_settings().mock_search_client

    async def connect(self) -> None:
        """Create the HTTP client."""
        if self.is_mock:
            logger.info("MOCK_SEARCH_CLIENT=true: Using in-process search index")
            return
        if not self.is_configured or self._client is not None:
            return

        self._client = httpx.AsyncClient(
            base_url=self._url,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(self._timeout, connect=5.0),
        )
        logger.info("Connected to search service", index=self._index_name)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Closed search connection")

    async def _ensure_client(self) -> httpx.AsyncClient:
        if not self.is_configured:
            error_msg = (
                "Search service not configured with MOCK_SEARCH_CLIENT=false. Either set "
                "UPSTASH_SEARCH_REST_URL and UPSTASH_SEARCH_REST_TOKEN or set "
                "MOCK_SEARCH_CLIENT=true for testing."
            )
            logger.error(error_msg)
            raise SearchConnectionError(error_msg)
        if self._client is None:
            await self.connect()
        return self._client

    async def _post(self, operation: str, path: str, body: Any) -> Any:
        client = await self._ensure_client()
        start_time = time.time()
        try:
            response = await client.post(f"/{path}/{self._index_name}", json=body)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "search_error",
                trace_id=get_trace_id(),
                operation=operation,
                status=e.response.status_code,
                detail=e.response.text[:200],
            )
            raise SearchError(
                f"{operation} failed ({e.response.status_code}): {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            logger.error(
                "search_error", trace_id=get_trace_id(), operation=operation, error=str(e)
            )
            raise SearchConnectionError(f"{operation} failed: {e}") from e
        finally:
            search_latency.labels(operation=operation).observe(time.time() - start_time)

    async def upsert(self, documents: list[dict[str, Any]]) -> str:
        """Insert or replace documents.

        Args:
            documents: Dicts with ``id``, ``content`` and ``metadata`` keys.

        Returns:
            The service's result string ("Success" on success).

        Raises:
            SearchError: If the service rejects the batch.
            SearchConnectionError: If the service is unreachable or not configured.
        """
        if self.is_mock:
            return self._mock_upsert(documents)

        data = await self._post("upsert", UPSERT_PATH, documents)
        result = data.get("result", "") if isinstance(data, dict) else str(data)
        logger.info("search_upsert", trace_id=get_trace_id(), documents=len(documents))
        return result

    async def search(
        self,
        query: str,
        limit: int = 10,
        filter: str | None = None,
    ) -> list[SearchDocument]:
        """Search the index.

        Args:
            query: Natural language search query.
            limit: Maximum number of results to return.
            filter: Optional filter expression, e.g. ``metadata.namespace = "x"``.

        Returns:
            Documents ordered by relevance score, best first.

        Raises:
            SearchError: If the search fails.
            SearchConnectionError: If the service is unreachable or not configured.
        """
        if self.is_mock:
            return self._mock_search(query, limit, filter)

        body: dict[str, Any] = {
            "query": query,
            "topK": limit,
            "includeData": True,
            "includeMetadata": True,
        }
        if filter:
            body["filter"] = filter

        data = await self._post("search", SEARCH_PATH, body)
        raw_results = data.get("result", []) if isinstance(data, dict) else data

        documents = []
        for raw in raw_results or []:
            if "content" not in raw and "data" in raw:
                raw = {**raw, "content": raw["data"]}
            try:
                documents.append(SearchDocument.model_validate(raw))
            except ValidationError as e:
                logger.warning("Skipping malformed search result", id=raw.get("id"), error=str(e))

        logger.info(
            "search_query",
            trace_id=get_trace_id(),
            query_preview=query[:50],
            limit=limit,
            filtered=bool(filter),
            hits=len(documents),
        )
        return documents

    async def is_healthy(self) -> bool:
        """Check that the index answers a trivial query."""
        try:
            await self.search("health", limit=1)
            return True
        except SearchClientError:
            return False

    def _mock_upsert(self, documents: list[dict[str, Any]]) -> str:
        with _mock_lock:
            for raw in documents:
                document = SearchDocument.model_validate(raw)
                _mock_index[document.id] = document
        return "Success"

    def _mock_search(self, query: str, limit: int, filter: str | None) -> list[SearchDocument]:
        """Score documents by the share of query terms found in their text."""
        field_name = value = None
        if filter:
            match = _FILTER_RE.match(filter)
            if not match:
                raise SearchError(f"Unsupported filter expression: {filter}")
            field_name, value = match.groups()

        terms = {t for t in re.findall(r"\w+", query.lower()) if len(t) > 1}

        with _mock_lock:
            candidates = list(_mock_index.values())

        scored = []
        for document in candidates:
            if field_name and str(document.metadata.get(field_name)) != value:
                continue
            haystack = " ".join(
                [document.content.text, document.content.title, document.content.url]
            ).lower()
            hits = sum(1 for term in terms if term in haystack)
            if terms and hits == 0 and not field_name:
                continue
            score = hits / len(terms) if terms else 0.0
            scored.append(document.model_copy(update={"score": round(score, 4)}))

        scored.sort(key=lambda d: d.score, reverse=True)
        return scored[:limit]


# Global client instance
_search_client: SearchClient | None = None
_search_client_lock = asyncio.Lock()


async def get_search_client() -> SearchClient:
    """Get or create the global search client instance."""
    global _search_client
    async with _search_client_lock:
        if _search_client is None:
            client = SearchClient()
            await client.connect()
            _search_client = client
    return _search_client


async def close_search_client() -> None:
    """Close the global search client."""
    global _search_client
    if _search_client:
        await _search_client.close()
        _search_client = None


def reset_search_client() -> None:
    """Reset the global search client (for testing)."""
    global _search_client, _search_client_lock
    _search_client = None
    _search_client_lock = asyncio.Lock()
