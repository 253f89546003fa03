"""Async client for the Firecrawl v1 REST API.

Crawls and batch scrapes are asynchronous jobs on Firecrawl's side: the client
starts the job, polls its status until it completes, and follows the ``next``
links of large results so callers always receive every page.
"""

import asyncio
import time
from typing import Any

import httpx
import structlog

from firestarter_api.config import get_settings
from firestarter_api.observability import get_trace_id

logger = structlog.get_logger()

CRAWL_FORMATS = ["markdown", "html"]

_DONE_STATUSES = {"completed"}
_FAILED_STATUSES = {"failed", "cancelled"}


class FirecrawlError(Exception):
    """Base exception for Firecrawl client errors."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class FirecrawlAuthError(FirecrawlError):
    """Raised when Firecrawl rejects the API key."""

    pass


class FirecrawlClient:
    """Async client bound to one Firecrawl API key."""

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        poll_interval: float | None = None,
        timeout: float | None = None,
    ):
        """Initialize the client.

        Args:
            api_key: Firecrawl API key (from the environment or the caller).
            base_url: API root. Defaults to config value.
            poll_interval: Seconds between job status polls. Defaults to config value.
            timeout: Overall deadline for a crawl job in seconds. Defaults to config value.
        """
        settings = get_settings()
        self._api_key = api_key
        self._base_url = (base_url or settings.firecrawl_base_url).rstrip("/")
        self._poll_interval = (
            settings.crawl_poll_interval_seconds if poll_interval is None else poll_interval
        )
        self._timeout = timeout or settings.crawl_timeout_seconds
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "FirecrawlClient":
        await self.connect()
        return self

    async def __aexit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(60.0, connect=10.0),
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, body: dict[str, Any] | None = None) -> dict:
        if self._client is None:
            await self.connect()
        try:
            response = await self._client.request(method, url, json=body)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            self._handle_http_error(e)
            raise
        except httpx.HTTPError as e:
            logger.error("Firecrawl transport error", url=url, error=str(e))
            raise FirecrawlError(f"Firecrawl request failed: {e}") from e

    def _handle_http_error(self, error: httpx.HTTPStatusError) -> None:
        """Translate HTTP errors from Firecrawl into client errors."""
        status = error.response.status_code
        try:
            detail = error.response.json().get("error") or str(error)
        except (ValueError, AttributeError):
            detail = error.response.text or str(error)

        logger.error("Firecrawl API error", trace_id=get_trace_id(), status=status, detail=detail)

        if status == 401:
            raise FirecrawlAuthError(f"Unauthorized: {detail}", status_code=status)
        raise FirecrawlError(f"Firecrawl API error ({status}): {detail}", status_code=status)

    async def crawl(
        self,
        url: str,
        limit: int,
        include_paths: list[str] | None = None,
        exclude_paths: list[str] | None = None,
    ) -> dict[str, Any]:
        """Crawl a website and wait for the result.

        Args:
            url: Site root to start from.
            limit: Maximum number of pages.
            include_paths: Optional path patterns to restrict the crawl to.
            exclude_paths: Optional path patterns to skip.

        Returns:
            The final job status with every crawled page under ``data``.

        Raises:
            FirecrawlAuthError: If the API key is rejected.
            FirecrawlError: If the job fails or does not finish in time.
        """
        settings = get_settings()
        body: dict[str, Any] = {
            "url": url,
            "limit": limit,
            "scrapeOptions": {
                "formats": CRAWL_FORMATS,
                "maxAge": settings.cache_max_age,
            },
        }
        if include_paths:
            body["includePaths"] = include_paths
        if exclude_paths:
            body["excludePaths"] = exclude_paths

        started = await self._request("POST", "/v1/crawl", body)
        job_id = started.get("id")
        if not started.get("success", True) or not job_id:
            raise FirecrawlError(f"Failed to start crawl: {started.get('error', 'no job id')}")

        logger.info("crawl_started", trace_id=get_trace_id(), url=url, limit=limit, job_id=job_id)
        result = await self._wait_for_job(f"/v1/crawl/{job_id}")
        logger.info(
            "crawl_completed",
            trace_id=get_trace_id(),
            job_id=job_id,
            pages=len(result.get("data", [])),
        )
        return result

    async def scrape(self, url: str, **params: Any) -> dict[str, Any]:
        """Scrape a single URL; ``params`` are Firecrawl scrape options."""
        return await self._request("POST", "/v1/scrape", {"url": url, **params})

    async def batch_scrape(self, urls: list[str], **params: Any) -> dict[str, Any]:
        """Scrape several URLs as one job and wait for the result."""
        started = await self._request("POST", "/v1/batch/scrape", {"urls": urls, **params})
        job_id = started.get("id")
        if not job_id:
            raise FirecrawlError(f"Failed to start batch scrape: {started.get('error', 'no job id')}")
        return await self._wait_for_job(f"/v1/batch/scrape/{job_id}")

    async def _wait_for_job(self, status_url: str) -> dict[str, Any]:
        """Poll a job until it completes, then collect every result page."""
        deadline = time.monotonic() + self._timeout

        while True:
            status = await self._request("GET", status_url)
            state = status.get("status")
            if state in _DONE_STATUSES:
                break
            if state in _FAILED_STATUSES:
                raise FirecrawlError(f"Job {state}: {status.get('error', 'no details')}")
            if time.monotonic() >= deadline:
                raise FirecrawlError(f"Job did not complete within {self._timeout:.0f}s")
            logger.debug(
                "Waiting for Firecrawl job",
                status=state,
                completed=status.get("completed"),
                total=status.get("total"),
            )
            await asyncio.sleep(self._poll_interval)

        data = list(status.get("data") or [])
        next_url = status.get("next")
        while next_url:
            page = await self._request("GET", next_url)
            data.extend(page.get("data") or [])
            next_url = page.get("next")

        return {
            "success": True,
            "status": status.get("status"),
            "total": status.get("total", len(data)),
            "completed": status.get("completed", len(data)),
            "creditsUsed": status.get("creditsUsed"),
            "expiresAt": status.get("expiresAt"),
            "data": data,
        }
