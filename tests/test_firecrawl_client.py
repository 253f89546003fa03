"""Tests for the Firecrawl client."""

import json

import httpx
import pytest

from firestarter_api.firecrawl_client import FirecrawlAuthError, FirecrawlClient, FirecrawlError

BASE_URL = "https://api.firecrawl.test"


def _client(handler, timeout: float = 5.0) -> FirecrawlClient:
    client = FirecrawlClient("fc-key", base_url=BASE_URL, poll_interval=0, timeout=timeout)
    client._client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return client


class TestCrawl:
    """Crawl jobs."""

    @pytest.mark.asyncio
    async def test_crawl_polls_and_follows_pagination(self) -> None:
        requests: list[tuple[str, str]] = []
        started: dict = {}
        polls = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append((request.method, request.url.path))
            if request.method == "POST":
                started.update(json.loads(request.content))
                return httpx.Response(200, json={"success": True, "id": "job-1"})
            if request.url.path == "/v1/crawl/job-1":
                polls["count"] += 1
                if polls["count"] == 1:
                    return httpx.Response(200, json={"status": "scraping", "completed": 1, "total": 3})
                return httpx.Response(
                    200,
                    json={
                        "status": "completed",
                        "total": 3,
                        "completed": 3,
                        "data": [{"markdown": "one"}, {"markdown": "two"}],
                        "next": f"{BASE_URL}/v1/crawl/job-1/page-2",
                    },
                )
            return httpx.Response(200, json={"data": [{"markdown": "three"}], "next": None})

        client = _client(handler)
        result = await client.crawl(
            "https://example.com", 3, include_paths=["/docs/*"], exclude_paths=None
        )
        await client.close()

        assert started["url"] == "https://example.com"
        assert started["limit"] == 3
        assert started["scrapeOptions"] == {"formats": ["markdown", "html"], "maxAge": 604800}
        assert started["includePaths"] == ["/docs/*"]
        assert "excludePaths" not in started
        assert polls["count"] == 2
        assert [page["markdown"] for page in result["data"]] == ["one", "two", "three"]
        assert result["status"] == "completed"
        assert ("GET", "/v1/crawl/job-1/page-2") in requests

    @pytest.mark.asyncio
    async def test_failed_job(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(200, json={"success": True, "id": "job-2"})
            return httpx.Response(200, json={"status": "failed", "error": "blocked"})

        client = _client(handler)
        with pytest.raises(FirecrawlError, match="failed"):
            await client.crawl("https://example.com", 10)
        await client.close()

    @pytest.mark.asyncio
    async def test_job_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(200, json={"success": True, "id": "job-3"})
            return httpx.Response(200, json={"status": "scraping"})

        client = _client(handler, timeout=0.01)
        client._poll_interval = 0.02
        with pytest.raises(FirecrawlError, match="did not complete"):
            await client.crawl("https://example.com", 10)
        await client.close()

    @pytest.mark.asyncio
    async def test_unauthorized(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"success": False, "error": "Invalid token"})

        client = _client(handler)
        with pytest.raises(FirecrawlAuthError) as exc_info:
            await client.crawl("https://example.com", 10)
        await client.close()
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_other_http_error_keeps_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(402, json={"error": "Payment required"})

        client = _client(handler)
        with pytest.raises(FirecrawlError) as exc_info:
            await client.crawl("https://example.com", 10)
        await client.close()
        assert exc_info.value.status_code == 402
        assert not isinstance(exc_info.value, FirecrawlAuthError)


class TestScrape:
    """Single and batch scrapes."""

    @pytest.mark.asyncio
    async def test_scrape_passes_params(self) -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "data": {"markdown": "# Hi"}})

        client = _client(handler)
        result = await client.scrape("https://example.com", formats=["markdown"])
        await client.close()

        assert seen["path"] == "/v1/scrape"
        assert seen["body"] == {"url": "https://example.com", "formats": ["markdown"]}
        assert result["data"]["markdown"] == "# Hi"

    @pytest.mark.asyncio
    async def test_batch_scrape_waits_for_job(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                assert json.loads(request.content)["urls"] == ["https://a.test", "https://b.test"]
                return httpx.Response(200, json={"success": True, "id": "batch-1"})
            assert request.url.path == "/v1/batch/scrape/batch-1"
            return httpx.Response(
                200, json={"status": "completed", "data": [{"markdown": "a"}, {"markdown": "b"}]}
            )

        client = _client(handler)
        result = await client.batch_scrape(["https://a.test", "https://b.test"])
        await client.close()

        assert result["success"] is True
        assert len(result["data"]) == 2

    @pytest.mark.asyncio
    async def test_unauthorized_with_non_object_body(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json=["Invalid token"])

        client = _client(handler)
        with pytest.raises(FirecrawlAuthError) as exc_info:
            await client.scrape("https://example.com")
        await client.close()
        assert exc_info.value.status_code == 401
        assert "Invalid token" in str(exc_info.value)
