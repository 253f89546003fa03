"""Tests for FastAPI main application."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from firestarter_api.firecrawl_client import FirecrawlAuthError, FirecrawlError
from firestarter_api.indexing import build_documents
from firestarter_api.llm_client import LLMClient, LLMError, LLMRateLimitError, LLMResponse
from firestarter_api.main import app, limiter
from firestarter_api.rag import NO_CONTENT_ANSWER
from firestarter_api.search_client import SearchClient

NAMESPACE = "example-com-1"


@pytest.fixture
def client():
    """Create test client."""
    with TestClient(app) as client:
        yield client


@pytest.fixture
def seeded(make_page):
    """Index two pages of example.com under NAMESPACE."""
    pages = [
        make_page(
            "https://example.com",
            title="Home",
            markdown="Firestarter turns any website into a chatbot. Pricing includes a free plan.",
        ),
        make_page("https://example.com/docs", title="Docs", markdown="Getting started guide. " * 8),
    ]
    asyncio.run(SearchClient().upsert(build_documents(pages, NAMESPACE)))
    return pages


def _firecrawl(**methods) -> MagicMock:
    """Patchable FirecrawlClient class whose context manager yields mocks."""
    instance = MagicMock()
    for name, mock in methods.items():
        setattr(instance, name, mock)
    factory = MagicMock()
    factory.return_value.__aenter__.return_value = instance
    factory.return_value.__aexit__.return_value = None
    return factory


def _sse_payloads(text: str) -> list:
    payloads = []
    for line in text.splitlines():
        if line.startswith("data: ") and line != "data: [DONE]":
            payloads.append(json.loads(line[len("data: ") :]))
    return payloads


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["search_connected"] is True
        assert data["redis_connected"] is None
        assert data["providers"] == []
        assert data["status"] == "degraded"

    def test_healthy_with_provider(self, client, mock_settings):
        mock_settings(groq_api_key="gsk-test")
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["providers"] == ["groq"]

    def test_trace_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Trace-ID": "trace-123"})
        assert response.headers["X-Trace-ID"] == "trace-123"


class TestConfigEndpoints:
    """Tests for browser configuration and credential status."""

    def test_client_config(self, client):
        data = client.get("/api/config").json()
        assert data["crawling"]["defaultLimit"] == 10
        assert data["crawling"]["limitOptions"] == [10, 25, 50, 100]
        assert "maxContextDocs" in data["search"]

    def test_check_env_never_exposes_values(self, client, mock_settings):
        mock_settings(openai_api_key="sk-secret", firestarter_disable_creation_dashboard="true")
        response = client.get("/api/check-env")

        status = response.json()["environmentStatus"]
        assert status["OPENAI_API_KEY"] is True
        assert status["GROQ_API_KEY"] is False
        assert status["DISABLE_CHATBOT_CREATION"] is True
        assert "sk-secret" not in response.text


class TestCreateEndpoint:
    """Tests for crawl-and-index."""

    def test_create_crawls_and_indexes(self, client, mock_settings, make_page):
        mock_settings(firecrawl_api_key="fc-test")
        pages = [
            make_page("https://example.com", title="Home", markdown="Welcome home"),
            make_page("https://example.com/about", title="About", markdown="About us"),
        ]
        crawl = AsyncMock(return_value={"success": True, "status": "completed", "data": pages})

        with patch("firestarter_api.main.FirecrawlClient", _firecrawl(crawl=crawl)):
            response = client.post(
                "/api/firestarter/create",
                json={"url": "https://example.com", "limit": 2, "includePaths": ["/about"]},
            )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["namespace"].startswith("example-com-")
        assert data["crawlId"].startswith("immediate-")
        assert data["details"]["pagesCrawled"] == 2
        assert data["message"] == "Crawl completed successfully (limited to 2 pages)"
        assert crawl.await_args.kwargs["include_paths"] == ["/about"]

        indexes = client.get("/api/indexes").json()["indexes"]
        assert indexes[0]["namespace"] == data["namespace"]
        assert indexes[0]["pagesCrawled"] == 2
        assert indexes[0]["metadata"]["title"] == "Home"

        answer = client.post(
            "/api/firestarter/query",
            json={"query": "welcome home", "namespace": data["namespace"]},
        ).json()
        assert answer["sources"]

    def test_header_api_key(self, client, make_page):
        crawl = AsyncMock(return_value={"data": [make_page("https://example.com")]})
        factory = _firecrawl(crawl=crawl)

        with patch("firestarter_api.main.FirecrawlClient", factory):
            response = client.post(
                "/api/firestarter/create",
                json={"url": "https://example.com"},
                headers={"X-Firecrawl-API-Key": "fc-header"},
            )

        assert response.status_code == 200
        factory.assert_called_once_with("fc-header")
        assert crawl.await_args.args == ("https://example.com", 10)

    def test_creation_disabled(self, client, mock_settings):
        mock_settings(firestarter_disable_creation_dashboard="true", firecrawl_api_key="fc")
        response = client.post("/api/firestarter/create", json={"url": "https://example.com"})
        assert response.status_code == 403
        assert response.json()["error"] == "Dashboard creation is disabled for Firestarter."

    def test_missing_api_key(self, client):
        response = client.post("/api/firestarter/create", json={"url": "https://example.com"})
        assert response.status_code == 500
        assert "API key" in response.json()["error"]

    def test_invalid_url(self, client, mock_settings):
        mock_settings(firecrawl_api_key="fc-test")
        response = client.post("/api/firestarter/create", json={"url": "not a url"})
        assert response.status_code == 400

    def test_invalid_body(self, client):
        response = client.post("/api/firestarter/create", json={"limit": 5})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request format."

    def test_firecrawl_auth_error(self, client, mock_settings):
        mock_settings(firecrawl_api_key="fc-bad")
        crawl = AsyncMock(side_effect=FirecrawlAuthError("Unauthorized: Invalid token"))

        with patch("firestarter_api.main.FirecrawlClient", _firecrawl(crawl=crawl)):
            response = client.post("/api/firestarter/create", json={"url": "https://example.com"})

        assert response.status_code == 401
        assert response.json()["error"] == (
            "Firecrawl authentication failed. Please check your API key."
        )

    def test_firecrawl_error(self, client, mock_settings):
        mock_settings(firecrawl_api_key="fc-test")
        crawl = AsyncMock(side_effect=FirecrawlError("Job failed: blocked", 200))

        with patch("firestarter_api.main.FirecrawlClient", _firecrawl(crawl=crawl)):
            response = client.post("/api/firestarter/create", json={"url": "https://example.com"})

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to start crawl", "details": "Job failed: blocked"}


class TestQueryEndpoint:
    """Tests for the RAG query endpoint."""

    def test_requires_query_and_namespace(self, client):
        response = client.post("/api/firestarter/query", json={"query": "hi"})
        assert response.status_code == 400
        assert response.json()["error"] == "Query and namespace are required"

    def test_json_answer(self, client, seeded):
        response = client.post(
            "/api/firestarter/query",
            json={"query": "pricing plan", "namespace": NAMESPACE},
        )
        assert response.status_code == 200

        data = response.json()
        assert "mock" in data["answer"].lower()
        assert {s["url"] for s in data["sources"]} == {
            "https://example.com",
            "https://example.com/docs",
        }

    def test_unknown_namespace(self, client):
        data = client.post(
            "/api/firestarter/query", json={"query": "anything", "namespace": "missing-1"}
        ).json()
        assert data == {"answer": NO_CONTENT_ANSWER, "sources": []}

    def test_streaming_events(self, client, seeded):
        response = client.post(
            "/api/firestarter/query",
            json={"query": "pricing plan", "namespace": NAMESPACE, "stream": True},
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        events = _sse_payloads(response.text)
        assert events[0]["type"] == "sources"
        assert events[1]["type"] == "content"
        assert events[-1] == {"type": "done"}

    def test_forced_provider_without_key(self, client, mock_settings, seeded):
        mock_settings(mock_llm="false")
        response = client.post(
            "/api/firestarter/query",
            json={"query": "pricing", "namespace": NAMESPACE},
            headers={"X-Use-Groq": "true"},
        )
        assert response.status_code == 500
        assert response.json()["error"] == "GROQ_API_KEY not set."


class TestChatCompletions:
    """Tests for the OpenAI-compatible endpoint."""

    def test_invalid_json(self, client):
        response = client.post(
            "/api/v1/chat/completions",
            content="not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid JSON"

    def test_invalid_shape(self, client):
        response = client.post("/api/v1/chat/completions", json={"messages": "hello"})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request format."

    def test_default_provider_completion(self, client):
        response = client.post(
            "/api/v1/chat/completions",
            json={"messages": [{"role": "user", "content": "Hello"}]},
        )
        assert response.status_code == 200

        data = response.json()
        assert data["object"] == "chat.completion"
        assert data["model"] == "gpt-4o"
        assert "mock" in data["choices"][0]["message"]["content"].lower()
        assert data["choices"][0]["finish_reason"] == "stop"

    def test_empty_messages(self, client):
        response = client.post("/api/v1/chat/completions", json={"messages": []})
        assert response.status_code == 400

    def test_no_provider(self, client, mock_settings):
        mock_settings(mock_llm="false")
        response = client.post(
            "/api/v1/chat/completions",
            json={"messages": [{"role": "user", "content": "Hello"}]},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "AI Provider not configured or invalid request."

    def test_streaming_completion(self, client):
        response = client.post(
            "/api/v1/chat/completions",
            json={"messages": [{"role": "user", "content": "Hello"}], "stream": True},
        )
        assert response.status_code == 200
        assert response.text.endswith("data: [DONE]\n\n")

        chunks = _sse_payloads(response.text)
        assert all(c["object"] == "chat.completion.chunk" for c in chunks)
        assert chunks[0]["choices"][0]["delta"]["role"] == "assistant"
        assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
        text = "".join(c["choices"][0]["delta"].get("content", "") for c in chunks)
        assert "mock" in text.lower()

    def test_header_forces_provider_and_model(self, client, mock_settings):
        mock_settings(groq_api_key="gsk-test", openai_api_key="sk-test")
        chat = AsyncMock(
            side_effect=LLMRateLimitError("Groq API error (429): slow down", 429)
        )

        with patch.object(LLMClient, "chat", chat):
            response = client.post(
                "/api/v1/chat/completions",
                json={"model": "llama-3.1-8b", "messages": [{"role": "user", "content": "Hi"}]},
                headers={"X-Use-Groq": "true"},
            )

        assert response.status_code == 429
        assert response.json()["error"].startswith("Error with Groq:")

    def test_streaming_provider_error_before_first_chunk(self, client, mock_settings):
        mock_settings(openai_api_key="sk-test")

        async def failing_stream(self, messages, temperature=None, max_tokens=None):
            raise LLMRateLimitError("OpenAI API error (429): slow down", 429)
            yield

        with patch.object(LLMClient, "chat_stream", failing_stream):
            response = client.post(
                "/api/v1/chat/completions",
                json={"messages": [{"role": "user", "content": "Hi"}], "stream": True},
            )

        assert response.status_code == 429
        assert response.json()["error"].startswith("Error with OpenAI:")

    def test_firecrawl_model(self, client, seeded):
        response = client.post(
            "/api/v1/chat/completions",
            json={
                "model": f"firecrawl-{NAMESPACE}",
                "messages": [{"role": "user", "content": "pricing plan"}],
            },
        )
        assert response.status_code == 200

        data = response.json()
        assert data["model"] == f"firecrawl-{NAMESPACE}"
        assert data["sources"]
        assert data["choices"][0]["message"]["content"]

    def test_firecrawl_model_streaming(self, client, seeded):
        response = client.post(
            "/api/v1/chat/completions",
            json={
                "model": f"firecrawl-{NAMESPACE}",
                "messages": [{"role": "user", "content": "pricing plan"}],
                "stream": True,
            },
        )
        chunks = _sse_payloads(response.text)
        assert chunks[0]["sources"]
        assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
        assert response.text.endswith("data: [DONE]\n\n")

    def test_firecrawl_model_without_namespace(self, client):
        response = client.post(
            "/api/v1/chat/completions",
            json={"model": "firecrawl-", "messages": [{"role": "user", "content": "Hi"}]},
        )
        assert response.status_code == 400
        assert "firecrawl-NAMESPACE" in response.json()["error"]


    def test_followup_questions(self, client, mock_settings):
        mock_settings(followup_count="3")
        response = client.post(
            "/api/v1/chat/completions",
            json={"messages": [{"role": "user", "content": "Tell me about pricing"}]},
        )
        assert response.status_code == 200
        assert "mock" in response.json()["followup"].lower()

    def test_no_followup_when_streaming(self, client, mock_settings):
        mock_settings(followup_count="3")
        response = client.post(
            "/api/v1/chat/completions",
            json={"messages": [{"role": "user", "content": "Hello"}], "stream": True},
        )
        assert response.status_code == 200
        assert all("followup" not in chunk for chunk in _sse_payloads(response.text))

    def test_followup_failure_is_omitted(self, client, mock_settings):
        mock_settings(followup_count="3", openai_api_key="sk-test")
        chat = AsyncMock(
            side_effect=[
                LLMResponse(content="Plans start free.", model="gpt-4o", finish_reason="stop"),
                LLMError("OpenAI API error (500): upstream", 500),
            ]
        )

        with patch.object(LLMClient, "chat", chat):
            response = client.post(
                "/api/v1/chat/completions",
                json={"messages": [{"role": "user", "content": "Pricing?"}]},
            )

        assert response.status_code == 200
        data = response.json()
        assert data["choices"][0]["message"]["content"] == "Plans start free."
        assert "followup" not in data
        assert chat.await_count == 2
        followup_messages = chat.await_args_list[1].args[0]
        assert "3" in followup_messages[0]["content"]
        assert followup_messages[1] == {"role": "user", "content": "Pricing?"}


class TestScrapeEndpoint:
    """Tests for the scrape passthrough."""

    def test_missing_api_key(self, client):
        response = client.post("/api/scrape", json={"url": "https://example.com"})
        assert response.status_code == 500
        assert response.json()["success"] is False

    def test_single_url(self, client, mock_settings):
        mock_settings(firecrawl_api_key="fc-test")
        scrape = AsyncMock(return_value={"success": True, "data": {"markdown": "# Home"}})

        with patch("firestarter_api.main.FirecrawlClient", _firecrawl(scrape=scrape)):
            response = client.post(
                "/api/scrape", json={"url": "https://example.com", "formats": ["markdown"]}
            )

        assert response.status_code == 200
        assert response.json()["data"]["markdown"] == "# Home"
        scrape.assert_awaited_once_with("https://example.com", formats=["markdown"])

    def test_batch(self, client, mock_settings):
        mock_settings(firecrawl_api_key="fc-test")
        batch = AsyncMock(return_value={"success": True, "data": []})

        with patch("firestarter_api.main.FirecrawlClient", _firecrawl(batch_scrape=batch)):
            response = client.post("/api/scrape", json={"urls": ["https://a.test"]})

        assert response.status_code == 200
        batch.assert_awaited_once_with(["https://a.test"])

    def test_no_url(self, client, mock_settings):
        mock_settings(firecrawl_api_key="fc-test")
        with patch("firestarter_api.main.FirecrawlClient", _firecrawl()):
            response = client.post("/api/scrape", json={"formats": ["markdown"]})
        assert response.status_code == 400

    def test_upstream_status_is_forwarded(self, client, mock_settings):
        mock_settings(firecrawl_api_key="fc-test")
        scrape = AsyncMock(side_effect=FirecrawlError("Payment required", 402))

        with patch("firestarter_api.main.FirecrawlClient", _firecrawl(scrape=scrape)):
            response = client.post("/api/scrape", json={"url": "https://example.com"})

        assert response.status_code == 402
        assert response.json()["success"] is False


class TestIndexesEndpoint:
    """Tests for the index list."""

    def test_save_list_delete(self, client):
        entry = {
            "url": "https://example.com",
            "namespace": NAMESPACE,
            "pagesCrawled": 3,
            "createdAt": "2025-01-01T00:00:00Z",
            "metadata": {"title": "Example", "ogImage": "/og.png"},
        }
        assert client.post("/api/indexes", json=entry).json() == {"success": True}

        indexes = client.get("/api/indexes").json()["indexes"]
        assert indexes == [
            {**entry, "metadata": {**entry["metadata"], "description": None, "favicon": None}}
        ]

        assert client.delete("/api/indexes", params={"namespace": NAMESPACE}).status_code == 200
        assert client.get("/api/indexes").json() == {"indexes": []}

    def test_delete_requires_namespace(self, client):
        response = client.delete("/api/indexes")
        assert response.status_code == 400
        assert response.json()["error"] == "Namespace is required"


class TestDebugEndpoint:
    """Tests for the search diagnostics endpoint."""

    def test_namespace_probes(self, client, seeded):
        data = client.get("/api/firestarter/debug", params={"namespace": NAMESPACE}).json()

        assert data["success"] is True
        assert data["results"]["namespaceSearch"]["count"] == 2
        assert data["results"]["allSearch"]["count"] == 2
        assert data["upstashUrl"] == "Not configured"


class TestMetricsEndpoint:
    """Tests for Prometheus metrics endpoint."""

    def test_metrics_endpoint(self, client):
        client.get("/health")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "http_requests_total" in response.text or "http_request" in response.text


class TestCORS:
    """Tests for CORS configuration."""

    def test_cors_headers(self, client):
        response = client.options(
            "/api/v1/chat/completions",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "X-Use-Groq",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


@pytest.fixture
def rate_limited():
    """Enable the limiter with empty counters for one test."""
    limiter.reset()
    limiter.enabled = True
    yield limiter
    limiter.enabled = False
    limiter.reset()


class TestRateLimiting:
    """Tests for per-client rate limits."""

    def test_create_limit_returns_429(self, client, mock_settings, rate_limited):
        mock_settings(firestarter_disable_creation_dashboard="true")
        headers = {"X-Forwarded-For": "203.0.113.7"}

        for _ in range(20):
            response = client.post(
                "/api/firestarter/create", json={"url": "https://example.com"}, headers=headers
            )
            assert response.status_code == 403

        response = client.post(
            "/api/firestarter/create", json={"url": "https://example.com"}, headers=headers
        )
        assert response.status_code == 429
        assert response.json() == {
            "success": False,
            "error": "Rate limit exceeded. Please try again later.",
        }

    def test_limits_are_per_client(self, client, mock_settings, rate_limited):
        mock_settings(firestarter_disable_creation_dashboard="true")
        for _ in range(20):
            client.post(
                "/api/firestarter/create",
                json={"url": "https://example.com"},
                headers={"X-Forwarded-For": "203.0.113.7"},
            )

        response = client.post(
            "/api/firestarter/create",
            json={"url": "https://example.com"},
            headers={"X-Forwarded-For": "198.51.100.2, 10.0.0.1"},
        )
        assert response.status_code == 403
