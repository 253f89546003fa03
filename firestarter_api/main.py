"""FastAPI application entrypoint for the Firestarter API."""

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from fastapi import FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_fastapi_instrumentator import Instrumentator
from pydantic import ValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from firestarter_api import __version__
from firestarter_api.config import get_settings
from firestarter_api.firecrawl_client import FirecrawlAuthError, FirecrawlClient, FirecrawlError
from firestarter_api.index_store import (
    close_index_store,
    delete_index,
    get_index_store,
    get_indexes,
    save_index,
)
from firestarter_api.indexing import (
    build_documents,
    index_metadata,
    make_namespace,
    store_documents,
    verify_documents,
)
from firestarter_api.llm_client import LLMClient, LLMError
from firestarter_api.models import (
    ChatCompletionRequest,
    CreateRequest,
    HealthResponse,
    IndexMetadata,
    QueryRequest,
    ScrapeRequest,
)
from firestarter_api.observability import (
    configure_logging,
    generate_trace_id,
    log_llm_request,
    log_llm_response,
    set_trace_id,
)
from firestarter_api.providers import (
    PROVIDERS,
    NoProviderConfigured,
    ProviderKeyMissing,
    ProviderSelection,
    configured_providers,
    provider_from_headers,
    resolve_forced_provider,
    select_provider,
)
from firestarter_api.rag import answer_query, stream_answer
from firestarter_api.search_client import (
    SearchClientError,
    close_search_client,
    get_search_client,
    namespace_filter,
)
from firestarter_api.streaming import (
    SSE_HEADERS,
    chat_completion,
    openai_stream,
    prime,
    rag_openai_stream,
    sse,
)

settings = get_settings()
configure_logging(settings.log_level)

logger = structlog.get_logger()

FIRECRAWL_MODEL_PREFIX = "firecrawl-"
FOLLOWUP_MAX_TOKENS = 128


def client_ip(request: Request) -> str:
    """Rate-limit key: first forwarded address, then X-Real-IP, then the peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or get_remote_address(request)


# Rate limiter (fixed window per client IP, shared through Redis when configured)
limiter = Limiter(
    key_func=client_ip,
    storage_uri=settings.redis_url or "memory://",
    enabled=settings.rate_limit_enabled,
)


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting Firestarter API", version=__version__)

    await get_search_client()
    get_index_store()

    providers = configured_providers(get_settings())
    if providers:
        logger.info("LLM providers configured", providers=providers)
    else:
        logger.warning("No LLM provider configured", mock_llm=get_settings().mock_llm)

    yield

    logger.info("Shutting down Firestarter API")
    await close_search_client()
    await close_index_store()


# Create FastAPI app
app = FastAPI(
    title="Firestarter API",
    description="Crawl websites into a search index and chat with them",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Use-Groq",
        "X-Use-OpenAI",
        "X-Use-Google-AI",
        "X-Use-Anthropic",
        "X-Firecrawl-API-Key",
        "X-Trace-ID",
    ],
    expose_headers=["X-Trace-ID"],
)


# Trace ID middleware for request correlation
@app.middleware("http")
async def trace_id_middleware(request: Request, call_next):
    """Add trace ID to every request for log correlation."""
    trace_id = request.headers.get("X-Trace-ID") or generate_trace_id()
    set_trace_id(trace_id)

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(trace_id=trace_id)

    response = await call_next(request)
    response.headers["X-Trace-ID"] = trace_id
    return response


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("Rate limit exceeded", path=request.url.path, limit=str(exc.detail))
    return JSONResponse(
        status_code=429,
        content={"success": False, "error": "Rate limit exceeded. Please try again later."},
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request format.", "details": jsonable_encoder(exc.errors())},
    )


app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)

# Add Prometheus metrics
Instrumentator().instrument(app).expose(app)


async def _json_body(request: Request) -> Any:
    """Parse the request body, returning None when it is not valid JSON."""
    try:
        return await request.json()
    except ValueError:
        return None


# =============================================================================
# Health & Config Endpoints
# =============================================================================


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check the health of the API and its dependencies."""
    current = get_settings()

    search_client = await get_search_client()
    search_connected = await search_client.is_healthy()

    redis_connected = None
    if current.enable_redis:
        redis_connected = await get_index_store().ping()

    providers = configured_providers(current)
    if search_connected and providers and redis_connected is not False:
        status = "healthy"
    elif search_connected:
        status = "degraded"
    else:
        status = "unhealthy"

    return HealthResponse(
        status=status,
        search_connected=search_connected,
        redis_connected=redis_connected,
        providers=providers,
        version=__version__,
    )


@app.get("/api/config")
async def get_client_config() -> dict:
    """Configuration safe to expose to the browser."""
    return get_settings().client_config()


@app.get("/api/check-env")
async def check_env() -> dict:
    """Report which credentials are present (never their values)."""
    current = get_settings()
    status = {
        "FIRECRAWL_API_KEY": bool(current.firecrawl_api_key),
        **{p.env_var: bool(p.api_key(current)) for p in PROVIDERS.values()},
        "UPSTASH_SEARCH_REST_URL": bool(current.upstash_search_rest_url),
        "UPSTASH_SEARCH_REST_TOKEN": bool(current.upstash_search_rest_token),
        "REDIS_URL": bool(current.redis_url),
        "DISABLE_CHATBOT_CREATION": not current.enable_creation,
    }
    return {"environmentStatus": status}


# =============================================================================
# Firestarter Endpoints
# =============================================================================


@app.post("/api/firestarter/create")
@limiter.limit(settings.rate_limit_create)
async def create(request: Request, create_request: CreateRequest):
    """Crawl a website and index its pages under a new namespace."""
    current = get_settings()
    if not current.enable_creation:
        logger.info("Creation disabled via FIRESTARTER_DISABLE_CREATION_DASHBOARD")
        return _error(403, "Dashboard creation is disabled for Firestarter.")

    url = create_request.url
    limit = create_request.limit
    try:
        namespace = make_namespace(url)
    except ValueError as e:
        return _error(400, str(e))

    api_key = current.firecrawl_api_key or request.headers.get("X-Firecrawl-API-Key")
    if not api_key:
        logger.error("FIRECRAWL_API_KEY is not set in environment variables or headers")
        return _error(500, "Firecrawl API key is not configured. Please provide your API key.")

    logger.info(
        "Crawl requested",
        url=url,
        limit=limit,
        namespace=namespace,
        include_paths=create_request.include_paths,
        exclude_paths=create_request.exclude_paths,
    )

    try:
        async with FirecrawlClient(api_key) as firecrawl:
            crawl = await firecrawl.crawl(
                url,
                limit,
                include_paths=create_request.include_paths,
                exclude_paths=create_request.exclude_paths,
            )
        pages = crawl.get("data") or []

        documents = build_documents(pages, namespace)
        search_client = await get_search_client()
        await store_documents(search_client, documents)

        if documents:
            verified = await verify_documents(
                search_client, namespace, documents[0]["content"]["title"]
            )
            if verified:
                logger.info("Verified document storage", namespace=namespace, found=verified)
            else:
                logger.warning("Could not verify documents were stored", namespace=namespace)

    except FirecrawlAuthError as e:
        logger.error("Firecrawl authentication failed", error=str(e))
        return _error(401, "Firecrawl authentication failed. Please check your API key.")
    except FirecrawlError as e:
        logger.error("Crawl failed", url=url, error=str(e), status=e.status_code)
        return _error(500, "Failed to start crawl", details=str(e))
    except SearchClientError as e:
        logger.error("Storing documents failed", namespace=namespace, error=str(e))
        return _error(500, "Failed to start crawl", details=f"Failed to store documents: {e}")

    if await save_index(index_metadata(url, namespace, pages)):
        logger.info("Saved index metadata", namespace=namespace)

    return {
        "success": True,
        "namespace": namespace,
        "crawlId": f"immediate-{int(time.time() * 1000)}",
        "message": f"Crawl completed successfully (limited to {limit} pages)",
        "details": {
            "url": url,
            "pagesLimit": limit,
            "pagesCrawled": len(pages),
            "formats": ["markdown", "html"],
        },
        "data": pages,
    }


def _header_selection(request: Request, model: str | None = None) -> ProviderSelection | None:
    """Provider forced by an X-Use-* header, if any.

    Raises:
        ProviderKeyMissing: If the forced provider has no credential.
    """
    forced = provider_from_headers(request.headers)
    if forced is None:
        return None
    return resolve_forced_provider(forced, get_settings(), model)


@app.post("/api/firestarter/query")
@limiter.limit(settings.rate_limit_query)
async def query(request: Request, query_request: QueryRequest):
    """Answer a question about a crawled website, as JSON or SSE."""
    if not query_request.query or not query_request.namespace:
        return _error(400, "Query and namespace are required")

    try:
        selection = _header_selection(request)
    except ProviderKeyMissing as e:
        return _error(500, str(e))

    messages = [m.model_dump(exclude_none=True) for m in query_request.messages]
    logger.info(
        "Query received",
        namespace=query_request.namespace,
        query_preview=query_request.query[:50],
        stream=query_request.stream,
    )

    if query_request.stream:
        events = stream_answer(
            query_request.query, query_request.namespace, messages, selection=selection
        )
        return StreamingResponse(
            (sse(event) async for event in events),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    result = await answer_query(
        query_request.query, query_request.namespace, messages, selection=selection
    )
    return result.model_dump()


@app.get("/api/firestarter/debug")
async def debug(namespace: str | None = Query(default=None)) -> dict:
    """Run the probe searches used to diagnose an empty namespace."""
    current = get_settings()
    search_client = await get_search_client()
    results: dict[str, Any] = {}

    probes = []
    if namespace:
        probes.append(("namespaceSearch", "*", namespace_filter(namespace)))
    probes.append(("allSearch", namespace or "test", None))
    probes.append(("semanticSearch", "homepage website content", None))

    for name, probe_query, probe_filter in probes:
        try:
            found = await search_client.search(probe_query, limit=10, filter=probe_filter)
            results[name] = {"count": len(found), "items": [d.model_dump() for d in found]}
        except SearchClientError as e:
            logger.error("Debug search failed", probe=name, error=str(e))
            results[f"{name}Error"] = str(e)

    return {
        "success": True,
        "namespace": namespace,
        "results": results,
        "upstashUrl": "Configured" if current.upstash_search_rest_url else "Not configured",
        "upstashToken": "Configured" if current.upstash_search_rest_token else "Not configured",
    }


# =============================================================================
# OpenAI-compatible Chat Completions
# =============================================================================


def _provider_error(selection: ProviderSelection, error: LLMError) -> JSONResponse:
    """Forward the upstream status with a provider-labelled message."""
    return _error(error.status_code or 500, f"Error with {selection.provider.label}: {error}")


async def _followup_questions(client: LLMClient, last_user_content: str) -> str | None:
    current = get_settings()
    try:
        response = await client.chat(
            [
                {
                    "role": "system",
                    "content": current.followup_prompt.format(count=current.followup_count),
                },
                {"role": "user", "content": last_user_content},
            ],
            temperature=current.followup_temperature,
            max_tokens=FOLLOWUP_MAX_TOKENS,
        )
    except LLMError as e:
        logger.warning("Follow-up generation failed", error=str(e))
        return None
    return response.content or None


async def _proxy_completion(selection: ProviderSelection, request: ChatCompletionRequest):
    """Run a completion against a provider and return it in OpenAI format."""
    messages = request.message_dicts()
    if not messages:
        return _error(400, "Invalid request: messages must be a non-empty list.")

    client = LLMClient(selection, temperature=request.temperature, max_tokens=request.max_tokens)
    request_log = log_llm_request(
        provider=selection.provider.name,
        model=client.model,
        stream=request.stream,
        messages=messages,
    )

    if request.stream:
        try:
            chunks = await prime(client.chat_stream(messages))
        except LLMError as e:
            log_llm_response(request_log, error=str(e))
            await client.close()
            return _provider_error(selection, e)

        def on_finish(tokens_used: int, finish_reason: str, error: str | None) -> None:
            log_llm_response(
                request_log, tokens_total=tokens_used, finish_reason=finish_reason, error=error
            )

        async def body() -> AsyncIterator[str]:
            try:
                async for event in openai_stream(chunks, client.model, on_finish):
                    yield event
            finally:
                await client.close()

        return StreamingResponse(body(), media_type="text/event-stream", headers=SSE_HEADERS)

    try:
        response = await client.chat(messages)
        log_llm_response(
            request_log,
            tokens_prompt=response.usage.prompt_tokens,
            tokens_completion=response.usage.completion_tokens,
            tokens_total=response.tokens_used,
            finish_reason=response.finish_reason or "stop",
        )
        payload = chat_completion(
            response.content, response.model, response.finish_reason, response.usage
        )
        if get_settings().followup_count > 0:
            followup = await _followup_questions(client, request.last_user_content())
            if followup:
                payload["followup"] = followup
        return payload
    except LLMError as e:
        log_llm_response(request_log, error=str(e))
        return _provider_error(selection, e)
    finally:
        await client.close()


async def _namespace_completion(namespace: str, request: ChatCompletionRequest):
    """Answer from a crawled site's content (``firecrawl-<namespace>`` models)."""
    query_text = request.last_user_content()
    if not query_text:
        return _error(400, "Query and namespace are required")

    messages = request.message_dicts()
    model = request.model

    if request.stream:
        events = stream_answer(query_text, namespace, messages)
        return StreamingResponse(
            rag_openai_stream(events, model), media_type="text/event-stream", headers=SSE_HEADERS
        )

    result = await answer_query(query_text, namespace, messages)
    return chat_completion(
        result.answer, model, sources=[source.model_dump() for source in result.sources]
    )


@app.post("/api/v1/chat/completions")
async def chat_completions(request: Request):
    """
    OpenAI-compatible chat completions.

    The backend is chosen in this order:
    - an ``X-Use-Google-AI``, ``X-Use-Groq``, ``X-Use-OpenAI`` or
      ``X-Use-Anthropic`` header set to ``true``
    - a ``firecrawl-<namespace>`` model, answered from that site's content
    - the first provider of the priority list with a credential
    """
    body = await _json_body(request)
    if body is None:
        return _error(400, "Invalid JSON")

    try:
        completion_request = ChatCompletionRequest.model_validate(body)
    except ValidationError as e:
        logger.warning("Invalid completion request", errors=e.error_count())
        return _error(400, "Invalid request format.")

    try:
        selection = _header_selection(request, completion_request.model)
    except ProviderKeyMissing as e:
        return _error(500, str(e))
    if selection is not None:
        return await _proxy_completion(selection, completion_request)

    model = completion_request.model or ""
    if model.startswith(FIRECRAWL_MODEL_PREFIX):
        namespace = model[len(FIRECRAWL_MODEL_PREFIX) :]
        if not namespace:
            return _error(400, "Invalid Firecrawl model format. Use firecrawl-NAMESPACE.")
        return await _namespace_completion(namespace, completion_request)

    try:
        selection = select_provider(get_settings())
    except NoProviderConfigured as e:
        logger.error("Completion request without provider", error=str(e))
        return _error(400, "AI Provider not configured or invalid request.")
    return await _proxy_completion(selection, completion_request)


# =============================================================================
# Scrape & Index List Endpoints
# =============================================================================


@app.post("/api/scrape")
@limiter.limit(settings.rate_limit_scrape)
async def scrape(request: Request):
    """Scrape one URL (``url``) or several (``urls``) through Firecrawl."""
    api_key = get_settings().firecrawl_api_key or request.headers.get("X-Firecrawl-API-Key")
    if not api_key:
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "API configuration error. Please try again later or contact support.",
            },
        )

    invalid = JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Invalid request format. Please check your input and try again.",
        },
    )
    body = await _json_body(request)
    if not isinstance(body, dict):
        return invalid
    try:
        scrape_request = ScrapeRequest.model_validate(body)
    except ValidationError:
        return invalid

    params = scrape_request.passthrough_params()
    try:
        async with FirecrawlClient(api_key) as firecrawl:
            if scrape_request.url:
                return await firecrawl.scrape(scrape_request.url, **params)
            if scrape_request.urls:
                return await firecrawl.batch_scrape(scrape_request.urls, **params)
    except FirecrawlError as e:
        logger.error("Scrape failed", error=str(e), status=e.status_code)
        return JSONResponse(
            status_code=e.status_code or 500,
            content={
                "success": False,
                "error": "An error occurred while processing your request. Please try again later.",
            },
        )
    return invalid


@app.get("/api/indexes")
async def list_indexes() -> dict:
    indexes = await get_indexes()
    return {"indexes": [index.to_client() for index in indexes]}


@app.post("/api/indexes")
async def create_index_entry(index: IndexMetadata):
    if not await save_index(index):
        return _error(500, "Failed to save index")
    return {"success": True}


@app.delete("/api/indexes")
async def delete_index_entry(namespace: str | None = Query(default=None)):
    if not namespace:
        return _error(400, "Namespace is required")
    if not await delete_index(namespace):
        return _error(500, "Failed to delete index")
    return {"success": True}
