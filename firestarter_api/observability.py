"""Observability utilities: logging setup, trace IDs, LLM metrics, and payload logging.

This module provides:
- structlog configuration shared by the app and the startup script
- Trace ID generation and propagation via context vars
- Prometheus metrics for LLM calls, retrieval and crawling
- Structured logging helpers for LLM request/response correlation
"""

import logging
import secrets
import time
from contextvars import ContextVar
from dataclasses import dataclass

import structlog
from prometheus_client import Counter, Gauge, Histogram

logger = structlog.get_logger()


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog to render JSON through the stdlib logging tree."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level, logging.INFO))
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# Trace ID Context
# =============================================================================

# Context variable for trace ID propagation across async calls
trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")


def generate_trace_id() -> str:
    """Generate cryptographically secure trace ID for request tracking."""
    return secrets.token_hex(16)


def get_trace_id() -> str:
    """Get current trace ID from context, or empty string if not set."""
    return trace_id_ctx.get()


def set_trace_id(trace_id: str) -> None:
    """Set trace ID in context."""
    trace_id_ctx.set(trace_id)


# =============================================================================
# Prometheus Metrics
# =============================================================================

llm_requests_total = Counter(
    "llm_requests_total",
    "Total LLM API requests",
    ["provider", "model", "status", "stream"],
)

llm_tokens_total = Counter(
    "llm_tokens_total",
    "Total tokens used in LLM calls",
    ["provider", "model", "type"],  # values: prompt, completion, total
)

llm_latency_seconds = Histogram(
    "llm_latency_seconds",
    "LLM response latency in seconds",
    ["provider", "stream"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

llm_active_requests = Gauge(
    "llm_active_requests",
    "Currently active LLM requests",
    ["provider"],
)

retrieval_documents = Histogram(
    "retrieval_documents",
    "Number of namespace documents retrieved per query",
    buckets=[0, 1, 2, 5, 10, 20, 50, 100],
)

retrieval_context_chars = Histogram(
    "retrieval_context_chars",
    "Total characters in the assembled context",
    buckets=[0, 500, 1000, 2000, 5000, 10000, 20000],
)

crawl_pages_total = Counter(
    "crawl_pages_total",
    "Pages crawled and indexed",
    ["status"],  # values: indexed, failed
)


def record_retrieval(documents: int, context_chars: int) -> None:
    retrieval_documents.observe(documents)
    retrieval_context_chars.observe(context_chars)


# =============================================================================
# LLM Payload Logging
# =============================================================================


@dataclass
class LLMRequestLog:
    """Structured log data for LLM requests."""

    trace_id: str
    provider: str
    model: str
    stream: bool
    messages: int
    prompt_chars: int
    user_message_preview: str  # First 100 chars
    timestamp: float = 0.0

    def __post_init__(self) -> None:
        if self.timestamp == 0.0:
            self.timestamp = time.time()


def log_llm_request(
    provider: str,
    model: str,
    stream: bool,
    messages: list[dict[str, str]],
) -> LLMRequestLog:
    """Log an LLM request and open its latency/active-request accounting.

    Returns LLMRequestLog for correlation with the response.
    """
    user_messages = [m.get("content") or "" for m in messages if m.get("role") == "user"]
    last_user = user_messages[-1] if user_messages else ""

    log_data = LLMRequestLog(
        trace_id=get_trace_id(),
        provider=provider,
        model=model,
        stream=stream,
        messages=len(messages),
        prompt_chars=sum(len(m.get("content") or "") for m in messages),
        user_message_preview=last_user[:100] + ("..." if len(last_user) > 100 else ""),
    )

    logger.info(
        "llm_request",
        trace_id=log_data.trace_id,
        provider=log_data.provider,
        model=log_data.model,
        stream=log_data.stream,
        messages=log_data.messages,
        prompt_chars=log_data.prompt_chars,
        user_message_preview=log_data.user_message_preview,
    )

    llm_active_requests.labels(provider=provider).inc()
    return log_data


def log_llm_response(
    request_log: LLMRequestLog,
    tokens_prompt: int = 0,
    tokens_completion: int = 0,
    tokens_total: int = 0,
    finish_reason: str = "unknown",
    error: str | None = None,
) -> None:
    """Log an LLM response with metrics and correlation."""
    latency_ms = int((time.time() - request_log.timestamp) * 1000)
    stream = str(request_log.stream).lower()

    if error:
        logger.error(
            "llm_response",
            trace_id=request_log.trace_id,
            provider=request_log.provider,
            model=request_log.model,
            stream=request_log.stream,
            latency_ms=latency_ms,
            error=error,
        )
        status = "error"
    else:
        logger.info(
            "llm_response",
            trace_id=request_log.trace_id,
            provider=request_log.provider,
            model=request_log.model,
            stream=request_log.stream,
            tokens_prompt=tokens_prompt,
            tokens_completion=tokens_completion,
            tokens_total=tokens_total,
            latency_ms=latency_ms,
            finish_reason=finish_reason,
        )
        status = "success"

    llm_active_requests.labels(provider=request_log.provider).dec()
    llm_requests_total.labels(
        provider=request_log.provider,
        model=request_log.model,
        status=status,
        stream=stream,
    ).inc()

    if tokens_total > 0:
        labels = {"provider": request_log.provider, "model": request_log.model}
        llm_tokens_total.labels(**labels, type="prompt").inc(tokens_prompt)
        llm_tokens_total.labels(**labels, type="completion").inc(tokens_completion)
        llm_tokens_total.labels(**labels, type="total").inc(tokens_total)

    llm_latency_seconds.labels(provider=request_log.provider, stream=stream).observe(
        latency_ms / 1000.0
    )
