"""Server-sent event encoding and OpenAI-compatible response shapes.

Every provider stream, and the RAG pipeline's own event stream, leaves the
service as OpenAI ``chat.completion.chunk`` events terminated by
``data: [DONE]``.
"""

import json
import secrets
import time
from asyncio import CancelledError
from collections.abc import AsyncIterator, Callable
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel

from firestarter_api.llm_client import LLMError, LLMUsage, StreamingChunk
from firestarter_api.models import RagStreamEvent

logger = structlog.get_logger()

T = TypeVar("T")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
SSE_DONE = "data: [DONE]\n\n"


def sse(data: BaseModel | dict[str, Any] | str) -> str:
    """Encode one SSE ``data:`` event."""
    if isinstance(data, BaseModel):
        payload = data.model_dump_json(exclude_none=True)
    elif isinstance(data, str):
        payload = data
    else:
        payload = json.dumps(data)
    return f"data: {payload}\n\n"


def completion_id() -> str:
    return f"chatcmpl-{secrets.token_hex(12)}"


def chat_completion(
    content: str,
    model: str,
    finish_reason: str | None = "stop",
    usage: LLMUsage | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Build a non-streaming ``chat.completion`` object."""
    usage = usage or LLMUsage()
    return {
        "id": completion_id(),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": finish_reason,
            }
        ],
        "usage": {
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "total_tokens": usage.total_tokens,
        },
        **extra,
    }


def chat_completion_chunk(
    chunk_id: str,
    model: str,
    created: int,
    content: str | None = None,
    role: str | None = None,
    finish_reason: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Build one ``chat.completion.chunk`` object."""
    delta: dict[str, str] = {}
    if role:
        delta["role"] = role
    if content is not None:
        delta["content"] = content
    return {
        "id": chunk_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        **extra,
    }


def error_event(message: str, error_type: str = "upstream_error") -> str:
    return sse({"error": {"message": message, "type": error_type}})


async def _prepend(first: T, rest: AsyncIterator[T]) -> AsyncIterator[T]:
    yield first
    async for item in rest:
        yield item


async def _empty() -> AsyncIterator[Any]:
    return
    yield


async def prime(stream: AsyncIterator[T]) -> AsyncIterator[T]:
    """Start a stream and return an iterator that replays its first item.

    Awaiting the first item before the HTTP response begins lets upstream
    failures (bad credentials, rate limits) propagate to the caller as
    exceptions instead of surfacing mid-stream.
    """
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        return _empty()
    return _prepend(first, stream)


async def openai_stream(
    chunks: AsyncIterator[StreamingChunk],
    model: str,
    on_finish: Callable[[int, str, str | None], None] | None = None,
) -> AsyncIterator[str]:
    """Re-encode provider chunks as OpenAI SSE.

    Args:
        chunks: Normalized chunks from :meth:`LLMClient.chat_stream`.
        model: Model name reported to the client.
        on_finish: Called once with (tokens used, finish reason, error).
    """
    chunk_id = completion_id()
    created = int(time.time())
    tokens_used = 0
    finish_reason = "stop"
    error: str | None = None

    yield sse(chat_completion_chunk(chunk_id, model, created, content="", role="assistant"))
    try:
        async for chunk in chunks:
            if chunk.tokens_used:
                tokens_used = chunk.tokens_used
            if chunk.content:
                yield sse(chat_completion_chunk(chunk_id, model, created, content=chunk.content))
            if chunk.finish_reason:
                finish_reason = chunk.finish_reason
                break
        yield sse(chat_completion_chunk(chunk_id, model, created, finish_reason=finish_reason))
    except (CancelledError, GeneratorExit):
        if on_finish:
            on_finish(tokens_used, finish_reason, "cancelled_by_client")
        raise
    except LLMError as e:
        error = str(e)
        logger.error("Provider stream failed", error=error)
        yield error_event(error)

    if on_finish:
        on_finish(tokens_used, finish_reason, error)
    yield SSE_DONE


async def rag_openai_stream(
    events: AsyncIterator[RagStreamEvent], model: str
) -> AsyncIterator[str]:
    """Re-encode RAG events as OpenAI SSE; sources ride on the first chunk."""
    chunk_id = completion_id()
    created = int(time.time())

    async for event in events:
        if event.type == "sources":
            sources = [s.model_dump() for s in event.sources or []]
            yield sse(
                chat_completion_chunk(
                    chunk_id, model, created, content="", role="assistant", sources=sources
                )
            )
        elif event.type == "content" and event.content:
            yield sse(chat_completion_chunk(chunk_id, model, created, content=event.content))
        elif event.type == "done":
            yield sse(chat_completion_chunk(chunk_id, model, created, finish_reason="stop"))
        elif event.type == "error":
            yield error_event(event.error or "Streaming failed")

    yield SSE_DONE
