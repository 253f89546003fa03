"""Question answering over one crawled site.

The pipeline retrieves the namespace's documents, extracts keywords to re-rank
them, builds a bounded context and asks the selected LLM provider. Conditions
that make generation pointless (nothing indexed, no provider, too little
text) produce fixed answers instead of errors so the chat UI can show them.
"""

from asyncio import CancelledError
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import structlog

from firestarter_api.config import get_settings
from firestarter_api.llm_client import LLMAuthError, LLMClient, LLMError, LLMRateLimitError
from firestarter_api.models import QueryResponse, RagStreamEvent, Source
from firestarter_api.observability import get_trace_id, log_llm_request, log_llm_response
from firestarter_api.providers import NoProviderConfigured, ProviderSelection, select_provider
from firestarter_api.query_transform import extract_keywords
from firestarter_api.retrieval import assemble, retrieve_documents
from firestarter_api.search_client import SearchClient, get_search_client

logger = structlog.get_logger()

NO_CONTENT_ANSWER = (
    "I don't have any indexed content for this website. "
    "Please make sure the website has been crawled first."
)
NOT_CONFIGURED_ANSWER = (
    "AI service is not configured. Please set OPENAI_API_KEY, ANTHROPIC_API_KEY, "
    "GOOGLE_AI_STUDIO_API_KEY or GROQ_API_KEY in your environment variables."
)
INSUFFICIENT_CONTEXT_ANSWER = (
    "I found some relevant pages but couldn't extract enough content to answer your "
    "question. This might be due to the way the pages were crawled. Try crawling the "
    "website again with a higher page limit."
)
FALLBACK_ANSWER = (
    "I apologize, but I couldn't generate a response. Please try rephrasing your question."
)
STREAM_FAILED = "Streaming failed"

MIN_CONTEXT_CHARS = 100

USER_PROMPT_TEMPLATE = (
    "Question: {query}\n\n"
    "Relevant content from the website:\n{context}\n\n"
    "Please provide a comprehensive answer based on this information."
)


@dataclass
class PreparedQuery:
    """Outcome of retrieval: either a fixed answer or messages for the LLM."""

    sources: list[Source] = field(default_factory=list)
    answer: str | None = None
    messages: list[dict[str, str]] = field(default_factory=list)


def history_from_messages(
    messages: list[dict[str, str]] | None, query: str, limit: int
) -> list[dict[str, str]]:
    """Previous user/assistant turns, most recent ``limit`` of them.

    The trailing user message is dropped when it is the question itself, since
    the question is restated in the prompt together with the context.
    """
    if not messages or limit <= 0:
        return []
    turns = [
        {"role": m["role"], "content": m["content"]}
        for m in messages
        if m.get("role") in ("user", "assistant") and m.get("content")
    ]
    if turns and turns[-1]["role"] == "user" and turns[-1]["content"].strip() == query.strip():
        turns = turns[:-1]
    return turns[-limit:]


def build_messages(
    query: str, context: str, history: list[dict[str, str]] | None = None
) -> list[dict[str, str]]:
    settings = get_settings()
    return [
        {"role": "system", "content": settings.system_prompt},
        *(history or []),
        {"role": "user", "content": USER_PROMPT_TEMPLATE.format(query=query, context=context)},
    ]


def _resolve_selection(selection: ProviderSelection | None) -> ProviderSelection | None:
    if selection is not None:
        return selection
    try:
        return select_provider(get_settings())
    except NoProviderConfigured as e:
        logger.error("No LLM provider for query", error=str(e))
        return None


async def prepare_query(
    query: str,
    namespace: str,
    messages: list[dict[str, str]] | None = None,
    llm_client: LLMClient | None = None,
    search_client: SearchClient | None = None,
) -> PreparedQuery:
    """Retrieve and rank documents, then decide whether to call the LLM.

    Args:
        query: The user's question.
        namespace: Namespace of the crawled site.
        messages: Full conversation, used for history.
        llm_client: Client for the selected provider, or None when no provider
            is configured.
        search_client: Search client. Defaults to the global client.
    """
    settings = get_settings()
    search_client = search_client or await get_search_client()

    documents = await retrieve_documents(search_client, namespace, query)
    if not documents:
        logger.info("No documents for namespace", namespace=namespace)
        return PreparedQuery(answer=NO_CONTENT_ANSWER)

    if llm_client is None:
        return PreparedQuery(answer=NOT_CONFIGURED_ANSWER)

    keywords = await extract_keywords(query, llm_client)
    result = assemble(documents, keywords, settings)

    if len(result.context) < MIN_CONTEXT_CHARS:
        logger.error(
            "Context too short or empty",
            trace_id=get_trace_id(),
            namespace=namespace,
            context_chars=len(result.context),
        )
        return PreparedQuery(sources=result.sources, answer=INSUFFICIENT_CONTEXT_ANSWER)

    history = history_from_messages(messages, query, settings.max_history_messages)
    return PreparedQuery(
        sources=result.sources,
        messages=build_messages(query, result.context, history),
    )


def _error_answer(error: LLMError, selection: ProviderSelection) -> str:
    provider = selection.provider
    if isinstance(error, LLMAuthError):
        return (
            f"Error: {provider.label} API authentication failed. "
            f"Please check your {provider.env_var}."
        )
    if isinstance(error, LLMRateLimitError):
        return f"Error: {provider.label} API rate limit exceeded. Please try again later."
    return f"Error generating response: {error}"


async def answer_query(
    query: str,
    namespace: str,
    messages: list[dict[str, str]] | None = None,
    selection: ProviderSelection | None = None,
    search_client: SearchClient | None = None,
) -> QueryResponse:
    """Answer a question about a crawled site (non-streaming).

    Provider failures are reported in the answer text rather than raised.
    """
    selection = _resolve_selection(selection)
    llm_client = LLMClient(selection) if selection else None

    try:
        prepared = await prepare_query(
            query, namespace, messages, llm_client, search_client
        )
        if prepared.answer is not None:
            return QueryResponse(answer=prepared.answer, sources=prepared.sources)

        request_log = log_llm_request(
            provider=selection.provider.name,
            model=llm_client.model,
            stream=False,
            messages=prepared.messages,
        )
        try:
            response = await llm_client.chat(prepared.messages)
        except LLMError as e:
            log_llm_response(request_log, error=str(e))
            return QueryResponse(answer=_error_answer(e, selection), sources=prepared.sources)

        log_llm_response(
            request_log,
            tokens_prompt=response.usage.prompt_tokens,
            tokens_completion=response.usage.completion_tokens,
            tokens_total=response.tokens_used,
            finish_reason=response.finish_reason or "stop",
        )
        return QueryResponse(
            answer=response.content or FALLBACK_ANSWER, sources=prepared.sources
        )
    finally:
        if llm_client:
            await llm_client.close()


async def stream_answer(
    query: str,
    namespace: str,
    messages: list[dict[str, str]] | None = None,
    selection: ProviderSelection | None = None,
    search_client: SearchClient | None = None,
) -> AsyncIterator[RagStreamEvent]:
    """Answer a question as events: ``sources``, ``content``..., then ``done``.

    A failure after the sources were sent ends the stream with an ``error``
    event.
    """
    selection = _resolve_selection(selection)
    llm_client = LLMClient(selection) if selection else None

    try:
        prepared = await prepare_query(
            query, namespace, messages, llm_client, search_client
        )
        yield RagStreamEvent(type="sources", sources=prepared.sources)

        if prepared.answer is not None:
            yield RagStreamEvent(type="content", content=prepared.answer)
            yield RagStreamEvent(type="done")
            return

        request_log = log_llm_request(
            provider=selection.provider.name,
            model=llm_client.model,
            stream=True,
            messages=prepared.messages,
        )
        tokens_used = 0
        finish_reason = "stop"
        try:
            async for chunk in llm_client.chat_stream(prepared.messages):
                if chunk.content:
                    yield RagStreamEvent(type="content", content=chunk.content)
                if chunk.tokens_used:
                    tokens_used = chunk.tokens_used
                if chunk.finish_reason:
                    finish_reason = chunk.finish_reason
                    break
        except (CancelledError, GeneratorExit):
            log_llm_response(
                request_log, tokens_total=tokens_used, error="cancelled_by_client"
            )
            raise
        except LLMError as e:
            log_llm_response(request_log, error=str(e))
            yield RagStreamEvent(type="error", error=STREAM_FAILED)
            return

        log_llm_response(request_log, tokens_total=tokens_used, finish_reason=finish_reason)
        yield RagStreamEvent(type="done")
    finally:
        if llm_client:
            await llm_client.close()
