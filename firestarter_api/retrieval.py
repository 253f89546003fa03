"""Namespace-scoped retrieval, re-ranking and context assembly."""

from dataclasses import dataclass, field

import structlog

from firestarter_api.config import Settings, get_settings
from firestarter_api.models import SearchDocument, Source
from firestarter_api.observability import get_trace_id, record_retrieval
from firestarter_api.query_transform import keyword_terms
from firestarter_api.search_client import SearchClient, SearchClientError

logger = structlog.get_logger()

CONTEXT_SEPARATOR = "\n\n---\n\n"


@dataclass
class RankedDocument:
    """A retrieved page rendered for the prompt."""

    content: str
    url: str
    title: str
    description: str
    score: float
    keyword_hits: int = 0


@dataclass
class RetrievalResult:
    """Documents, sources and context for one question."""

    documents: list[RankedDocument] = field(default_factory=list)
    sources: list[Source] = field(default_factory=list)
    context: str = ""


def _in_namespace(documents: list[SearchDocument], namespace: str) -> list[SearchDocument]:
    return [d for d in documents if d.namespace == namespace]


async def retrieve_documents(
    search_client: SearchClient,
    namespace: str,
    query: str,
    max_results: int | None = None,
) -> list[SearchDocument]:
    """Fetch the documents of one namespace that relate to a query.

    The index is searched for ``"<namespace> <query>"`` and results from other
    namespaces are dropped. When nothing is left, the namespace alone is
    searched and its documents are filtered by a plain substring match on the
    query; if that matches nothing every namespace document is returned.
    Search failures are logged and produce an empty list.
    """
    limit = max_results or get_settings().search_max_results
    try:
        results = await search_client.search(f"{namespace} {query}".strip(), limit=limit)
        documents = _in_namespace(results, namespace)
        logger.debug(
            "Namespace search", namespace=namespace, hits=len(results), kept=len(documents)
        )
        if documents:
            return documents

        namespace_docs = _in_namespace(
            await search_client.search(namespace, limit=limit), namespace
        )
        if not namespace_docs:
            return []

        query_lower = query.lower()
        matching = [
            d
            for d in namespace_docs
            if query_lower in d.content.text.lower()
            or query_lower in d.content.title.lower()
            or query_lower in d.content.url.lower()
        ]
        logger.debug(
            "Fallback namespace search",
            namespace=namespace,
            namespace_docs=len(namespace_docs),
            content_matches=len(matching),
        )
        return matching or namespace_docs

    except SearchClientError as e:
        logger.error("Search failed", trace_id=get_trace_id(), namespace=namespace, error=str(e))
        return []


def transform_document(document: SearchDocument) -> RankedDocument:
    """Render a search hit as a titled block of text."""
    metadata = document.metadata
    title = (
        document.content.title or metadata.get("title") or metadata.get("pageTitle") or "Untitled"
    )
    description = metadata.get("description") or ""
    url = document.content.url or metadata.get("url") or metadata.get("sourceURL") or ""
    text = metadata.get("fullContent") or document.content.text

    if not text:
        logger.warning("Document has no content", url=url, title=title)

    return RankedDocument(
        content=f"TITLE: {title}\nDESCRIPTION: {description}\nSOURCE: {url}\n\n{text}",
        url=url,
        title=title,
        description=description,
        score=document.score or 0.0,
    )


def rank_documents(documents: list[RankedDocument], keywords: list[str]) -> list[RankedDocument]:
    """Order by index score, best first; keyword hits break ties."""
    for document in documents:
        haystack = document.content.lower()
        document.keyword_hits = sum(1 for term in keywords if term in haystack)
    return sorted(documents, key=lambda d: (d.score, d.keyword_hits), reverse=True)


def build_context(documents: list[RankedDocument], max_length: int) -> str:
    """Join document contents, each cut to ``max_length`` characters."""
    return CONTEXT_SEPARATOR.join(
        document.content[:max_length] + "..." for document in documents if document.content
    )


def to_sources(documents: list[RankedDocument], snippet_length: int) -> list[Source]:
    return [
        Source(url=d.url, title=d.title, snippet=d.content[:snippet_length] + "...")
        for d in documents
    ]


def assemble(
    documents: list[SearchDocument],
    keywords: str,
    settings: Settings | None = None,
) -> RetrievalResult:
    """Rank retrieved documents and build the bounded prompt context.

    Args:
        documents: Namespace documents from :func:`retrieve_documents`.
        keywords: Comma-separated keywords used to break score ties.
        settings: Limits to apply. Defaults to the global settings.

    Returns:
        The ranked documents kept as sources, their source entries, and the
        context built from the top ``search_max_context_docs`` of them.
    """
    settings = settings or get_settings()
    ranked = rank_documents(
        [transform_document(d) for d in documents], keyword_terms(keywords)
    )[: settings.search_max_sources_display]

    context = build_context(
        ranked[: settings.search_max_context_docs], settings.search_max_context_length
    )
    record_retrieval(len(documents), len(context))

    logger.info(
        "Context assembled",
        trace_id=get_trace_id(),
        documents=len(documents),
        sources=len(ranked),
        context_chars=len(context),
    )
    return RetrievalResult(
        documents=ranked,
        sources=to_sources(ranked, settings.search_snippet_length),
        context=context,
    )
