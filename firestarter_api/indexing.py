"""Turn crawled pages into search documents and store them."""

import time
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

import structlog

from firestarter_api.config import get_settings
from firestarter_api.models import IndexMetadata, IndexPageMetadata
from firestarter_api.observability import crawl_pages_total, get_trace_id
from firestarter_api.search_client import SearchClient, SearchClientError, namespace_filter

logger = structlog.get_logger()

SEARCHABLE_TEXT_LENGTH = 1000
FULL_CONTENT_LENGTH = 5000


def make_namespace(url: str, now_ms: int | None = None) -> str:
    """Namespace for a new crawl: the hostname with dots as dashes plus a ms timestamp.

    Raises:
        ValueError: If the URL has no http(s) scheme or hostname.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ValueError(f"Invalid URL: {url}")
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{parsed.hostname.replace('.', '-')}-{now_ms}"


def _page_metadata(page: dict[str, Any]) -> dict[str, Any]:
    return page.get("metadata") or {}


def _page_url(page: dict[str, Any]) -> str:
    return _page_metadata(page).get("sourceURL") or page.get("url") or ""


def _og_image(metadata: dict[str, Any]) -> str | None:
    return metadata.get("ogImage") or metadata.get("og:image")


def build_documents(pages: list[dict[str, Any]], namespace: str) -> list[dict[str, Any]]:
    """Build one search document per crawled page.

    The searchable text starts with ``namespace:<ns>`` so that a plain search
    for the namespace finds the site's pages. Longer page content is kept in
    ``metadata.fullContent`` for prompt building.
    """
    crawl_date = datetime.now(timezone.utc).isoformat()
    documents = []
    for index, page in enumerate(pages):
        metadata = _page_metadata(page)
        full_content = page.get("markdown") or page.get("content") or ""
        title = metadata.get("title") or "Untitled"
        url = _page_url(page)
        description = metadata.get("description") or metadata.get("ogDescription") or ""
        searchable_text = f"namespace:{namespace} {title} {description} {full_content}"

        documents.append(
            {
                "id": f"{namespace}-{index}",
                "content": {
                    "text": searchable_text[:SEARCHABLE_TEXT_LENGTH],
                    "url": url,
                    "title": title,
                },
                "metadata": {
                    "namespace": namespace,
                    "title": title,
                    "url": url,
                    "sourceURL": url,
                    "crawlDate": crawl_date,
                    "pageTitle": metadata.get("title"),
                    "description": metadata.get("description") or metadata.get("ogDescription"),
                    "favicon": metadata.get("favicon"),
                    "ogImage": _og_image(metadata),
                    "fullContent": full_content[:FULL_CONTENT_LENGTH],
                },
            }
        )
    return documents


async def store_documents(
    search_client: SearchClient,
    documents: list[dict[str, Any]],
    batch_size: int | None = None,
) -> None:
    """Upsert documents in batches.

    Raises:
        SearchClientError: If any batch fails; earlier batches stay stored.
    """
    batch_size = batch_size or get_settings().upsert_batch_size
    for start in range(0, len(documents), batch_size):
        batch = documents[start : start + batch_size]
        try:
            result = await search_client.upsert(batch)
        except SearchClientError:
            crawl_pages_total.labels(status="failed").inc(len(documents) - start)
            raise
        crawl_pages_total.labels(status="indexed").inc(len(batch))
        logger.info(
            "Stored document batch",
            trace_id=get_trace_id(),
            batch=start // batch_size + 1,
            documents=len(batch),
            result=result,
        )


async def verify_documents(
    search_client: SearchClient, namespace: str, probe_query: str
) -> int:
    """Count documents of the namespace the index returns for a probe query.

    A filtered search is tried first; when the filter is rejected, an
    unfiltered search for the namespace is filtered locally. Returns 0 when
    both fail.
    """
    try:
        found = await search_client.search(
            probe_query or "test", limit=1, filter=namespace_filter(namespace)
        )
        return len(found)
    except SearchClientError as e:
        logger.info("Verification with filter failed, trying without filter", error=str(e))

    try:
        found = await search_client.search(namespace, limit=10)
    except SearchClientError as e:
        logger.error("Verification without filter failed", error=str(e))
        return 0
    return sum(1 for document in found if document.namespace == namespace)


def find_homepage(pages: list[dict[str, Any]], url: str) -> dict[str, Any] | None:
    """The page crawled from the start URL, else the first page."""
    candidates = {url, url + "/", url.rstrip("/")}
    for page in pages:
        if _page_url(page) in candidates:
            return page
    return pages[0] if pages else None


def index_metadata(url: str, namespace: str, pages: list[dict[str, Any]]) -> IndexMetadata:
    """Describe a finished crawl for the index list."""
    homepage = find_homepage(pages, url)
    metadata = _page_metadata(homepage) if homepage else {}
    return IndexMetadata(
        url=url,
        namespace=namespace,
        pages_crawled=len(pages),
        created_at=datetime.now(timezone.utc).isoformat(),
        metadata=IndexPageMetadata(
            title=metadata.get("title"),
            description=metadata.get("description") or metadata.get("ogDescription"),
            favicon=metadata.get("favicon"),
            og_image=_og_image(metadata),
        ),
    )
