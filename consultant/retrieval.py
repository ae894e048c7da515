import asyncio
import logging
import re
from typing import Dict, List, Optional, Protocol

from .llm import LLMClient
from .prompts import HYDE_SYSTEM, QUERY_REWRITE_SYSTEM
from .schemas import (
    SOURCE_KNOWLEDGE_BASE,
    SOURCE_WEB,
    KnowledgeChunk,
    KnowledgeResult,
    KnowledgeSearchResponse,
    Message,
    Source,
    WebResult,
    WebSearchResponse,
)
from .tavily import TavilyClient


logger = logging.getLogger("uvicorn.error")

DEFAULT_SEARCH_LIMIT = 5
OVERFETCH_FACTOR = 3
MAX_PER_SOURCE = 2
HYDE_TIMEOUT_S = 15.0
SNIPPET_CHARS = 320
SCOPE_GLOBAL = "global"
SCOPE_TENANT = "tenant"
SCOPE_ALL = "all"
NO_KNOWLEDGE_RESULTS = "No knowledge base results found."
NO_WEB_RESULTS = "No web results found."

_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s+(.+?)\s*#*\s*$", re.MULTILINE)
_TERM_RE = re.compile(r"\w+")


class KnowledgeSearchError(Exception):
    pass


class WebSearchError(Exception):
    pass


class KnowledgeStore(Protocol):
    async def hybrid_search(
        self, tenant_id: str, embedding: List[float], query_text: str, limit: int
    ) -> List[KnowledgeChunk]: ...


class Embedder(Protocol):
    async def embed_query(self, text: str) -> List[float]: ...


class Reranker(Protocol):
    async def rerank(self, query: str, chunks: List[KnowledgeChunk]) -> List[KnowledgeChunk]: ...


class QueryRewriter(Protocol):
    async def rewrite(self, text: str) -> str: ...


class HyDEGenerator(Protocol):
    async def generate(self, query: str) -> str: ...


def resolve_tenants(tenant_id: str, scope: Optional[str], global_tenant_id: str = "") -> List[str]:
    tenant_id = (tenant_id or "").strip()
    global_tenant_id = (global_tenant_id or "").strip()
    scope = (scope or "").strip().lower()
    if scope == SCOPE_GLOBAL:
        return [global_tenant_id] if global_tenant_id else []
    if scope == SCOPE_TENANT:
        return [tenant_id] if tenant_id else []
    tenants = [t for t in (tenant_id, global_tenant_id) if t]
    # Dedupe in case the caller is the global tenant.
    return list(dict.fromkeys(tenants))


def extract_section_heading(text: str) -> Optional[str]:
    match = _HEADING_RE.search(text or "")
    if not match:
        return None
    return match.group(1).strip() or None


def snippet_from_content(text: str, limit: int = SNIPPET_CHARS) -> str:
    cleaned = " ".join((text or "").split())
    if len(cleaned) <= limit:
        return cleaned
    cut = cleaned[:limit].rsplit(" ", 1)[0]
    return (cut or cleaned[:limit]) + "..."


def _terms(text: str) -> set:
    return {term for term in _TERM_RE.findall(text.lower()) if len(term) > 1}


def lexical_rerank(query: str, chunks: List[KnowledgeChunk]) -> List[KnowledgeChunk]:
    """Fallback ranking: blend stored similarity with query-term overlap."""
    query_terms = _terms(query)
    if not query_terms:
        return sorted(chunks, key=lambda c: c.similarity, reverse=True)
    scored = []
    for chunk in chunks:
        overlap = len(query_terms & _terms(f"{chunk.source_title} {chunk.text}")) / len(query_terms)
        score = 0.7 * chunk.similarity + 0.3 * overlap
        scored.append(chunk.model_copy(update={"similarity": score}))
    scored.sort(key=lambda c: c.similarity, reverse=True)
    return scored


def dedupe_by_source(
    chunks: List[KnowledgeChunk], limit: int, max_per_source: int = MAX_PER_SOURCE
) -> List[KnowledgeChunk]:
    counts: Dict[str, int] = {}
    kept: List[KnowledgeChunk] = []
    for chunk in chunks:
        if len(kept) >= limit:
            break
        key = chunk.source_url or chunk.source_title
        if counts.get(key, 0) >= max_per_source:
            continue
        counts[key] = counts.get(key, 0) + 1
        kept.append(chunk)
    return kept


def format_knowledge_context(results: List[KnowledgeResult]) -> str:
    if not results:
        return NO_KNOWLEDGE_RESULTS
    sections = []
    for i, result in enumerate(results, start=1):
        lines = [f"[{i}] {result.title}", f"Relevance: {result.score:.2f}"]
        if result.section:
            lines.append(f"Section: {result.section}")
        if result.url:
            lines.append(f"URL: {result.url}")
        if result.snippet:
            lines.append(result.snippet)
        sections.append("\n".join(lines))
    return "Knowledge base results:\n\n" + "\n---\n".join(sections)


def map_knowledge_response(query: str, chunks: List[KnowledgeChunk]) -> KnowledgeSearchResponse:
    results: List[KnowledgeResult] = []
    sources: List[Source] = []
    for chunk in chunks:
        title = chunk.source_title.strip() or chunk.source_url
        results.append(
            KnowledgeResult(
                title=title,
                url=chunk.source_url,
                score=round(chunk.similarity, 4),
                section=extract_section_heading(chunk.text),
                snippet=snippet_from_content(chunk.text),
            )
        )
        sources.append(Source(title=title, url=chunk.source_url, kind=SOURCE_KNOWLEDGE_BASE))
    return KnowledgeSearchResponse(
        query=query,
        context=format_knowledge_context(results),
        results=results,
        sources=sources,
    )


class KnowledgePipeline:
    """Tenant-scoped retrieval: rewrite, HyDE, hybrid search, rerank, dedupe."""

    def __init__(
        self,
        store: KnowledgeStore,
        embedder: Embedder,
        *,
        reranker: Optional[Reranker] = None,
        rewriter: Optional[QueryRewriter] = None,
        hyde: Optional[HyDEGenerator] = None,
        global_tenant_id: str = "",
        default_limit: int = DEFAULT_SEARCH_LIMIT,
        hyde_timeout_s: float = HYDE_TIMEOUT_S,
    ):
        self.store = store
        self.embedder = embedder
        self.reranker = reranker
        self.rewriter = rewriter
        self.hyde = hyde
        self.global_tenant_id = global_tenant_id
        self.default_limit = default_limit
        self.hyde_timeout_s = hyde_timeout_s

    async def rewrite_query(self, query: str) -> str:
        return await rewrite_or_passthrough(self.rewriter, query)

    async def _embed(self, query: str, expand: bool) -> List[float]:
        if expand and self.hyde is not None:
            try:
                hypothetical = await asyncio.wait_for(self.hyde.generate(query), timeout=self.hyde_timeout_s)
                if hypothetical and hypothetical.strip():
                    return await self.embedder.embed_query(hypothetical)
            except asyncio.TimeoutError:
                logger.warning("HyDE generation timed out after %.0fs; embedding query", self.hyde_timeout_s)
            except Exception as exc:
                logger.warning("HyDE embedding failed; embedding query instead: %s", exc)
        return await self.embedder.embed_query(query)

    async def _fetch(self, tenant_ids: List[str], embedding: List[float], query: str, limit: int) -> List[KnowledgeChunk]:
        chunks: List[KnowledgeChunk] = []
        last_error: Optional[Exception] = None
        succeeded = 0
        for tenant_id in tenant_ids:
            try:
                results = await self.store.hybrid_search(tenant_id, embedding, query, limit * OVERFETCH_FACTOR)
            except Exception as exc:
                logger.warning("Knowledge search failed for tenant %s: %s", tenant_id, exc)
                last_error = exc
                continue
            succeeded += 1
            chunks.extend(results)
        if not succeeded and last_error is not None:
            raise last_error
        return chunks

    async def _rerank(self, query: str, chunks: List[KnowledgeChunk]) -> List[KnowledgeChunk]:
        if not chunks:
            return chunks
        if self.reranker is not None:
            try:
                return await self.reranker.rerank(query, chunks)
            except Exception as exc:
                logger.warning("Reranker failed; using lexical ranking: %s", exc)
        return lexical_rerank(query, chunks)

    async def search(
        self,
        query: str,
        tenant_id: str,
        scope: str = "",
        limit: Optional[int] = None,
        *,
        expand: bool = True,
        max_per_source: int = MAX_PER_SOURCE,
    ) -> KnowledgeSearchResponse:
        """Run the full retrieval pipeline.

        ``expand=False`` skips the query rewrite and HyDE steps and embeds the
        raw text; pre-retrieval uses that path.
        """
        query = (query or "").strip()
        if not query:
            raise KnowledgeSearchError("query is required")
        tenant_ids = resolve_tenants(tenant_id, scope, self.global_tenant_id)
        if not tenant_ids:
            raise KnowledgeSearchError("tenant id is required")
        limit = limit if limit and limit > 0 else self.default_limit

        search_query = await self.rewrite_query(query) if expand else query
        embedding = await self._embed(search_query, expand)
        chunks = await self._fetch(tenant_ids, embedding, search_query, limit)
        ranked = await self._rerank(search_query, chunks)
        final = dedupe_by_source(ranked, limit, max_per_source)
        return map_knowledge_response(query, final)


async def rewrite_or_passthrough(rewriter: Optional[QueryRewriter], query: str) -> str:
    if rewriter is None:
        return query
    try:
        rewritten = await rewriter.rewrite(query)
    except Exception as exc:
        logger.warning("Query rewrite failed; using original query: %s", exc)
        return query
    rewritten = (rewritten or "").strip().strip('"')
    return rewritten or query


class LLMQueryRewriter:
    def __init__(self, client: LLMClient, model: Optional[str] = None):
        self.client = client
        self.model = model

    async def rewrite(self, text: str) -> str:
        messages = [Message(role="system", content=QUERY_REWRITE_SYSTEM), Message(role="user", content=text)]
        rewritten = await self.client.complete_text(messages, max_tokens=64, temperature=0.0, model=self.model)
        return rewritten.splitlines()[0].strip() if rewritten else ""


class LLMHyDEGenerator:
    def __init__(self, client: LLMClient, model: Optional[str] = None):
        self.client = client
        self.model = model

    async def generate(self, query: str) -> str:
        messages = [Message(role="system", content=HYDE_SYSTEM), Message(role="user", content=query)]
        return await self.client.complete_text(messages, max_tokens=256, temperature=0.3, model=self.model)


def format_web_context(results: List[WebResult]) -> str:
    if not results:
        return NO_WEB_RESULTS
    lines = ["Web search results:"]
    for i, result in enumerate(results, start=1):
        lines.append(f"{i}. {result.title}")
        if result.url:
            lines.append(f"URL: {result.url}")
        if result.snippet:
            lines.append(f"Snippet: {result.snippet}")
        if i < len(results):
            lines.append("")
    return "\n".join(lines)


class WebSearch:
    def __init__(
        self,
        tavily: TavilyClient,
        *,
        rewriter: Optional[QueryRewriter] = None,
        default_limit: int = DEFAULT_SEARCH_LIMIT,
        default_depth: str = "basic",
    ):
        self.tavily = tavily
        self.rewriter = rewriter
        self.default_limit = default_limit
        self.default_depth = default_depth

    @property
    def enabled(self) -> bool:
        return self.tavily.enabled

    async def search(self, query: str, limit: Optional[int] = None, search_depth: Optional[str] = None) -> WebSearchResponse:
        query = (query or "").strip()
        if not query:
            raise WebSearchError("query is required")
        search_query = await rewrite_or_passthrough(self.rewriter, query)
        data = await self.tavily.search(
            search_query,
            search_depth=search_depth or self.default_depth,
            max_results=limit if limit and limit > 0 else self.default_limit,
        )
        if data.get("error"):
            detail = data.get("detail") or data.get("status_code") or ""
            raise WebSearchError(f"web search failed: {data['error']} {detail}".strip())
        results: List[WebResult] = []
        sources: List[Source] = []
        for item in data.get("results") or []:
            url = (item.get("url") or "").strip()
            title = (item.get("title") or "").strip() or url
            if not title:
                continue
            results.append(
                WebResult(
                    title=title,
                    url=url,
                    snippet=snippet_from_content(item.get("content") or ""),
                    score=item.get("score"),
                )
            )
            sources.append(Source(title=title, url=url, kind=SOURCE_WEB))
        return WebSearchResponse(query=query, context=format_web_context(results), results=results, sources=sources)
