import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Tuple

import httpx
from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .chat import ChatService, ChatTurn, ChatValidationError, ConversationNotFoundError
from .compaction import ContextCompactor, LLMSummarizer
from .config import AppSettings, load_settings
from .db import Database
from .errors import RunCancelledError
from .gateway import HttpToolGateway
from .llm import EmbeddingClient, LLMClient
from .orchestrator import Orchestrator
from .policy import InvalidModeError, normalize_mode
from .retrieval import KnowledgePipeline, LLMHyDEGenerator, LLMQueryRewriter, WebSearch
from .schemas import SOURCE_WEB, ChatRequest, KnowledgeIngestRequest, RunContext
from .tavily import TavilyClient
from .tools import ToolExecutor


logger = logging.getLogger("uvicorn.error")

TENANT_HEADER = "X-Tenant-ID"
USER_HEADER = "X-User-ID"
MODE_HEADER = "X-Consultant-Mode"
GENERIC_FAILURE = "The consultant could not answer right now. Please try again."


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


def get_embedder(request: Request) -> EmbeddingClient:
    return request.app.state.embedder


def get_identity(request: Request) -> Tuple[str, str]:
    tenant_id = (request.headers.get(TENANT_HEADER) or "").strip()
    if not tenant_id:
        raise HTTPException(status_code=400, detail=f"{TENANT_HEADER} header required")
    return tenant_id, (request.headers.get(USER_HEADER) or "").strip()


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


class SSEStreamer:
    """Pushes orchestrator output onto a queue drained by the SSE response."""

    def __init__(self, queue: asyncio.Queue):
        self.queue = queue

    async def send_token(self, text: str) -> None:
        await self.queue.put({"type": "token", "content": text})

    async def send_tool_start(self, name: str) -> None:
        await self.queue.put({"type": "tool_start", "tool": name})

    async def send_tool_end(self, name: str, error: str = "") -> None:
        event: Dict[str, Any] = {"type": "tool_end", "tool": name}
        if error:
            event["error"] = error
        await self.queue.put(event)


def meta_event(turn: ChatTurn) -> dict:
    result = turn.result
    citations = []
    external_links = []
    for source in result.sources:
        link = {"label": source.title or source.url, "url": source.url}
        if source.kind == SOURCE_WEB:
            external_links.append(link)
        else:
            citations.append(link)
    return {
        "type": "meta",
        "conversationId": turn.conversation_id,
        "title": turn.title,
        "confidence": result.confidence,
        "citations": citations,
        "externalLinks": external_links,
        "details": [detail.model_dump() for detail in result.details],
    }


router = APIRouter()


@router.get("/health")
async def health(request: Request):
    executor: ToolExecutor = request.app.state.tool_executor
    return {"ok": True, "tools": [tool.name for tool in executor.available_tools()]}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/api/chat")
async def chat(
    request: Request,
    payload: ChatRequest,
    service: ChatService = Depends(get_chat_service),
    db: Database = Depends(get_db),
    identity: Tuple[str, str] = Depends(get_identity),
):
    tenant_id, user_id = identity
    try:
        mode = normalize_mode(payload.mode if payload.mode is not None else request.headers.get(MODE_HEADER))
        service.validate_message(payload.message)
    except (InvalidModeError, ChatValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if payload.conversation_id and not await db.get_conversation(payload.conversation_id, tenant_id, user_id):
        raise HTTPException(status_code=404, detail="Conversation not found")

    stop_event = asyncio.Event()
    context = RunContext(tenant_id=tenant_id, user_id=user_id, mode=mode, stop_event=stop_event)
    queue: asyncio.Queue = asyncio.Queue()
    streamer = SSEStreamer(queue)

    async def run_turn() -> None:
        try:
            turn = await service.handle_turn(payload, context, streamer)
            await queue.put(meta_event(turn))
            await queue.put({"type": "done"})
        except ConversationNotFoundError:
            await queue.put({"type": "error", "message": "Conversation not found"})
        except RunCancelledError:
            logger.info("Chat turn cancelled by client disconnect")
        except Exception:
            logger.exception("Chat turn failed")
            await queue.put({"type": "error", "message": GENERIC_FAILURE})
        finally:
            await queue.put(None)

    async def event_generator():
        task = asyncio.create_task(run_turn())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield sse_format(event)
            yield "data: [DONE]\n\n"
        finally:
            if not task.done():
                stop_event.set()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/api/conversations")
async def list_conversations(
    limit: int = 50,
    db: Database = Depends(get_db),
    identity: Tuple[str, str] = Depends(get_identity),
):
    tenant_id, user_id = identity
    conversations = await db.list_conversations(tenant_id, user_id, limit=limit)
    return {"conversations": conversations}


@router.get("/api/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    db: Database = Depends(get_db),
    identity: Tuple[str, str] = Depends(get_identity),
):
    convo = await db.get_conversation(conversation_id, *identity)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"conversation": convo}


@router.get("/api/conversations/{conversation_id}/messages")
async def get_conversation_messages(
    conversation_id: str,
    limit: int = 200,
    db: Database = Depends(get_db),
    identity: Tuple[str, str] = Depends(get_identity),
):
    convo = await db.get_conversation(conversation_id, *identity)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    messages = await db.list_messages(conversation_id, limit=limit)
    return {"messages": messages}


@router.patch("/api/conversations/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    payload: Dict[str, Any] = Body(default={}),
    db: Database = Depends(get_db),
    identity: Tuple[str, str] = Depends(get_identity),
):
    convo = await db.get_conversation(conversation_id, *identity)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    title = str(payload.get("title") or "").strip()
    if not title:
        raise HTTPException(status_code=400, detail="title is required")
    await db.update_conversation_title(conversation_id, title)
    return {"conversation": await db.get_conversation(conversation_id)}


@router.delete("/api/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    db: Database = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
    identity: Tuple[str, str] = Depends(get_identity),
):
    convo = await db.get_conversation(conversation_id, *identity)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    async with service.locks.hold(conversation_id):
        await db.delete_conversation(conversation_id)
    return {"ok": True}


@router.post("/api/knowledge")
async def ingest_knowledge(
    payload: KnowledgeIngestRequest,
    db: Database = Depends(get_db),
    embedder: EmbeddingClient = Depends(get_embedder),
    identity: Tuple[str, str] = Depends(get_identity),
):
    tenant_id = (payload.tenant_id or identity[0]).strip()
    stored = 0
    for doc in payload.documents:
        chunks = [c for c in doc.chunks if c.strip()]
        if not chunks:
            continue
        try:
            embeddings = await embedder.embed_many(chunks)
        except httpx.HTTPError as exc:
            logger.warning("Embedding failed for %s: %s", doc.source_url, exc)
            raise HTTPException(status_code=502, detail="Embedding backend unavailable")
        stored += await db.upsert_knowledge_chunks(
            tenant_id, doc.source_url, doc.source_title, chunks, embeddings, doc.metadata
        )
    return {"ok": True, "tenant_id": tenant_id, "documents": len(payload.documents), "chunks": stored}


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    llm_client: Optional[LLMClient] = None,
    embedder: Optional[EmbeddingClient] = None,
    tavily_client: Optional[TavilyClient] = None,
    gateway: Optional[HttpToolGateway] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        if app.state.gateway is not None:
            try:
                await app.state.gateway.refresh()
            except httpx.HTTPError as exc:
                logger.warning("Tool gateway unavailable at startup: %s", exc)
        try:
            yield
        finally:
            await app.state.chat_service.drain()
            await app.state.llm_client.close()
            await app.state.embedder.close()
            await app.state.tavily_client.close()
            if app.state.gateway is not None:
                await app.state.gateway.close()

    app = FastAPI(title="Skipper Consultant", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.llm_client = llm_client or LLMClient(
        settings.llm_base_url,
        settings.chat_model,
        api_key=settings.llm_api_key,
        max_output_tokens=settings.max_output_tokens,
        temperature=settings.temperature,
    )
    app.state.embedder = embedder or EmbeddingClient(
        settings.embedding_base_url or settings.llm_base_url,
        settings.embedding_model,
        api_key=settings.llm_api_key,
    )
    app.state.tavily_client = tavily_client or TavilyClient(settings.tavily_api_key, settings.web_search_depth)
    if gateway is None and settings.gateway_url:
        gateway = HttpToolGateway(settings.gateway_url, api_key=settings.gateway_api_key)
    app.state.gateway = gateway

    llm = app.state.llm_client
    summarizer = LLMSummarizer(llm, model=settings.summary_model)
    rewriter = LLMQueryRewriter(llm, model=settings.fast_model) if settings.use_query_rewrite else None
    knowledge = KnowledgePipeline(
        app.state.db,
        app.state.embedder,
        rewriter=rewriter,
        hyde=LLMHyDEGenerator(llm, model=settings.fast_model) if settings.use_hyde else None,
        global_tenant_id=settings.global_tenant_id,
        default_limit=settings.knowledge_search_limit,
        hyde_timeout_s=settings.hyde_timeout_s,
    )
    web = WebSearch(
        app.state.tavily_client,
        rewriter=rewriter,
        default_limit=settings.knowledge_search_limit,
        default_depth=settings.web_search_depth,
    )
    app.state.tool_executor = ToolExecutor(knowledge=knowledge, web=web, gateway=gateway)
    orchestrator = Orchestrator(
        llm,
        app.state.tool_executor,
        knowledge=knowledge,
        compactor=ContextCompactor(settings.prompt_token_budget, summarizer),
        max_rounds=settings.max_tool_rounds,
        pre_retrieval_max_tokens=settings.pre_retrieval_max_tokens,
    )
    app.state.chat_service = ChatService(app.state.db, orchestrator, settings, summarizer=summarizer)

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("CONSULTANT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "consultant.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
