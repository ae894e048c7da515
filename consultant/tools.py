import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from .errors import OrchestratorConfigError, UnsupportedToolError
from .retrieval import KnowledgePipeline, KnowledgeSearchError, WebSearch, WebSearchError
from .schemas import RunContext, ToolCall, ToolDetail, ToolOutcome, ToolSpec


logger = logging.getLogger("uvicorn.error")

SEARCH_KNOWLEDGE = "search_knowledge"
SEARCH_WEB = "search_web"

SEARCH_KNOWLEDGE_TOOL = ToolSpec(
    name=SEARCH_KNOWLEDGE,
    description="Search the platform knowledge base for product guidance and verified documentation.",
    parameters={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "What to look for."},
            "limit": {"type": "integer", "description": "Maximum results (default 5)."},
            "tenant_scope": {
                "type": "string",
                "enum": ["tenant", "global", "all"],
                "description": "tenant: your own docs, global: platform docs, all: both (default).",
            },
        },
        "required": ["query"],
    },
)

SEARCH_WEB_TOOL = ToolSpec(
    name=SEARCH_WEB,
    description="Search the public web for documentation or references when the knowledge base is insufficient.",
    parameters={
        "type": "object",
        "properties": {
            "query": {"type": "string"},
            "limit": {"type": "integer", "description": "Maximum results (default 5)."},
            "search_depth": {"type": "string", "enum": ["basic", "advanced"]},
        },
        "required": ["query"],
    },
)


class ToolGateway(Protocol):
    def available_tools(self) -> List[ToolSpec]: ...

    def has_tool(self, name: str) -> bool: ...

    async def call_tool(self, name: str, arguments: str) -> str: ...


ToolHandler = Callable[[str, RunContext], Awaitable[ToolOutcome]]


def _parse_arguments(name: str, arguments: str) -> Dict[str, Any]:
    if not arguments or not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as exc:
        raise ValueError(f"parse {name} arguments: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError(f"parse {name} arguments: expected an object")
    return parsed


def _int_arg(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class ToolExecutor:
    """Routes tool calls: knowledge and web search run locally, the rest go to the gateway."""

    def __init__(
        self,
        knowledge: Optional[KnowledgePipeline] = None,
        web: Optional[WebSearch] = None,
        gateway: Optional[ToolGateway] = None,
    ):
        self.knowledge = knowledge
        self.web = web
        self.gateway = gateway
        self._handlers: Dict[str, ToolHandler] = {
            SEARCH_KNOWLEDGE: self._search_knowledge,
            SEARCH_WEB: self._search_web,
        }

    def available_tools(self) -> List[ToolSpec]:
        tools: List[ToolSpec] = []
        if self.knowledge is not None:
            tools.append(SEARCH_KNOWLEDGE_TOOL)
        if self.web is not None and self.web.enabled:
            tools.append(SEARCH_WEB_TOOL)
        if self.gateway is not None:
            tools.extend(t for t in self.gateway.available_tools() if t.name not in self._handlers)
        return tools

    async def execute(self, call: ToolCall, context: RunContext) -> ToolOutcome:
        handler = self._handlers.get(call.name)
        if handler is not None:
            return await handler(call.arguments, context)
        return await self._call_gateway(call)

    async def _search_knowledge(self, arguments: str, context: RunContext) -> ToolOutcome:
        if self.knowledge is None:
            raise OrchestratorConfigError("knowledge search unavailable")
        args = _parse_arguments(SEARCH_KNOWLEDGE, arguments)
        query = str(args.get("query") or "").strip()
        if not query:
            raise KnowledgeSearchError("query is required")
        response = await self.knowledge.search(
            query,
            context.tenant_id,
            scope=str(args.get("tenant_scope") or ""),
            limit=_int_arg(args.get("limit")),
        )
        return ToolOutcome(
            content=response.context,
            sources=response.sources,
            detail=ToolDetail(title=f"Tool call: {SEARCH_KNOWLEDGE}", payload=response.model_dump()),
        )

    async def _search_web(self, arguments: str, context: RunContext) -> ToolOutcome:
        if self.web is None or not self.web.enabled:
            raise WebSearchError("search provider unavailable")
        args = _parse_arguments(SEARCH_WEB, arguments)
        response = await self.web.search(
            str(args.get("query") or ""),
            limit=_int_arg(args.get("limit")),
            search_depth=args.get("search_depth"),
        )
        return ToolOutcome(
            content=response.context,
            sources=response.sources,
            detail=ToolDetail(title=f"Tool call: {SEARCH_WEB}", payload=response.model_dump()),
        )

    async def _call_gateway(self, call: ToolCall) -> ToolOutcome:
        if self.gateway is None:
            raise UnsupportedToolError(f"tool {call.name!r} unavailable: gateway not configured")
        if not self.gateway.has_tool(call.name):
            raise UnsupportedToolError(f"unknown tool {call.name!r}")
        content = await self.gateway.call_tool(call.name, call.arguments)
        try:
            payload: Any = json.loads(content)
        except json.JSONDecodeError:
            payload = {"result": content}
        return ToolOutcome(content=content, detail=ToolDetail(title=f"Tool call: {call.name}", payload=payload))
