import asyncio
from typing import Any, Dict, List, Optional, Union

from consultant.schemas import ChatChunk, KnowledgeChunk, Message, ToolCall, ToolSpec


def split_chunks(text: str, size: int = 7) -> List[ChatChunk]:
    return [ChatChunk(content=text[i : i + size]) for i in range(0, len(text), size)]


def tool_call_chunk(call_id: str, name: str, arguments: str = "{}") -> ChatChunk:
    return ChatChunk(tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments)])


DEFAULT_REPLY = "[confidence:best_guess]\nNo scripted reply.\n[sources]\n[/sources]\n"


class FakeLLM:
    """Scripted streaming LLM. Each entry in ``rounds`` is the chunk list for one ``complete`` call."""

    def __init__(
        self,
        rounds: Optional[List[List[ChatChunk]]] = None,
        text_responses: Optional[Dict[str, Union[str, Exception]]] = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.rounds = list(rounds or [])
        self.text_responses = text_responses or {}
        self.delay_seconds = delay_seconds
        self.calls: List[Dict[str, Any]] = []
        self.text_calls: List[Dict[str, Any]] = []
        self.closed = False

    async def complete(self, messages: List[Message], tools: List[ToolSpec]):
        self.calls.append(
            {
                "messages": [m.model_copy() for m in messages],
                "tools": [t.name for t in tools],
            }
        )
        chunks = self.rounds.pop(0) if self.rounds else split_chunks(DEFAULT_REPLY)
        for chunk in chunks:
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            yield chunk

    async def complete_text(
        self,
        messages: List[Message],
        max_tokens: int = 512,
        temperature: Optional[float] = None,
        model: Optional[str] = None,
    ) -> str:
        system_text = messages[0].content if messages else ""
        user_text = messages[-1].content if messages else ""
        self.text_calls.append({"system": system_text, "user": user_text, "model": model})
        for marker, response in self.text_responses.items():
            if marker in system_text:
                if isinstance(response, Exception):
                    raise response
                return response
        return ""

    async def close(self) -> None:
        self.closed = True


class FakeEmbedder:
    def __init__(self, vector: Optional[List[float]] = None, error: Optional[Exception] = None) -> None:
        self.vector = vector or [1.0, 0.0, 0.0]
        self.error = error
        self.calls: List[str] = []

    async def embed_query(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.error:
            raise self.error
        return list(self.vector)

    async def embed_many(self, texts: List[str]) -> List[List[float]]:
        return [await self.embed_query(t) for t in texts]

    async def close(self) -> None:
        return None


class FakeKnowledgeStore:
    def __init__(self, results: Optional[Dict[str, Union[List[KnowledgeChunk], Exception]]] = None) -> None:
        self.results = results or {}
        self.calls: List[Dict[str, Any]] = []

    async def hybrid_search(
        self, tenant_id: str, embedding: List[float], query_text: str, limit: int
    ) -> List[KnowledgeChunk]:
        self.calls.append({"tenant_id": tenant_id, "embedding": embedding, "query": query_text, "limit": limit})
        result = self.results.get(tenant_id, [])
        if isinstance(result, Exception):
            raise result
        return list(result)[:limit]


class FakeGateway:
    def __init__(self, tools: Optional[Dict[str, Union[str, Exception]]] = None) -> None:
        self.tools = tools or {}
        self.calls: List[Dict[str, str]] = []
        self.refreshed = 0

    async def refresh(self) -> List[ToolSpec]:
        self.refreshed += 1
        return self.available_tools()

    def available_tools(self) -> List[ToolSpec]:
        return [ToolSpec(name=name, description=f"{name} tool") for name in self.tools]

    def has_tool(self, name: str) -> bool:
        return name in self.tools

    async def call_tool(self, name: str, arguments: str) -> str:
        self.calls.append({"name": name, "arguments": arguments})
        result = self.tools[name]
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self) -> None:
        return None


class FakeTavilyClient:
    def __init__(self, api_key: Optional[str] = "test-key", response: Optional[Dict[str, Any]] = None) -> None:
        self.api_key = api_key
        self.response = response or {"results": []}
        self.search_calls: List[Dict[str, Any]] = []

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: str, search_depth: Optional[str] = None, max_results: int = 5) -> Dict[str, Any]:
        self.search_calls.append({"query": query, "search_depth": search_depth, "max_results": max_results})
        return self.response

    async def close(self) -> None:
        return None


class FakeSummarizer:
    def __init__(self, summary: Union[str, Exception] = "The user asked about ingest errors.") -> None:
        self.summary = summary
        self.calls: List[List[Message]] = []

    async def summarize(self, messages: List[Message]) -> str:
        self.calls.append(list(messages))
        if isinstance(self.summary, Exception):
            raise self.summary
        return self.summary


class RecordingStreamer:
    def __init__(self) -> None:
        self.tokens: List[str] = []

    async def send_token(self, text: str) -> None:
        self.tokens.append(text)

    @property
    def text(self) -> str:
        return "".join(self.tokens)


class RecordingToolStreamer(RecordingStreamer):
    def __init__(self) -> None:
        super().__init__()
        self.events: List[tuple] = []

    async def send_tool_start(self, name: str) -> None:
        self.events.append(("start", name))

    async def send_tool_end(self, name: str, error: str = "") -> None:
        self.events.append(("end", name, error))
