import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


Role = Literal["system", "user", "assistant", "tool"]
Confidence = Literal["verified", "sourced", "best_guess", "unknown"]
SourceKind = Literal["knowledge_base", "web", "unknown"]

CONFIDENCE_VERIFIED = "verified"
CONFIDENCE_SOURCED = "sourced"
CONFIDENCE_BEST_GUESS = "best_guess"
CONFIDENCE_UNKNOWN = "unknown"

SOURCE_KNOWLEDGE_BASE = "knowledge_base"
SOURCE_WEB = "web"
SOURCE_UNKNOWN = "unknown"


class ToolCall(BaseModel):
    id: str = ""
    name: str = ""
    arguments: str = ""


class Message(BaseModel):
    role: Role
    content: str = ""
    tool_name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)


class ChatChunk(BaseModel):
    content: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)


class ToolSpec(BaseModel):
    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class Source(BaseModel):
    title: str = ""
    url: str = ""
    kind: SourceKind = SOURCE_UNKNOWN


class ToolDetail(BaseModel):
    title: str = ""
    payload: Any = None


class ToolOutcome(BaseModel):
    content: str = ""
    sources: List[Source] = Field(default_factory=list)
    detail: ToolDetail = Field(default_factory=ToolDetail)


class ToolCallRecord(BaseModel):
    name: str
    arguments: str = ""
    error: Optional[str] = None


class ConfidenceBlock(BaseModel):
    content: str = ""
    confidence: Confidence = CONFIDENCE_UNKNOWN
    sources: List[Source] = Field(default_factory=list)


class TokenCounts(BaseModel):
    input: int = 0
    output: int = 0


class OrchestratorResult(BaseModel):
    content: str = ""
    confidence: Confidence = CONFIDENCE_UNKNOWN
    sources: List[Source] = Field(default_factory=list)
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)
    details: List[ToolDetail] = Field(default_factory=list)
    tokens: TokenCounts = Field(default_factory=TokenCounts)


class KnowledgeChunk(BaseModel):
    tenant_id: str = ""
    source_url: str = ""
    source_title: str = ""
    text: str = ""
    similarity: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class KnowledgeResult(BaseModel):
    title: str
    url: str = ""
    score: float = 0.0
    section: Optional[str] = None
    snippet: str = ""


class KnowledgeSearchResponse(BaseModel):
    query: str
    context: str = ""
    results: List[KnowledgeResult] = Field(default_factory=list)
    sources: List[Source] = Field(default_factory=list)


class WebResult(BaseModel):
    title: str
    url: str = ""
    snippet: str = ""
    score: Optional[float] = None


class WebSearchResponse(BaseModel):
    query: str
    context: str = ""
    results: List[WebResult] = Field(default_factory=list)
    sources: List[Source] = Field(default_factory=list)


class ChatRequest(BaseModel):
    message: str
    conversation_id: Optional[str] = None
    page_url: Optional[str] = Field(default=None, alias="pageUrl")
    mode: Optional[str] = None

    model_config = {"populate_by_name": True}


class KnowledgeDocument(BaseModel):
    source_url: str
    source_title: str = ""
    chunks: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class KnowledgeIngestRequest(BaseModel):
    documents: List[KnowledgeDocument] = Field(default_factory=list)
    tenant_id: Optional[str] = None


@dataclass
class RunContext:
    """Per-request values the orchestrator reads but never changes."""

    tenant_id: str = ""
    user_id: str = ""
    mode: str = ""
    stop_event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()
