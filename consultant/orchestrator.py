import logging
import re
from typing import AsyncIterator, List, Optional, Protocol, Tuple, runtime_checkable

from .compaction import ContextCompactor
from .confidence import (
    ConfidenceStreamFilter,
    append_sources,
    count_message_tokens,
    estimate_tokens,
    join_confidence_content,
    parse_confidence_blocks,
    sources_from_blocks,
    summarize_confidence,
)
from .errors import OrchestratorConfigError, RunCancelledError, UnsupportedToolError
from .policy import AccessPolicy
from .prompts import CONVERGENCE_NUDGE, MAX_ROUNDS_NOTICE, PRE_RETRIEVAL_FOOTER, PRE_RETRIEVAL_HEADER
from .retrieval import KnowledgePipeline
from .schemas import (
    ChatChunk,
    Message,
    OrchestratorResult,
    RunContext,
    TokenCounts,
    ToolCall,
    ToolCallRecord,
    ToolDetail,
    ToolOutcome,
    ToolSpec,
)
from .toolcalls import merge_tool_calls
from .tools import ToolExecutor


logger = logging.getLogger("uvicorn.error")

DEFAULT_MAX_ROUNDS = 5
PRE_RETRIEVAL_LIMIT = 3
PRE_RETRIEVAL_PER_SOURCE = 2
DEFAULT_PRE_RETRIEVAL_TOKENS = 800

_TOKEN_RE = re.compile(r"\S+")


class LLMProvider(Protocol):
    def complete(self, messages: List[Message], tools: List[ToolSpec]) -> AsyncIterator[ChatChunk]: ...


class TokenStreamer(Protocol):
    async def send_token(self, text: str) -> None: ...


@runtime_checkable
class ToolEventStreamer(Protocol):
    async def send_tool_start(self, name: str) -> None: ...

    async def send_tool_end(self, name: str, error: str = "") -> None: ...


def truncate_tokens(text: str, max_tokens: int) -> str:
    if max_tokens <= 0:
        return ""
    matches = list(_TOKEN_RE.finditer(text))
    if len(matches) <= max_tokens:
        return text
    return text[: matches[max_tokens - 1].end()] + " ..."


def inject_system_context(messages: List[Message], block: str) -> List[Message]:
    if messages and messages[0].role == "system":
        system = messages[0].model_copy(update={"content": messages[0].content + block})
        return [system] + messages[1:]
    return [Message(role="system", content=block.strip())] + messages


class Orchestrator:
    """Round-based tool loop around a streaming LLM.

    Each round streams one completion. Tool calls requested in that round are
    executed in first-seen order and their results are appended before the next
    round. The loop stops when a round produces no tool calls or after
    ``max_rounds``.
    """

    def __init__(
        self,
        llm: Optional[LLMProvider],
        tools: Optional[ToolExecutor] = None,
        *,
        knowledge: Optional[KnowledgePipeline] = None,
        compactor: Optional[ContextCompactor] = None,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        pre_retrieval_max_tokens: int = DEFAULT_PRE_RETRIEVAL_TOKENS,
    ):
        self.llm = llm
        self.tools = tools
        self.knowledge = knowledge
        self.compactor = compactor
        self.max_rounds = max_rounds if max_rounds > 0 else DEFAULT_MAX_ROUNDS
        self.pre_retrieval_max_tokens = pre_retrieval_max_tokens

    async def run(
        self,
        messages: List[Message],
        streamer: Optional[TokenStreamer] = None,
        context: Optional[RunContext] = None,
    ) -> OrchestratorResult:
        if self.llm is None:
            raise OrchestratorConfigError("LLM provider not configured")
        context = context or RunContext()
        policy = AccessPolicy(context.mode)

        working = await self._pre_retrieve(list(messages), context)
        if self.compactor is not None:
            working = await self.compactor.compact(working)
        tool_specs = policy.filter_tools(self.tools.available_tools()) if self.tools is not None else []

        result = OrchestratorResult()
        running: List[str] = []
        input_tokens = 0
        nudged = False

        for round_index in range(self.max_rounds):
            if context.cancelled:
                raise RunCancelledError("run cancelled")
            input_tokens += count_message_tokens(working)

            round_text, calls = await self._stream_round(working, tool_specs, streamer)
            running.append(round_text)
            if not calls:
                break

            working.append(Message(role="assistant", content=round_text, tool_calls=calls))
            for call in calls:
                outcome = await self._run_tool(call, context, policy, streamer, result)
                working.append(
                    Message(
                        role="tool",
                        content=outcome.content or f"Tool {call.name} returned no output.",
                        tool_name=call.name,
                        tool_call_id=call.id,
                    )
                )
                result.sources = append_sources(result.sources, outcome.sources)
                if outcome.detail.title:
                    result.details.append(outcome.detail)

            if round_index == self.max_rounds - 2 and not nudged:
                working.append(Message(role="user", content=CONVERGENCE_NUDGE))
                nudged = True
            if round_index == self.max_rounds - 1:
                logger.info("Run hit the %d-round tool limit without a final answer", self.max_rounds)
                running.append(MAX_ROUNDS_NOTICE)
                if streamer is not None:
                    closing = ConfidenceStreamFilter(streamer.send_token)
                    await closing.write(MAX_ROUNDS_NOTICE)
                    await closing.flush()

        text = "".join(running)
        blocks = parse_confidence_blocks(text)
        result.content = join_confidence_content(blocks)
        result.confidence = summarize_confidence(blocks)
        result.sources = append_sources(result.sources, sources_from_blocks(blocks))
        result.tokens = TokenCounts(input=input_tokens, output=estimate_tokens(result.content))
        return result

    async def _stream_round(
        self,
        messages: List[Message],
        tool_specs: List[ToolSpec],
        streamer: Optional[TokenStreamer],
    ) -> Tuple[str, List[ToolCall]]:
        stream_filter = ConfidenceStreamFilter(streamer.send_token) if streamer is not None else None
        parts: List[str] = []
        calls: List[ToolCall] = []
        async for chunk in self.llm.complete(messages, tool_specs):
            if chunk.content:
                parts.append(chunk.content)
                if stream_filter is not None:
                    await stream_filter.write(chunk.content)
            if chunk.tool_calls:
                calls = merge_tool_calls(calls, chunk.tool_calls)
        if stream_filter is not None:
            await stream_filter.flush()
        return "".join(parts), calls

    async def _run_tool(
        self,
        call: ToolCall,
        context: RunContext,
        policy: AccessPolicy,
        streamer: Optional[TokenStreamer],
        result: OrchestratorResult,
    ) -> ToolOutcome:
        events = streamer if isinstance(streamer, ToolEventStreamer) else None
        record = ToolCallRecord(name=call.name, arguments=call.arguments)
        if events is not None:
            await events.send_tool_start(call.name)

        error = ""
        outcome = policy.check(call.name, call.arguments)
        if outcome is None:
            try:
                if self.tools is None:
                    raise UnsupportedToolError(f"unknown tool {call.name!r}")
                outcome = await self.tools.execute(call, context)
            except OrchestratorConfigError:
                raise
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__
                logger.warning("Tool %s failed: %s", call.name, error)
                record.error = error
                outcome = ToolOutcome(
                    content=f"Tool {call.name} failed: {error}",
                    detail=ToolDetail(title=f"Tool call: {call.name}", payload={"error": error}),
                )
        else:
            logger.info("Tool %s blocked in %s mode", call.name, policy.label)

        if events is not None:
            await events.send_tool_end(call.name, error)
        result.tool_calls.append(record)
        return outcome

    async def _pre_retrieve(self, messages: List[Message], context: RunContext) -> List[Message]:
        """Best-effort knowledge lookup for the latest user message."""
        if self.knowledge is None or not messages:
            return messages
        last = messages[-1]
        if last.role != "user" or not last.content.strip():
            return messages
        try:
            response = await self.knowledge.search(
                last.content,
                context.tenant_id,
                limit=PRE_RETRIEVAL_LIMIT,
                expand=False,
                max_per_source=PRE_RETRIEVAL_PER_SOURCE,
            )
        except Exception as exc:
            logger.debug("Pre-retrieval skipped: %s", exc)
            return messages
        if not response.results:
            return messages
        block = PRE_RETRIEVAL_HEADER + truncate_tokens(response.context, self.pre_retrieval_max_tokens) + PRE_RETRIEVAL_FOOTER
        return inject_system_context(messages, block)
