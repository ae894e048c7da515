import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional, Set

from .compaction import Summarizer
from .confidence import estimate_tokens
from .config import AppSettings
from .db import Database
from .locks import ConversationLocks
from .orchestrator import Orchestrator, TokenStreamer
from .policy import MODE_DOCS
from .prompts import CONSULTANT_SYSTEM, DOCS_MODE_SUFFIX, PAGE_CONTEXT_TEMPLATE, SUMMARY_CONTEXT_HEADER
from .schemas import ChatRequest, Message, OrchestratorResult, RunContext


logger = logging.getLogger("uvicorn.error")

MAX_TITLE_CHARS = 60
MAX_PAGE_URL_CHARS = 500
HISTORY_ROLES = {"user", "assistant"}


class ChatValidationError(ValueError):
    pass


class ConversationNotFoundError(LookupError):
    pass


@dataclass
class ChatTurn:
    conversation_id: str
    title: str
    created: bool
    result: OrchestratorResult


def derive_title(message: str) -> str:
    text = " ".join(message.split())
    if len(text) <= MAX_TITLE_CHARS:
        return text
    cut = text[:MAX_TITLE_CHARS].rsplit(" ", 1)[0] or text[:MAX_TITLE_CHARS]
    return cut.rstrip() + "..."


def normalize_page_url(url: Optional[str]) -> Optional[str]:
    cleaned = (url or "").strip()
    if not cleaned.lower().startswith(("http://", "https://")):
        return None
    return cleaned[:MAX_PAGE_URL_CHARS]


def trim_history(history: List[Message], budget: int) -> List[Message]:
    """Keep the newest messages that fit in ``budget`` whitespace tokens."""
    kept: List[Message] = []
    used = 0
    for msg in reversed(history):
        cost = estimate_tokens(msg.content)
        if used + cost > budget:
            break
        used += cost
        kept.append(msg)
    kept.reverse()
    return kept


def build_system_prompt(mode: str = "", page_url: Optional[str] = None, summary: Optional[str] = None) -> str:
    prompt = CONSULTANT_SYSTEM
    if mode == MODE_DOCS:
        prompt += DOCS_MODE_SUFFIX
    page = normalize_page_url(page_url)
    if page:
        prompt += PAGE_CONTEXT_TEMPLATE.format(url=page)
    if summary and summary.strip():
        prompt += SUMMARY_CONTEXT_HEADER + summary.strip()
    return prompt


def build_prompt_messages(
    history: List[Message],
    user_message: str,
    *,
    mode: str = "",
    page_url: Optional[str] = None,
    summary: Optional[str] = None,
    history_budget: int = 6000,
) -> List[Message]:
    visible = [m for m in history if m.role in HISTORY_ROLES and m.content.strip()]
    messages = [Message(role="system", content=build_system_prompt(mode, page_url, summary))]
    messages.extend(trim_history(visible, history_budget))
    messages.append(Message(role="user", content=user_message))
    return messages


class ChatService:
    """One chat turn: lock the conversation, load history, run the orchestrator, persist."""

    def __init__(
        self,
        db: Database,
        orchestrator: Orchestrator,
        settings: AppSettings,
        *,
        summarizer: Optional[Summarizer] = None,
        locks: Optional[ConversationLocks] = None,
    ):
        self.db = db
        self.orchestrator = orchestrator
        self.settings = settings
        self.summarizer = summarizer
        self.locks = locks or ConversationLocks()
        self.background_tasks: Set[asyncio.Task] = set()

    def validate_message(self, message: str) -> str:
        text = (message or "").strip()
        if not text:
            raise ChatValidationError("message is required")
        if len(text) > self.settings.max_message_chars:
            raise ChatValidationError(f"message exceeds {self.settings.max_message_chars} characters")
        return text

    async def handle_turn(
        self,
        request: ChatRequest,
        context: RunContext,
        streamer: Optional[TokenStreamer] = None,
    ) -> ChatTurn:
        text = self.validate_message(request.message)
        conversation_id = request.conversation_id or uuid.uuid4().hex
        async with self.locks.hold(conversation_id):
            created = False
            convo = None
            if request.conversation_id:
                convo = await self.db.get_conversation(conversation_id, context.tenant_id, context.user_id)
                if convo is None:
                    raise ConversationNotFoundError(conversation_id)
            else:
                convo = await self.db.create_conversation(
                    context.tenant_id, context.user_id, title=derive_title(text), conversation_id=conversation_id
                )
                created = True

            rows = await self.db.list_messages(conversation_id, limit=self.settings.max_history_messages)
            history = [Message(role=r["role"], content=r["content"] or "") for r in rows if r["role"] in HISTORY_ROLES]
            summary = await self.db.get_summary(conversation_id)
            prompt = build_prompt_messages(
                history,
                text,
                mode=context.mode,
                page_url=request.page_url,
                summary=summary,
                history_budget=self.settings.prompt_token_budget,
            )

            result = await self.orchestrator.run(prompt, streamer, context)
            # Both sides of the exchange are written only after a completed run.
            await self.db.add_message(conversation_id, "user", text)
            await self.db.add_message(
                conversation_id,
                "assistant",
                result.content,
                confidence=result.confidence,
                sources=[s.model_dump() for s in result.sources],
                tool_calls=[c.model_dump() for c in result.tool_calls],
                tokens_input=result.tokens.input,
                tokens_output=result.tokens.output,
            )
            count = await self.db.count_messages(conversation_id)

        if self._summary_due(count):
            self.schedule_summary(conversation_id)
        return ChatTurn(conversation_id=conversation_id, title=convo["title"], created=created, result=result)

    def _summary_due(self, count: int) -> bool:
        if self.summarizer is None:
            return False
        interval = max(1, self.settings.summary_interval)
        return count >= self.settings.summary_threshold and count % interval == 0

    def schedule_summary(self, conversation_id: str) -> asyncio.Task:
        """Regenerate the conversation summary outside the request's lifetime."""
        task = asyncio.create_task(self._regenerate_summary(conversation_id))
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task

    async def _regenerate_summary(self, conversation_id: str) -> None:
        try:
            rows = await self.db.list_messages(conversation_id, limit=10000)
            keep = max(0, self.settings.summary_keep_recent)
            older = rows[:-keep] if keep else rows
            messages = [
                Message(role=r["role"], content=r["content"] or "")
                for r in older
                if r["role"] in HISTORY_ROLES and (r["content"] or "").strip()
            ]
            if not messages:
                return
            summary = (await self.summarizer.summarize(messages) or "").strip()
            if not summary:
                logger.warning("Summary for conversation %s came back empty", conversation_id)
                return
            await self.db.update_summary(conversation_id, summary)
            logger.info("Conversation %s summary updated (%d messages)", conversation_id, len(messages))
        except Exception:
            logger.exception("Summary regeneration failed for conversation %s", conversation_id)

    async def drain(self, timeout: float = 10.0) -> None:
        pending = [t for t in self.background_tasks if not t.done()]
        if pending:
            await asyncio.wait(pending, timeout=timeout)
