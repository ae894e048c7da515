import logging
from typing import List, Optional, Protocol

from .confidence import count_message_tokens
from .llm import LLMClient
from .prompts import SUMMARY_SYSTEM, TRUNCATION_NOTICE
from .schemas import Message


logger = logging.getLogger("uvicorn.error")

SUMMARY_TRIGGER_RATIO = 0.8
KEEP_USER_TURNS = 2
KEEP_RECENT = 4
KEEP_RECENT_AGGRESSIVE = 2


class Summarizer(Protocol):
    async def summarize(self, messages: List[Message]) -> str: ...


def format_transcript(messages: List[Message]) -> str:
    lines = []
    for msg in messages:
        if not msg.content.strip():
            continue
        label = f"tool {msg.tool_name}" if msg.role == "tool" and msg.tool_name else msg.role
        lines.append(f"{label}: {msg.content.strip()}")
    return "\n\n".join(lines)


class LLMSummarizer:
    def __init__(self, client: LLMClient, model: Optional[str] = None, max_tokens: int = 400):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens

    async def summarize(self, messages: List[Message]) -> str:
        transcript = format_transcript(messages)
        if not transcript:
            return ""
        prompt = [Message(role="system", content=SUMMARY_SYSTEM), Message(role="user", content=transcript)]
        return await self.client.complete_text(prompt, max_tokens=self.max_tokens, temperature=0.1, model=self.model)


def prune_stale_tool_messages(messages: List[Message], keep_user_turns: int = KEEP_USER_TURNS) -> List[Message]:
    """Drop tool output that predates the last ``keep_user_turns`` user messages."""
    user_positions = [i for i, msg in enumerate(messages) if msg.role == "user"]
    if len(user_positions) < keep_user_turns:
        return list(messages)
    cutoff = user_positions[-keep_user_turns]
    pruned: List[Message] = []
    for i, msg in enumerate(messages):
        if i < cutoff and msg.role == "tool":
            continue
        if i < cutoff and msg.role == "assistant" and msg.tool_calls:
            # The matching tool results are gone, so the calls must go too.
            if not msg.content.strip():
                continue
            msg = msg.model_copy(update={"tool_calls": []})
        pruned.append(msg)
    return pruned


class ContextCompactor:
    """Fit a message list into a whitespace-token budget.

    Tier 0 drops stale tool output. Tier 1 summarizes everything between the
    system message and the last 4 messages once the list passes 80% of the
    budget, tier 2 does the same keeping only 2, and tier 3 collapses to
    ``[system, notice, last]`` when still over budget.
    """

    def __init__(self, budget: int, summarizer: Optional[Summarizer] = None, trigger_ratio: float = SUMMARY_TRIGGER_RATIO):
        self.budget = budget
        self.summarizer = summarizer
        self.trigger_ratio = trigger_ratio

    async def compact(self, messages: List[Message]) -> List[Message]:
        if not messages:
            return []
        current = prune_stale_tool_messages(messages)
        tokens = count_message_tokens(current)

        if self.summarizer is not None and tokens > self.budget * self.trigger_ratio:
            current, tokens = await self._try_summarize(current, tokens, KEEP_RECENT)
        if self.summarizer is not None and tokens > self.budget:
            current, tokens = await self._try_summarize(current, tokens, KEEP_RECENT_AGGRESSIVE)
        if tokens > self.budget:
            logger.warning("Context still over budget (%d > %d tokens); truncating history", tokens, self.budget)
            current = truncate_to_last(current)
        return current

    async def _try_summarize(self, messages: List[Message], tokens: int, keep: int):
        candidate = await self._summarize_middle(messages, keep)
        if candidate is None:
            return messages, tokens
        candidate_tokens = count_message_tokens(candidate)
        if candidate_tokens > tokens:
            return messages, tokens
        return candidate, candidate_tokens

    async def _summarize_middle(self, messages: List[Message], keep: int) -> Optional[List[Message]]:
        head: List[Message] = []
        rest = list(messages)
        if rest and rest[0].role == "system":
            head, rest = [rest[0]], rest[1:]
        split = len(rest) - keep
        # Keep tool results attached to the assistant turn that requested them.
        while split > 0 and rest[split].role == "tool":
            split -= 1
        if split <= 0:
            return None
        middle, tail = rest[:split], rest[split:]
        try:
            summary = await self.summarizer.summarize(middle)
        except Exception as exc:
            logger.warning("Conversation summarization failed: %s", exc)
            return None
        summary = (summary or "").strip()
        if not summary:
            return None
        return head + [Message(role="user", content=f"[Summary of earlier conversation: {summary}]")] + tail


def truncate_to_last(messages: List[Message]) -> List[Message]:
    notice = Message(role="user", content=TRUNCATION_NOTICE)
    last = messages[-1]
    if messages[0].role == "system":
        if len(messages) == 1:
            return [last, notice]
        return [messages[0], notice, last]
    return [notice, last]
