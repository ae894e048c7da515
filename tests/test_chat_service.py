import pytest

from consultant.chat import (
    ChatService,
    ConversationNotFoundError,
    build_prompt_messages,
    derive_title,
    normalize_page_url,
    trim_history,
)
from consultant.config import AppSettings
from consultant.db import Database
from consultant.orchestrator import Orchestrator
from consultant.prompts import DOCS_MODE_SUFFIX
from consultant.schemas import ChatRequest, Message, RunContext
from tests.fakes import FakeLLM, FakeSummarizer, RecordingStreamer, split_chunks


ANSWER = "[confidence:best_guess]\nTry lowering the bitrate.\n[sources]\n[/sources]\n"


async def _service(tmp_path, llm, summarizer=None, **overrides):
    settings = AppSettings(database_path=str(tmp_path / "chat.db"), **overrides)
    db = Database(settings.database_path)
    await db.init()
    return ChatService(db, Orchestrator(llm), settings, summarizer=summarizer), db


def test_derive_title_cuts_at_word_boundary():
    assert derive_title("  Why   is my stream buffering? ") == "Why is my stream buffering?"
    long_title = derive_title("word " * 30)
    assert long_title.endswith("...")
    assert len(long_title) <= 63
    assert "  " not in long_title


def test_normalize_page_url_accepts_http_only():
    assert normalize_page_url("https://docs.example.com/ingest") == "https://docs.example.com/ingest"
    assert normalize_page_url("javascript:alert(1)") is None
    assert normalize_page_url(None) is None
    assert len(normalize_page_url("https://x.example/" + "a" * 600)) == 500


def test_trim_history_keeps_newest_within_budget():
    history = [Message(role="user", content="one two three"), Message(role="assistant", content="four five")]
    assert [m.content for m in trim_history(history, 2)] == ["four five"]
    assert trim_history(history, 1) == []
    assert trim_history(history, 100) == history


def test_build_prompt_messages_adds_mode_page_and_summary():
    history = [
        Message(role="user", content="earlier question"),
        Message(role="tool", content="raw tool output"),
        Message(role="assistant", content=""),
    ]
    messages = build_prompt_messages(
        history,
        "follow up",
        mode="docs",
        page_url="https://docs.example.com/hls",
        summary="User runs OBS.",
    )
    system = messages[0].content
    assert DOCS_MODE_SUFFIX.strip() in system
    assert "The user is currently viewing: https://docs.example.com/hls" in system
    assert system.endswith("User runs OBS.")
    assert [m.role for m in messages] == ["system", "user", "user"]
    assert messages[-1].content == "follow up"


@pytest.mark.asyncio
async def test_handle_turn_creates_conversation_and_persists(tmp_path):
    llm = FakeLLM(rounds=[split_chunks(ANSWER)])
    service, db = await _service(tmp_path, llm)
    streamer = RecordingStreamer()
    turn = await service.handle_turn(
        ChatRequest(message="Why is my stream buffering?"),
        RunContext(tenant_id="tenant-a", user_id="user-1"),
        streamer,
    )
    assert turn.created is True
    assert turn.title == "Why is my stream buffering?"
    assert streamer.text == "Try lowering the bitrate.\n"

    messages = await db.list_messages(turn.conversation_id)
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[1]["content"] == "Try lowering the bitrate."
    assert messages[1]["confidence"] == "best_guess"
    assert messages[1]["tokens_output"] > 0
    assert (await db.get_conversation(turn.conversation_id, "tenant-a", "user-1")) is not None


@pytest.mark.asyncio
async def test_follow_up_turn_sees_history(tmp_path):
    llm = FakeLLM(rounds=[split_chunks(ANSWER), split_chunks(ANSWER)])
    service, _ = await _service(tmp_path, llm)
    context = RunContext(tenant_id="tenant-a", user_id="user-1")
    first = await service.handle_turn(ChatRequest(message="Why is my stream buffering?"), context)
    second = await service.handle_turn(
        ChatRequest(message="And on mobile?", conversation_id=first.conversation_id), context
    )
    assert second.created is False
    prompt = llm.calls[1]["messages"]
    assert [m.role for m in prompt] == ["system", "user", "assistant", "user"]
    assert prompt[2].content == "Try lowering the bitrate."


class FailingOnceLLM(FakeLLM):
    async def complete(self, messages, tools):
        if not self.calls:
            self.calls.append({"messages": list(messages), "tools": []})
            raise RuntimeError("model unavailable")
        async for chunk in super().complete(messages, tools):
            yield chunk


@pytest.mark.asyncio
async def test_failed_turn_leaves_no_unanswered_message(tmp_path):
    llm = FailingOnceLLM(rounds=[split_chunks(ANSWER)])
    service, db = await _service(tmp_path, llm)
    context = RunContext(tenant_id="tenant-a", user_id="user-1")
    convo = await db.create_conversation("tenant-a", "user-1")
    with pytest.raises(RuntimeError):
        await service.handle_turn(ChatRequest(message="First try", conversation_id=convo["id"]), context)
    assert await db.list_messages(convo["id"]) == []

    await service.handle_turn(ChatRequest(message="Second try", conversation_id=convo["id"]), context)
    assert [m.role for m in llm.calls[1]["messages"]] == ["system", "user"]
    rows = await db.list_messages(convo["id"])
    assert [(m["role"], m["content"]) for m in rows] == [("user", "Second try"), ("assistant", "Try lowering the bitrate.")]


@pytest.mark.asyncio
async def test_unknown_or_foreign_conversation_is_not_found(tmp_path):
    llm = FakeLLM(rounds=[split_chunks(ANSWER)])
    service, db = await _service(tmp_path, llm)
    convo = await db.create_conversation("tenant-b", "user-1")
    context = RunContext(tenant_id="tenant-a", user_id="user-1")
    with pytest.raises(ConversationNotFoundError):
        await service.handle_turn(ChatRequest(message="hi", conversation_id="missing"), context)
    with pytest.raises(ConversationNotFoundError):
        await service.handle_turn(ChatRequest(message="hi", conversation_id=convo["id"]), context)
    assert llm.calls == []
    assert len(service.locks) == 0


@pytest.mark.asyncio
async def test_summary_regenerates_in_background(tmp_path):
    llm = FakeLLM(rounds=[split_chunks(ANSWER)])
    summarizer = FakeSummarizer("User is chasing buffering on OBS.")
    service, db = await _service(
        tmp_path, llm, summarizer, summary_threshold=2, summary_interval=2, summary_keep_recent=1
    )
    turn = await service.handle_turn(
        ChatRequest(message="Why is my stream buffering?"), RunContext(tenant_id="tenant-a", user_id="user-1")
    )
    await service.drain()
    assert await db.get_summary(turn.conversation_id) == "User is chasing buffering on OBS."
    assert [m.content for m in summarizer.calls[0]] == ["Why is my stream buffering?"]


@pytest.mark.asyncio
async def test_summary_failure_is_logged_not_raised(tmp_path):
    llm = FakeLLM(rounds=[split_chunks(ANSWER)])
    service, db = await _service(
        tmp_path,
        llm,
        FakeSummarizer(RuntimeError("model offline")),
        summary_threshold=2,
        summary_interval=2,
        summary_keep_recent=0,
    )
    turn = await service.handle_turn(
        ChatRequest(message="Why is my stream buffering?"), RunContext(tenant_id="tenant-a", user_id="user-1")
    )
    await service.drain()
    assert await db.get_summary(turn.conversation_id) is None


@pytest.mark.asyncio
async def test_summary_not_scheduled_below_threshold(tmp_path):
    llm = FakeLLM(rounds=[split_chunks(ANSWER)])
    summarizer = FakeSummarizer()
    service, _ = await _service(tmp_path, llm, summarizer)
    await service.handle_turn(ChatRequest(message="hi"), RunContext(tenant_id="tenant-a", user_id="user-1"))
    await service.drain()
    assert summarizer.calls == []
