"""Confidence-block wire format.

The model tags each answer section like this::

    [confidence:sourced]
    Restart the ingest node.
    [sources]
    - Runbook — https://docs.example.com/runbook
    [/sources]

``ConfidenceStreamFilter`` strips the markup from live tokens, and
``parse_confidence_blocks`` turns the finished text into structured blocks.
"""
import re
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from .schemas import (
    CONFIDENCE_BEST_GUESS,
    CONFIDENCE_SOURCED,
    CONFIDENCE_UNKNOWN,
    CONFIDENCE_VERIFIED,
    SOURCE_UNKNOWN,
    ConfidenceBlock,
    Message,
    Source,
)

CONFIDENCE_OPEN = "[confidence:"
SOURCES_OPEN = "[sources]"
SOURCES_CLOSE = "[/sources]"

CONFIDENCE_RANK: Dict[str, int] = {
    CONFIDENCE_UNKNOWN: 0,
    CONFIDENCE_BEST_GUESS: 1,
    CONFIDENCE_SOURCED: 2,
    CONFIDENCE_VERIFIED: 3,
}

_INLINE_TAG_RE = re.compile(r"\[confidence:[^\]\n]*\]")


class ConfidenceStreamFilter:
    """Line-buffered filter that forwards only user-visible text to ``send``."""

    def __init__(self, send: Callable[[str], Awaitable[None]]):
        self.send = send
        self.pending = ""
        self.in_sources = False

    async def write(self, chunk: str) -> None:
        if not chunk:
            return
        self.pending += chunk
        lines = self.pending.split("\n")
        self.pending = lines.pop()
        for line in lines:
            await self._process_line(line, add_newline=True)

    async def flush(self) -> None:
        if not self.pending:
            return
        line = self.pending
        self.pending = ""
        await self._process_line(line, add_newline=False)

    async def _process_line(self, line: str, add_newline: bool) -> None:
        if self.in_sources:
            close_at = line.find(SOURCES_CLOSE)
            if close_at < 0:
                return
            self.in_sources = False
            rest = line[close_at + len(SOURCES_CLOSE) :]
            if rest.strip():
                await self._process_line(rest.lstrip(), add_newline)
            return
        trimmed = line.strip()
        if trimmed.startswith(CONFIDENCE_OPEN):
            remainder = _INLINE_TAG_RE.sub("", line, count=1)
            if remainder == line or not remainder.strip():
                return
            line = remainder.lstrip()
        open_at = line.find(SOURCES_OPEN)
        if open_at >= 0:
            # Text before the tag is answer content; the rest belongs to the sources block.
            self.in_sources = True
            before = line[:open_at].rstrip()
            if before.strip():
                await self._emit(before, add_newline=True)
            rest = line[open_at + len(SOURCES_OPEN) :]
            if rest.strip():
                await self._process_line(rest, add_newline)
            return
        if SOURCES_CLOSE in line and not line.replace(SOURCES_CLOSE, "").strip():
            return
        await self._emit(line, add_newline)

    async def _emit(self, line: str, add_newline: bool) -> None:
        if CONFIDENCE_OPEN in line:
            line = _INLINE_TAG_RE.sub("", line)
        if not line.strip():
            if add_newline:
                await self.send("\n")
            return
        await self.send(line + "\n" if add_newline else line)


def normalize_confidence(tag: str) -> str:
    cleaned = tag.strip().lower()
    return cleaned if cleaned in CONFIDENCE_RANK else CONFIDENCE_UNKNOWN


def parse_confidence_blocks(text: str) -> List[ConfidenceBlock]:
    blocks: List[ConfidenceBlock] = []
    cursor = 0
    while True:
        start = text.find(CONFIDENCE_OPEN, cursor)
        if start < 0:
            break
        tag_start = start + len(CONFIDENCE_OPEN)
        tag_end = text.find("]", tag_start)
        if tag_end < 0:
            break
        sources_start = text.find(SOURCES_OPEN, tag_end + 1)
        if sources_start < 0:
            break
        sources_end = text.find(SOURCES_CLOSE, sources_start + len(SOURCES_OPEN))
        if sources_end < 0:
            break
        blocks.append(
            ConfidenceBlock(
                content=text[tag_end + 1 : sources_start].strip(),
                confidence=normalize_confidence(text[tag_start:tag_end]),
                sources=parse_sources_block(text[sources_start + len(SOURCES_OPEN) : sources_end]),
            )
        )
        cursor = sources_end + len(SOURCES_CLOSE)

    if not blocks and text.strip():
        return [ConfidenceBlock(content=text.strip(), confidence=CONFIDENCE_UNKNOWN)]
    return blocks


def parse_sources_block(block: str) -> List[Source]:
    sources: List[Source] = []
    for raw in block.split("\n"):
        line = raw.strip()
        if line.startswith("-"):
            line = line[1:].strip()
        if not line:
            continue
        title, url = split_source_line(line)
        sources.append(Source(title=title, url=url, kind=SOURCE_UNKNOWN))
    return sources


def split_source_line(line: str) -> Tuple[str, str]:
    for separator in ("—", " - "):
        if separator in line:
            title, url = line.split(separator, 1)
            return title.strip(), url.strip()
    return line.strip(), ""


def join_confidence_content(blocks: Iterable[ConfidenceBlock]) -> str:
    sections = [block.content.strip() for block in blocks if block.content.strip()]
    return "\n\n".join(sections).strip()


def summarize_confidence(blocks: Iterable[ConfidenceBlock]) -> str:
    best = CONFIDENCE_UNKNOWN
    for block in blocks:
        if CONFIDENCE_RANK.get(block.confidence, 0) > CONFIDENCE_RANK[best]:
            best = block.confidence
    return best


def sources_from_blocks(blocks: Iterable[ConfidenceBlock]) -> List[Source]:
    sources: List[Source] = []
    for block in blocks:
        sources.extend(block.sources)
    return sources


def append_sources(existing: List[Source], incoming: Optional[Iterable[Source]]) -> List[Source]:
    """Merge ``incoming`` into ``existing`` keeping the first copy of each url|title pair."""
    seen = {f"{src.url}|{src.title}" for src in existing}
    merged = list(existing)
    for src in incoming or []:
        key = f"{src.url}|{src.title}"
        if key in seen:
            continue
        seen.add(key)
        merged.append(src)
    return merged


def estimate_tokens(text: str) -> int:
    return len(text.split())


def count_message_tokens(messages: Iterable[Message]) -> int:
    return sum(estimate_tokens(message.content) for message in messages)
