"""Mode-based tool access policy.

``docs`` is the public documentation widget and only sees read-only tools,
``heartbeat`` is the background agent and only searches the knowledge base,
and the default mode is unrestricted.
"""
import json
import re
from dataclasses import dataclass
from typing import Any, FrozenSet, Iterable, List, Optional

from .schemas import ToolDetail, ToolOutcome, ToolSpec

MODE_DEFAULT = ""
MODE_DOCS = "docs"
MODE_HEARTBEAT = "heartbeat"
MODES = {MODE_DEFAULT, MODE_DOCS, MODE_HEARTBEAT}

MODE_LABELS = {MODE_DOCS: "documentation", MODE_HEARTBEAT: "heartbeat"}

DOCS_ALLOWED_TOOLS: FrozenSet[str] = frozenset(
    {
        "search_knowledge",
        "search_web",
        "introspect_schema",
        "generate_query",
        "validate_query",
        "execute_query",
        "list_streams",
        "get_stream",
        "get_stream_health_summary",
        "get_anomaly_report",
    }
)
DOCS_ALLOWED_PREFIXES = ("diagnose_",)
HEARTBEAT_ALLOWED_TOOLS: FrozenSet[str] = frozenset({"search_knowledge"})

_MUTATION_RE = re.compile(r"^mutation\b", re.IGNORECASE)


class InvalidModeError(ValueError):
    pass


def normalize_mode(value: Optional[str]) -> str:
    mode = (value or "").strip().lower()
    if mode in ("default", "full"):
        return MODE_DEFAULT
    if mode not in MODES:
        raise InvalidModeError(f"unknown mode {value!r}")
    return mode


def _string_values(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _string_values(item)
    elif isinstance(value, list):
        for item in value:
            yield from _string_values(item)


def _starts_with_mutation(text: str) -> bool:
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        return bool(_MUTATION_RE.match(line))
    return False


def contains_mutation(arguments: str) -> bool:
    """Heuristic check for a GraphQL mutation embedded in tool arguments.

    Looks at the first line of each string argument that is neither blank nor a
    ``#`` comment. It does not parse the query language.
    """
    if not arguments or "mutation" not in arguments.lower():
        return False
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        return _starts_with_mutation(arguments)
    return any(_starts_with_mutation(text) for text in _string_values(parsed))


@dataclass(frozen=True)
class AccessPolicy:
    mode: str = MODE_DEFAULT

    @property
    def label(self) -> str:
        return MODE_LABELS.get(self.mode, self.mode or "default")

    @property
    def restricted(self) -> bool:
        return self.mode != MODE_DEFAULT

    def allows(self, name: str) -> bool:
        if self.mode == MODE_DOCS:
            return name in DOCS_ALLOWED_TOOLS or name.startswith(DOCS_ALLOWED_PREFIXES)
        if self.mode == MODE_HEARTBEAT:
            return name in HEARTBEAT_ALLOWED_TOOLS
        return True

    def filter_tools(self, tools: Iterable[ToolSpec]) -> List[ToolSpec]:
        return [tool for tool in tools if self.allows(tool.name)]

    def check(self, name: str, arguments: str) -> Optional[ToolOutcome]:
        """Return a blocking outcome, or None when the call may run."""
        if not self.allows(name):
            return ToolOutcome(
                content=f"Tool {name} is not available in {self.label} mode.",
                detail=ToolDetail(title=f"Tool call: {name}", payload={"blocked": "mode", "mode": self.mode}),
            )
        if self.restricted and contains_mutation(arguments):
            return ToolOutcome(
                content=f"Mutations are not allowed in {self.label} mode.",
                detail=ToolDetail(title=f"Tool call: {name}", payload={"blocked": "mutation", "mode": self.mode}),
            )
        return None
