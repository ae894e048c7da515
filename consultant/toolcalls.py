from typing import Dict, Iterable, List

from .schemas import ToolCall


def merge_tool_calls(existing: List[ToolCall], incoming: Iterable[ToolCall]) -> List[ToolCall]:
    """Fold streamed tool-call fragments into complete calls.

    A fragment whose id was already seen has its arguments appended to that call,
    since models may split one JSON object across frames. New ids are appended in
    arrival order, so first-seen order decides execution order.
    """
    merged = [call.model_copy() for call in existing]
    index: Dict[str, int] = {call.id: pos for pos, call in enumerate(merged) if call.id}
    for fragment in incoming:
        pos = index.get(fragment.id) if fragment.id else None
        if pos is None:
            merged.append(fragment.model_copy())
            if fragment.id:
                index[fragment.id] = len(merged) - 1
            continue
        current = merged[pos]
        current.arguments += fragment.arguments
        if fragment.name and not current.name:
            current.name = fragment.name
    return merged
