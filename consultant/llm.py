import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .schemas import ChatChunk, Message, ToolCall, ToolSpec


logger = logging.getLogger("uvicorn.error")

ALLOWED_ROLES = {"system", "user", "assistant", "tool"}


def _extract_error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
        if isinstance(data, dict):
            return json.dumps(data, ensure_ascii=True)
    except (json.JSONDecodeError, UnicodeDecodeError):
        pass
    return response.text


def _auth_headers(api_key: Optional[str]) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


class LLMClient:
    """OpenAI-compatible chat client (LM Studio, vLLM, llama.cpp server, hosted APIs)."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        temperature: float = 0.2,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(120, connect=10),
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    def _serialize_messages(self, messages: List[Message]) -> List[Dict[str, Any]]:
        serialized: List[Dict[str, Any]] = []
        for msg in messages:
            if msg.role not in ALLOWED_ROLES:
                continue
            entry: Dict[str, Any] = {"role": msg.role, "content": msg.content}
            if msg.role == "assistant" and msg.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments or "{}"},
                    }
                    for call in msg.tool_calls
                ]
            elif msg.role == "tool":
                entry["tool_call_id"] = msg.tool_call_id or ""
                if msg.tool_name:
                    entry["name"] = msg.tool_name
            elif not msg.content.strip():
                continue
            serialized.append(entry)
        return serialized

    def _max_tokens(self, requested: Optional[int]) -> Optional[int]:
        if requested and self.max_output_tokens:
            return min(requested, self.max_output_tokens)
        return requested or self.max_output_tokens

    def _build_payload(
        self,
        messages: List[Message],
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        stream: bool = False,
        tools: Optional[List[ToolSpec]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model or self.model,
            "messages": self._serialize_messages(messages),
            "temperature": self.temperature if temperature is None else temperature,
            "stream": stream,
        }
        final_max_tokens = self._max_tokens(max_tokens)
        if final_max_tokens:
            payload["max_tokens"] = final_max_tokens
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
                }
                for t in tools
            ]
        return payload

    async def complete(self, messages: List[Message], tools: List[ToolSpec]) -> AsyncIterator[ChatChunk]:
        """Stream one completion as content / tool-call chunks."""
        payload = self._build_payload(messages, stream=True, tools=tools)
        url = f"{self.base_url}/chat/completions"
        # Continuation frames only carry the tool index; remember which id each index belongs to.
        ids_by_index: Dict[int, str] = {}
        async with self.client.stream("POST", url, json=payload, headers=_auth_headers(self.api_key)) as resp:
            if resp.status_code >= 400:
                await resp.aread()
                logger.warning("Chat completion rejected (%s): %s", resp.status_code, _extract_error_detail(resp))
                resp.raise_for_status()
            async for line in resp.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data_text = line[len("data:") :].strip()
                if data_text == "[DONE]":
                    break
                try:
                    data = json.loads(data_text)
                except json.JSONDecodeError:
                    continue
                choices = data.get("choices") or []
                if not choices:
                    continue
                delta = choices[0].get("delta") or {}
                calls: List[ToolCall] = []
                for raw in delta.get("tool_calls") or []:
                    index = raw.get("index", len(ids_by_index))
                    call_id = raw.get("id") or ids_by_index.get(index) or f"call_{index}"
                    ids_by_index[index] = call_id
                    function = raw.get("function") or {}
                    calls.append(
                        ToolCall(
                            id=call_id,
                            name=function.get("name") or "",
                            arguments=function.get("arguments") or "",
                        )
                    )
                content = delta.get("content") or ""
                if content or calls:
                    yield ChatChunk(content=content, tool_calls=calls)

    async def chat_completion(
        self,
        messages: List[Message],
        max_tokens: int = 512,
        temperature: Optional[float] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = self._build_payload(messages, model=model, temperature=temperature, max_tokens=max_tokens)
        url = f"{self.base_url}/chat/completions"
        resp = await self.client.post(url, json=payload, headers=_auth_headers(self.api_key))
        if resp.status_code >= 400:
            logger.warning("Chat completion rejected (%s): %s", resp.status_code, _extract_error_detail(resp))
        resp.raise_for_status()
        return resp.json()

    async def complete_text(
        self,
        messages: List[Message],
        max_tokens: int = 512,
        temperature: Optional[float] = None,
        model: Optional[str] = None,
    ) -> str:
        data = await self.chat_completion(messages, max_tokens=max_tokens, temperature=temperature, model=model)
        choices = data.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        content = message.get("content")
        if not content:
            # Reasoning models sometimes leave content empty and put the answer here.
            content = message.get("reasoning") or message.get("reasoning_content") or ""
        return str(content).strip()

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


class EmbeddingClient:
    def __init__(self, base_url: str, model: str, api_key: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.client = httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    async def embed_many(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        resp = await self.client.post(
            f"{self.base_url}/embeddings",
            json={"model": self.model, "input": texts},
            headers=_auth_headers(self.api_key),
        )
        if resp.status_code >= 400:
            logger.warning("Embedding request rejected (%s): %s", resp.status_code, _extract_error_detail(resp))
        resp.raise_for_status()
        items = sorted(resp.json().get("data") or [], key=lambda item: item.get("index", 0))
        return [list(item.get("embedding") or []) for item in items]

    async def embed_query(self, text: str) -> List[float]:
        vectors = await self.embed_many([text])
        if not vectors or not vectors[0]:
            raise ValueError("embedding response contained no vector")
        return vectors[0]

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
