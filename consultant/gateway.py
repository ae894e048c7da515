import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from .schemas import ToolSpec


logger = logging.getLogger("uvicorn.error")


class GatewayError(Exception):
    pass


class HttpToolGateway:
    """Client for the platform tool gateway.

    The catalogue comes from ``GET /tools`` and is cached until the next
    ``refresh()``; calls go to ``POST /tools/invoke``.
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=60,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )
        self._tools: Dict[str, ToolSpec] = {}

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def refresh(self) -> List[ToolSpec]:
        resp = await self.client.get("/tools", headers=self._headers())
        resp.raise_for_status()
        tools: Dict[str, ToolSpec] = {}
        for raw in resp.json().get("tools") or []:
            name = raw.get("name")
            if not name:
                continue
            tools[name] = ToolSpec(
                name=name,
                description=raw.get("description") or "",
                parameters=raw.get("input_schema") or raw.get("parameters") or {"type": "object", "properties": {}},
            )
        self._tools = tools
        logger.info("Tool gateway catalogue loaded: %d tools", len(tools))
        return list(tools.values())

    def available_tools(self) -> List[ToolSpec]:
        return list(self._tools.values())

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    async def call_tool(self, name: str, arguments: str) -> str:
        parsed: Any = {}
        if arguments.strip():
            try:
                parsed = json.loads(arguments)
            except json.JSONDecodeError as exc:
                raise GatewayError(f"invalid arguments for {name}: {exc}") from exc
        resp = await self.client.post(
            "/tools/invoke",
            json={"tool_name": name, "arguments": parsed},
            headers=self._headers(),
        )
        resp.raise_for_status()
        data = resp.json()
        if data.get("error"):
            raise GatewayError(str(data["error"]))
        result = data.get("result")
        if result is None:
            return ""
        if isinstance(result, str):
            return result
        return json.dumps(result, ensure_ascii=False)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
