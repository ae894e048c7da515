from typing import Any, Dict, Optional

import httpx


TAVILY_SEARCH_URL = "https://api.tavily.com/search"
SEARCH_DEPTHS = {"basic", "advanced"}
MAX_RESULTS_CAP = 10


class TavilyClient:
    def __init__(self, api_key: Optional[str], default_depth: str = "basic"):
        self.api_key = api_key
        self.default_depth = default_depth if default_depth in SEARCH_DEPTHS else "basic"
        self.client = httpx.AsyncClient(
            timeout=30,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: Optional[str] = None,
        max_results: int = 5,
    ) -> Dict[str, Any]:
        """Run a web search. Failures come back as ``{"error": ...}`` dicts rather than exceptions."""
        if not self.enabled:
            return {"error": "missing_api_key"}
        depth = (search_depth or self.default_depth).strip().lower()
        if depth not in SEARCH_DEPTHS:
            depth = self.default_depth
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": depth,
            "max_results": max(1, min(int(max_results), MAX_RESULTS_CAP)),
        }
        return await self._post(TAVILY_SEARCH_URL, payload)

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            # Tavily accepts the key in the body; the bearer header covers newer keys.
            payload = {**payload, "api_key": self.api_key}
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except ValueError:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
