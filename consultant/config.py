import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "CONSULTANT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("llm_api_key", "tavily_api_key", "gateway_api_key")


class AppSettings(BaseModel):
    # Chat completions (OpenAI-compatible)
    llm_base_url: str = "http://127.0.0.1:1234/v1"
    llm_api_key: Optional[str] = None
    chat_model: str = "qwen/qwen3-8b"
    fast_model: Optional[str] = None
    max_output_tokens: int = 2048
    temperature: float = 0.2

    # Embeddings
    embedding_base_url: Optional[str] = None
    embedding_model: str = "text-embedding-nomic-embed-text-v1.5"

    # Tools
    tavily_api_key: Optional[str] = None
    web_search_depth: str = "basic"
    gateway_url: Optional[str] = None
    gateway_api_key: Optional[str] = None

    # Retrieval
    global_tenant_id: str = ""
    knowledge_search_limit: int = 5
    pre_retrieval_max_tokens: int = 800
    use_query_rewrite: bool = True
    use_hyde: bool = True
    hyde_timeout_s: float = 15.0

    # Conversation handling
    max_tool_rounds: int = 5
    prompt_token_budget: int = 6000
    max_history_messages: int = 20
    max_message_chars: int = 10000
    summary_threshold: int = 10
    summary_interval: int = 5
    summary_keep_recent: int = 5

    database_path: str = "consultant.db"
    host: str = "0.0.0.0"
    port: int = 8000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data

    @property
    def summary_model(self) -> str:
        return self.fast_model or self.chat_model

    model_config = {"protected_namespaces": ()}


_INT_FIELDS = (
    "max_output_tokens",
    "knowledge_search_limit",
    "pre_retrieval_max_tokens",
    "max_tool_rounds",
    "prompt_token_budget",
    "max_history_messages",
    "max_message_chars",
    "summary_threshold",
    "summary_interval",
    "summary_keep_recent",
    "port",
)
_FLOAT_FIELDS = ("temperature", "hyde_timeout_s")
_BOOL_FIELDS = ("use_query_rewrite", "use_hyde")


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "llm_base_url": os.getenv("LLM_BASE_URL"),
        "llm_api_key": os.getenv("LLM_API_KEY"),
        "chat_model": os.getenv("CHAT_MODEL"),
        "fast_model": os.getenv("FAST_MODEL"),
        "max_output_tokens": os.getenv("MAX_OUTPUT_TOKENS"),
        "temperature": os.getenv("TEMPERATURE"),
        "embedding_base_url": os.getenv("EMBEDDING_BASE_URL"),
        "embedding_model": os.getenv("EMBEDDING_MODEL"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "web_search_depth": os.getenv("WEB_SEARCH_DEPTH"),
        "gateway_url": os.getenv("GATEWAY_URL"),
        "gateway_api_key": os.getenv("GATEWAY_API_KEY"),
        "global_tenant_id": os.getenv("GLOBAL_TENANT_ID"),
        "knowledge_search_limit": os.getenv("KNOWLEDGE_SEARCH_LIMIT"),
        "pre_retrieval_max_tokens": os.getenv("PRE_RETRIEVAL_MAX_TOKENS"),
        "use_query_rewrite": os.getenv("USE_QUERY_REWRITE"),
        "use_hyde": os.getenv("USE_HYDE"),
        "hyde_timeout_s": os.getenv("HYDE_TIMEOUT_S"),
        "max_tool_rounds": os.getenv("MAX_TOOL_ROUNDS"),
        "prompt_token_budget": os.getenv("PROMPT_TOKEN_BUDGET"),
        "max_history_messages": os.getenv("MAX_HISTORY_MESSAGES"),
        "max_message_chars": os.getenv("MAX_MESSAGE_CHARS"),
        "summary_threshold": os.getenv("SUMMARY_THRESHOLD"),
        "summary_interval": os.getenv("SUMMARY_INTERVAL"),
        "summary_keep_recent": os.getenv("SUMMARY_KEEP_RECENT"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in _INT_FIELDS:
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in _FLOAT_FIELDS:
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    for key in _BOOL_FIELDS:
        if key in cleaned:
            cleaned[key] = str(cleaned[key]).lower() in ENV_OVERRIDE_TRUE
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except json.JSONDecodeError:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
