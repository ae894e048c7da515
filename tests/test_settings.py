import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from consultant.config import load_settings, save_settings


@pytest.mark.asyncio
async def test_get_settings_masks_secrets(app_factory):
    app, _ = app_factory(tavily_api_key="secret-key", llm_api_key="sk-live")
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.get("/settings")
            assert res.status_code == 200
            data = res.json()["settings"]
            assert data["tavily_api_key"] == "********"
            assert data["llm_api_key"] == "********"
            assert data["gateway_api_key"] is None
            assert data["chat_model"] == "test-model"


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"llm_base_url": "http://config"}))
    monkeypatch.setenv("LLM_BASE_URL", "http://env")
    monkeypatch.delenv("CONSULTANT_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.llm_base_url == "http://config"


def test_env_override_when_flag_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"llm_base_url": "http://config"}))
    monkeypatch.setenv("LLM_BASE_URL", "http://env")
    monkeypatch.setenv("CONSULTANT_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.llm_base_url == "http://env"


def test_env_values_are_coerced(tmp_path, monkeypatch):
    monkeypatch.setenv("MAX_TOOL_ROUNDS", "7")
    monkeypatch.setenv("HYDE_TIMEOUT_S", "2.5")
    monkeypatch.setenv("USE_HYDE", "false")
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.max_tool_rounds == 7
    assert settings.hyde_timeout_s == 2.5
    assert settings.use_hyde is False


def test_invalid_config_file_is_ignored(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text("{not json")
    monkeypatch.delenv("CHAT_MODEL", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.chat_model == "qwen/qwen3-8b"


def test_save_settings_round_trips(tmp_path):
    config_path = tmp_path / "config.json"
    settings = load_settings(config_path=config_path).model_copy(update={"global_tenant_id": "platform"})
    save_settings(settings, config_path=config_path)
    assert json.loads(config_path.read_text())["global_tenant_id"] == "platform"
    assert load_settings(config_path=config_path).global_tenant_id == "platform"


def test_summarizer_uses_fast_model_when_configured(app_factory):
    app, _ = app_factory()
    assert app.state.chat_service.summarizer.model == "test-model"
    app, _ = app_factory(fast_model="test-mini")
    assert app.state.chat_service.summarizer.model == "test-mini"
