from pathlib import Path

import pytest

from consultant.config import AppSettings
from consultant.main import create_app
from tests.fakes import FakeEmbedder, FakeGateway, FakeLLM, FakeTavilyClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        llm_base_url="http://lm.test/v1",
        chat_model="test-model",
        embedding_model="test-embed",
        tavily_api_key=None,
        gateway_url=None,
        global_tenant_id="global",
        database_path=str(tmp_path / "test.db"),
        use_query_rewrite=False,
        use_hyde=False,
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_llm: FakeLLM | None = None,
        fake_embedder: FakeEmbedder | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        fake_gateway: FakeGateway | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        llm = fake_llm or FakeLLM()
        app = create_app(
            settings,
            llm_client=llm,
            embedder=fake_embedder or FakeEmbedder(),
            tavily_client=fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key),
            gateway=fake_gateway,
        )
        return app, llm

    return _factory
