from typing import Dict, List, Optional, Tuple

import pytest

from brand_monitor.config import Settings
from brand_monitor.models import Company, Competitor, Prompt
from brand_monitor.services.dispatcher import PromptDispatcher
from brand_monitor.services.provider_config import PROVIDER_CONFIGS, ProviderConfig

from fakes import FakeProviderClient, Outcome


@pytest.fixture
def settings() -> Settings:
    return Settings(openrouter_api_key=None, max_concurrency=8, provider_timeout_seconds=5.0)


@pytest.fixture
def providers() -> List[ProviderConfig]:
    return [PROVIDER_CONFIGS["openai"], PROVIDER_CONFIGS["google"]]


@pytest.fixture
def company() -> Company:
    return Company(name="Firecrawl", url="https://firecrawl.dev", industry="web scraping")


@pytest.fixture
def competitors() -> List[Competitor]:
    return [
        Competitor(name="Firecrawl", url="firecrawl.dev", is_own=True),
        Competitor(name="Acme", url="acme.com"),
    ]


@pytest.fixture
def prompts() -> List[Prompt]:
    return [
        Prompt(id="p1", text="best web scraping api"),
        Prompt(id="p2", text="alternatives to apify"),
    ]


@pytest.fixture
def make_dispatcher(settings):
    """Build a dispatcher whose clients answer from an outcome table."""

    def _make(
        outcomes: Dict[Tuple[str, str], Outcome],
        timeout_seconds: Optional[float] = None,
        clients: Optional[Dict[str, FakeProviderClient]] = None,
    ) -> PromptDispatcher:
        registry = clients if clients is not None else {}

        def factory(provider: ProviderConfig) -> FakeProviderClient:
            client = FakeProviderClient(provider, outcomes)
            registry[provider.id] = client
            return client

        return PromptDispatcher(
            client_factory=factory,
            settings=settings,
            timeout_seconds=timeout_seconds,
        )

    return _make
