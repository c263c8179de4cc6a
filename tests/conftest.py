"""Shared pytest fixtures for the reimbursement engine test suite.

Provides:
- settings: Settings with no inter-page delay and no .env lookup
- cms: FakeCMS serving both CMS APIs in memory
- make_fetcher: SourceFetcher factory wired to the fake APIs
- make_resolver: YearDataResolver factory on top of make_fetcher
"""

from collections.abc import Callable

import httpx
import pytest

from src.config.settings import Settings
from src.data.competitor_registry import CompetitorRegistry
from src.engine.resolver import YearDataResolver
from src.engine.result_cache import ResultCache
from src.engine.simulator import Simulator
from src.engine.year_classifier import YearClassifier
from src.ingestion.fetcher import SourceFetcher
from src.models.reimbursement import YearConfig
from tests.cms_fakes import FakeCMS


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, INTER_PAGE_DELAY_SECONDS=0)


@pytest.fixture
def cms() -> FakeCMS:
    return FakeCMS()


@pytest.fixture
def make_fetcher(settings: Settings, cms: FakeCMS) -> Callable[..., SourceFetcher]:
    """Build a SourceFetcher; keyword overrides are applied to the settings."""

    def _make(
        config: YearConfig | None = None,
        capacity: int = 200,
        handler: Callable[[httpx.Request], httpx.Response] | None = None,
        **overrides: object,
    ) -> SourceFetcher:
        s = settings.model_copy(update=overrides) if overrides else settings
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler or cms.handler))
        return SourceFetcher(
            cache=ResultCache(capacity),
            classifier=YearClassifier(config),
            settings=s,
            client=client,
        )

    return _make


@pytest.fixture
def make_resolver(make_fetcher: Callable[..., SourceFetcher]) -> Callable[..., YearDataResolver]:
    def _make(
        config: YearConfig | None = None,
        registry: CompetitorRegistry | None = None,
        **overrides: object,
    ) -> YearDataResolver:
        fetcher = make_fetcher(config, **overrides)
        return YearDataResolver(
            fetcher=fetcher,
            simulator=Simulator(fetcher.classifier.config),
            registry=registry,
        )

    return _make
