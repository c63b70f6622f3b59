import random

import pytest

from app.core.config import DelayRange, ScraperConfig
from app.normalizers.session import ProxyEndpoint
from app.services.proxy_service import ProxyPool
from tests.fakes import FakeBackend


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def fast_config():
    """Pas de délai, une seule tentative navigateur, pas de direct fetch."""
    return ScraperConfig(
        delay_between_requests=DelayRange(min=0, max=0),
        max_retries=1,
        max_proxy_retries=2,
        request_timeout=1000,
        solve_captcha=False,
        direct_fetch_fallback=False,
        log_level="none",
    )


@pytest.fixture
def proxies():
    return [
        ProxyEndpoint(host="10.0.0.1", port=8080),
        ProxyEndpoint(host="10.0.0.2", port=8080),
        ProxyEndpoint(host="10.0.0.3", port=8080, username="user", password="secret"),
    ]


@pytest.fixture
def proxy_pool(proxies, rng):
    return ProxyPool(proxies, rng=rng)


@pytest.fixture
def backend():
    return FakeBackend()
