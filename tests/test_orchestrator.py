"""
Orchestrateur: chaîne provider -> navigateur -> direct, retries, sessions.
"""
import asyncio
import logging

import pytest

from app.core.exceptions import EnhancementFailure, NavigationError, ProviderAPIError
from app.services.ai_enhancement_service import ProductEnhancer
from app.services.provider_service import ProviderRegistry
from app.services.scraping_orchestrator import ScrapingOrchestrator
from app.utils.http_stealth import DEFAULT_FINGERPRINT
from tests.fakes import (
    CONTEXT_DESTROYED,
    EMPTY_HTML,
    GENERIC_HTML,
    BrokenReadBackend,
    FakeBackend,
    FakeFetcher,
    FakeGenerator,
    FakeProvider,
    RecordingSink,
    make_product,
)

AMAZON_URL = "https://www.amazon.com/dp/B08N5WRWNW"
SHOP_URL = "https://shop.example.com/p/mug"
PROXY_ERROR = "net::ERR_PROXY_CONNECTION_FAILED"


@pytest.fixture
def build(fast_config, proxy_pool, rng):
    def _build(backend, config=None, **kwargs):
        return ScrapingOrchestrator(backend, config=config or fast_config, proxy_pool=proxy_pool, rng=rng, **kwargs)
    return _build


def registry(provider):
    return ProviderRegistry([provider])


# ---------------------------------------------------------------------------
# Chaîne de fallback
# ---------------------------------------------------------------------------


class TestFallbackChain:
    async def test_provider_success_skips_browser(self, build, backend):
        provider = FakeProvider(product=make_product())
        orchestrator = build(backend, providers=registry(provider))

        result = await orchestrator.acquire(AMAZON_URL)

        assert result.status == "success"
        assert result.method == "provider"
        assert result.product.title == "Provider Headphones"
        assert provider.calls == ["B08N5WRWNW"]
        assert backend.open_calls == 0
        assert backend.navigate_calls == 0

    async def test_browser_path(self, build, backend):
        result = await build(backend).acquire(AMAZON_URL)

        assert result.status == "success"
        assert result.method == "browser"
        assert result.product.title == "Wireless Noise Cancelling Headphones"
        assert result.product.price == 49.99
        assert result.attempts == 1
        assert result.processing_time >= 0

    async def test_provider_error_falls_back_to_browser(self, build, backend):
        provider = FakeProvider(error=ProviderAPIError("upstream down", status_code=500))

        result = await build(backend, providers=registry(provider)).acquire(AMAZON_URL)

        assert result.status == "success"
        assert result.method == "browser"
        assert result.attempts == 2

    async def test_provider_timeout_falls_back_to_browser(self, build, backend, fast_config):
        provider = FakeProvider(product=make_product(), delay=1.0)
        config = fast_config.merged({"providerTimeout": 50})

        result = await build(backend, config=config, providers=registry(provider)).acquire(AMAZON_URL)

        assert result.method == "browser"

    async def test_provider_not_found_falls_back_to_browser(self, build, backend):
        result = await build(backend, providers=registry(FakeProvider(product=None))).acquire(AMAZON_URL)

        assert result.method == "browser"

    async def test_direct_fetch_after_browser_failure(self, build, fast_config):
        backend = FakeBackend(content=EMPTY_HTML)
        fetcher = FakeFetcher(GENERIC_HTML)
        config = fast_config.merged({"directFetchFallback": True})

        result = await build(backend, config=config, fetcher=fetcher).acquire(SHOP_URL)

        assert result.status == "success"
        assert result.method == "direct"
        assert result.product.title == "Ceramic Mug"
        assert fetcher.calls == [SHOP_URL]

    async def test_direct_fetch_disabled(self, build):
        fetcher = FakeFetcher(GENERIC_HTML)

        result = await build(FakeBackend(content=EMPTY_HTML), fetcher=fetcher).acquire(SHOP_URL)

        assert result.status == "failed"
        assert fetcher.calls == []

    async def test_every_stage_failing_reports_each_error(self, build, fast_config):
        backend = FakeBackend(content=EMPTY_HTML)
        fetcher = FakeFetcher(error=NavigationError("HTTP 503 on direct fetch"))
        config = fast_config.merged({"directFetchFallback": True})

        result = await build(backend, config=config, fetcher=fetcher).acquire(SHOP_URL)

        assert result.status == "failed"
        assert result.product is None
        assert "No product title found" in result.error
        assert "HTTP 503" in result.error


# ---------------------------------------------------------------------------
# Navigateur: timeout, retries, proxies
# ---------------------------------------------------------------------------


class TestBrowserRetries:
    async def test_navigation_timeout(self, build, fast_config):
        backend = FakeBackend(navigate_delay=0.5)
        config = fast_config.merged({"requestTimeout": 50})

        result = await build(backend, config=config).acquire(AMAZON_URL)

        assert result.status == "failed"
        assert "timeout" in result.error.lower()
        assert backend.handles[0].closed
        assert backend.open_now == 0

    async def test_camel_case_overrides_per_call(self, build):
        backend = FakeBackend(navigate_delay=0.5)

        result = await build(backend).acquire(AMAZON_URL, config={"requestTimeout": 50})

        assert result.status == "failed"

    async def test_proxy_retries_are_bounded(self, build, fast_config):
        backend = FakeBackend(navigate_errors=[RuntimeError(PROXY_ERROR)] * 10)
        orchestrator = build(backend)

        result = await orchestrator.acquire(AMAZON_URL)

        assert result.status == "failed"
        assert backend.open_calls == fast_config.max_proxy_retries + 1
        assert backend.close_calls == backend.open_calls
        assert orchestrator.get_metrics().proxy_failures == fast_config.max_proxy_retries + 1

    async def test_proxy_failure_swaps_proxy(self, build, backend, proxy_pool):
        backend.navigate_errors = [RuntimeError(PROXY_ERROR), None]

        result = await build(backend).acquire(AMAZON_URL)

        assert result.status == "success"
        assert result.attempts == 2
        first, second = backend.handles
        assert first.proxy != second.proxy
        assert proxy_pool.failure_count(first.proxy) == 1
        assert proxy_pool.failure_count(second.proxy) == 0

    async def test_session_creation_failures_are_bounded(self, build, fast_config):
        backend = FakeBackend(open_errors=[RuntimeError("out of memory")] * 10)

        result = await build(backend).acquire(AMAZON_URL)

        assert result.status == "failed"
        assert backend.open_calls == fast_config.max_proxy_retries + 1

    async def test_navigation_errors_use_max_retries(self, build, fast_config):
        backend = FakeBackend(navigate_errors=[RuntimeError("net::ERR_CONNECTION_RESET"), None])
        config = fast_config.merged({"maxRetries": 2})

        result = await build(backend, config=config).acquire(AMAZON_URL)

        assert result.status == "success"
        assert backend.open_calls == 2

    async def test_navigation_errors_exhaust_max_retries(self, build, fast_config):
        backend = FakeBackend(navigate_errors=[RuntimeError("net::ERR_CONNECTION_RESET")] * 10)
        config = fast_config.merged({"maxRetries": 3})

        result = await build(backend, config=config).acquire(AMAZON_URL)

        assert result.status == "failed"
        assert backend.open_calls == 3
        assert backend.open_now == 0

    async def test_challenge_error_keeps_loaded_content(self, build, fast_config):
        backend = FakeBackend(challenge_error=RuntimeError(CONTEXT_DESTROYED))
        fetcher = FakeFetcher(GENERIC_HTML)
        config = fast_config.merged({"solveCaptcha": True, "directFetchFallback": True, "maxRetries": 2})

        result = await build(backend, config=config, fetcher=fetcher).acquire(AMAZON_URL)

        assert result.status == "success"
        assert result.method == "browser"
        assert backend.challenge_calls == 1
        assert fetcher.calls == []

    async def test_raw_backend_errors_retry_then_fall_back_to_direct(self, build, fast_config):
        backend = BrokenReadBackend()
        fetcher = FakeFetcher(GENERIC_HTML)
        config = fast_config.merged({"directFetchFallback": True, "maxRetries": 2})

        result = await build(backend, config=config, fetcher=fetcher).acquire(SHOP_URL)

        assert result.status == "success"
        assert result.method == "direct"
        assert backend.open_calls == 2
        assert backend.open_now == 0
        assert fetcher.calls == [SHOP_URL]

    async def test_raw_direct_fetch_error_is_reported(self, build, fast_config):
        fetcher = FakeFetcher(error=ConnectionResetError("connection reset by peer"))
        config = fast_config.merged({"directFetchFallback": True})

        result = await build(FakeBackend(content=EMPTY_HTML), config=config, fetcher=fetcher).acquire(SHOP_URL)

        assert result.status == "failed"
        assert "direct: connection reset by peer" in result.error


# ---------------------------------------------------------------------------
# Options par appel
# ---------------------------------------------------------------------------


class TestPerCallConfig:
    async def test_session_options_per_call(self, build, backend):
        result = await build(backend).acquire(
            AMAZON_URL, config={"proxyRotation": False, "randomizeFingerprint": False}
        )

        assert result.status == "success"
        handle = backend.handles[0]
        assert handle.proxy is None
        assert handle.fingerprint == DEFAULT_FINGERPRINT

    async def test_caller_session_options(self, build, backend):
        orchestrator = build(backend)

        await orchestrator.create_session("plain", config={"proxyRotation": False})

        assert orchestrator.sessions.get_session("plain").proxy is None

    async def test_log_level_per_call(self, build, backend):
        orchestrator = build(backend)
        app_logger = logging.getLogger("app")

        await orchestrator.acquire(AMAZON_URL, config={"logLevel": "detailed"})
        assert app_logger.isEnabledFor(logging.DEBUG)

        await orchestrator.acquire(AMAZON_URL, config={"logLevel": "none"})
        assert not app_logger.isEnabledFor(logging.CRITICAL)


# ---------------------------------------------------------------------------
# Sessions fournies par l'appelant
# ---------------------------------------------------------------------------


class TestCallerSessions:
    async def test_session_is_reused_and_kept_open(self, build, backend):
        orchestrator = build(backend)
        sid = await orchestrator.create_session()

        first = await orchestrator.acquire(AMAZON_URL, session_id=sid)
        second = await orchestrator.acquire(AMAZON_URL, session_id=sid)

        assert first.status == second.status == "success"
        assert backend.open_calls == 1
        assert orchestrator.sessions.get_session(sid).request_count == 2

        await orchestrator.close_session(sid)
        await orchestrator.close_session(sid)
        assert backend.close_calls == 1

    async def test_unknown_session(self, build, backend):
        result = await build(backend).acquire(AMAZON_URL, session_id="ghost")

        assert result.status == "failed"
        assert "Unknown session" in result.error
        assert backend.open_calls == 0

    async def test_concurrent_use_of_one_session_is_rejected(self, build):
        backend = FakeBackend(navigate_delay=0.2)
        orchestrator = build(backend)
        sid = await orchestrator.create_session()

        first, second = await asyncio.gather(
            orchestrator.acquire(AMAZON_URL, session_id=sid),
            orchestrator.acquire(AMAZON_URL, session_id=sid),
        )

        assert first.status == "success"
        assert second.status == "failed"
        assert "already in use" in second.error
        assert orchestrator.sessions.get_session(sid) is not None


# ---------------------------------------------------------------------------
# Enrichissement IA
# ---------------------------------------------------------------------------


class TestEnhancement:
    async def test_enhancer_failure_keeps_original(self, build, backend, fast_config):
        enhancer = ProductEnhancer(FakeGenerator(error=EnhancementFailure("model unavailable")))
        provider = FakeProvider(product=make_product())
        config = fast_config.merged({"enableAi": True})

        result = await build(backend, config=config, providers=registry(provider), enhancer=enhancer).acquire(AMAZON_URL)

        assert result.status == "success"
        assert result.product.description == "Original description"
        assert result.product.seo_title is None

    async def test_enhanced_product(self, build, backend, fast_config):
        generator = FakeGenerator(
            responses=[
                "A richer description.",
                '{"seo_title": "Headphones", "seo_keywords": ["audio"], "category": "Electronics & Technology", "features": ["ANC"]}',
            ]
        )
        provider = FakeProvider(product=make_product())
        config = fast_config.merged({"enableAi": True})
        orchestrator = build(backend, config=config, providers=registry(provider), enhancer=ProductEnhancer(generator))

        result = await orchestrator.acquire(AMAZON_URL)

        assert result.product.description == "A richer description."
        assert result.product.suggested_category == "Electronics & Technology"
        assert result.product.product_features == ["ANC"]

    async def test_enhancer_not_called_when_disabled(self, build, backend):
        generator = FakeGenerator(responses=["x"])

        await build(backend, enhancer=ProductEnhancer(generator)).acquire(AMAZON_URL)

        assert generator.prompts == []


# ---------------------------------------------------------------------------
# Contrat de acquire
# ---------------------------------------------------------------------------


class TestAcquireContract:
    async def test_invalid_url(self, build, backend):
        orchestrator = build(backend)

        result = await orchestrator.acquire("not a url")

        assert result.status == "failed"
        assert result.error == "Invalid URL format"
        assert backend.open_calls == 0
        assert orchestrator.get_metrics().failed_requests == 1

    async def test_idempotent_for_static_page(self, build, backend):
        orchestrator = build(backend)

        first = await orchestrator.acquire(AMAZON_URL)
        second = await orchestrator.acquire(AMAZON_URL)

        assert first.product.title == second.product.title
        assert first.product.price == second.product.price
        assert first.product.images == second.product.images

    async def test_deadline_releases_sessions(self, build, fast_config):
        backend = FakeBackend(navigate_delay=1.0)
        orchestrator = build(backend, config=fast_config.merged({"requestTimeout": 5000}))

        result = await orchestrator.acquire(AMAZON_URL, deadline=0.05)

        assert result.status == "failed"
        assert "Deadline exceeded" in result.error
        assert backend.open_now == 0
        assert orchestrator.sessions.active_count == 0

    async def test_cancellation_propagates_and_releases_sessions(self, build):
        backend = FakeBackend(navigate_delay=1.0)
        orchestrator = build(backend)

        task = asyncio.create_task(orchestrator.acquire(AMAZON_URL))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert backend.open_now == 0
        assert orchestrator.get_metrics().failed_requests == 1

    async def test_sink_receives_successes_only(self, build, backend):
        sink = RecordingSink()
        orchestrator = build(backend, sink=sink)

        await orchestrator.acquire(AMAZON_URL)
        await orchestrator.acquire("ftp://nope")

        assert [r.url for r in sink.results] == [AMAZON_URL]

    async def test_sink_failure_does_not_fail_acquisition(self, build, backend):
        sink = RecordingSink(error=RuntimeError("database is down"))

        result = await build(backend, sink=sink).acquire(AMAZON_URL)

        assert result.status == "success"

    async def test_metrics(self, build, backend):
        orchestrator = build(backend)

        await orchestrator.acquire(AMAZON_URL)
        await orchestrator.acquire(AMAZON_URL)
        await orchestrator.acquire("not a url")
        metrics = orchestrator.get_metrics()

        assert metrics.total_requests == 3
        assert metrics.successful_requests == 2
        assert metrics.failed_requests == 1
        assert metrics.success_rate == 66.67
        assert metrics.active_sessions == 0
        assert metrics.average_requests_per_session == 1.0


class TestAcquireMany:
    async def test_order_and_progress(self, build, fast_config):
        backend = FakeBackend(navigate_delay=0.02)
        orchestrator = build(backend, config=fast_config.merged({"maxConcurrentSessions": 2}))
        urls = [AMAZON_URL, "not a url", AMAZON_URL, AMAZON_URL]
        progress = []

        results = await orchestrator.acquire_many(urls, on_progress=lambda done, total, r: progress.append((done, total)))

        assert [r.url for r in results] == urls
        assert [r.status for r in results] == ["success", "failed", "success", "success"]
        assert sorted(progress) == [(1, 4), (2, 4), (3, 4), (4, 4)]
        assert backend.max_open <= 2

    async def test_ceiling_holds_under_load(self, build, fast_config):
        backend = FakeBackend(navigate_delay=0.01)
        orchestrator = build(backend, config=fast_config.merged({"maxConcurrentSessions": 3}))

        # Acquisitions lancées directement: seul le plafond des sessions les borne
        results = await asyncio.gather(*(orchestrator.acquire(AMAZON_URL) for _ in range(20)))

        assert all(r.status == "success" for r in results)
        assert backend.max_open <= 3
        assert backend.open_calls == 20
