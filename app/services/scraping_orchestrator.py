"""
Scraping Orchestrator - Acquisition produit avec fallback automatique.

Chaîne ordonnée, court-circuitée au premier succès:
1. provider de données structurées (si configuré pour la plateforme)
2. navigateur: session -> navigation -> extraction, avec retries
3. fetch HTTP direct + extraction (si activé)

Puis, optionnellement, enrichissement IA (jamais bloquant).

`acquire` ne lève jamais (sauf annulation par l'appelant): toute issue
produit un ScrapingResult.
"""
import asyncio
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple, Union

from app.collectors.direct_fetch import DirectFetcher, PageFetcher
from app.collectors.extractor import build_product, extract, extract_product
from app.core.config import ScraperConfig, load_proxies_from_env
from app.core.exceptions import (
    InvalidUrlError,
    NavigationError,
    ProxyFailure,
    ScraperError,
    SessionBusyError,
    SessionCreationError,
)
from app.core.logging import apply_log_level, get_logger, set_trace_id
from app.core.platforms import Platform, detect_platform, validate_url
from app.normalizers.product import ScrapedProduct, ScrapingResult
from app.normalizers.session import MetricsSnapshot
from app.services.ai_enhancement_service import ProductEnhancer, build_default_enhancer
from app.services.browser_worker import AutomationBackend, PlaywrightBackend
from app.services.metrics_service import MetricsCollector
from app.services.navigation_service import NavigationHandler
from app.services.provider_service import ProviderRegistry, build_default_registry
from app.services.proxy_service import ProxyPool
from app.services.session_manager import ScrapingSession, SessionManager

logger = get_logger(__name__)


# =============================================================================
# TYPES
# =============================================================================

class AcquisitionMethod(str, Enum):
    """Étape de la chaîne qui a produit le résultat."""
    PROVIDER = "provider"
    BROWSER = "browser"
    DIRECT = "direct"


class ProductSink(Protocol):
    """Destination des résultats réussis (base, file, webhook...)."""

    async def save(self, result: ScrapingResult) -> None:
        ...


ProgressCallback = Callable[[int, int, ScrapingResult], None]
ConfigOverrides = Union[ScraperConfig, Dict[str, Any], None]


@dataclass
class _ChainState:
    attempts: int = 0
    errors: List[str] = field(default_factory=list)

    def fail(self, stage: str, error: BaseException) -> None:
        message = error.message if isinstance(error, ScraperError) else str(error)
        self.errors.append(f"{stage}: {message or type(error).__name__}")


class AcquisitionFailed(ScraperError):
    """Toutes les étapes de la chaîne ont échoué."""
    pass


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class ScrapingOrchestrator:
    def __init__(
        self,
        backend: AutomationBackend,
        config: Optional[ScraperConfig] = None,
        providers: Optional[ProviderRegistry] = None,
        fetcher: Optional[PageFetcher] = None,
        enhancer: Optional[ProductEnhancer] = None,
        sink: Optional[ProductSink] = None,
        proxy_pool: Optional[ProxyPool] = None,
        metrics: Optional[MetricsCollector] = None,
        rng: Optional[random.Random] = None,
        acquire_timeout: Optional[float] = None,
    ):
        self.config = config or ScraperConfig()
        self.rng = rng or random.Random()
        self.backend = backend
        self.providers = providers
        self.fetcher = fetcher
        self.enhancer = enhancer
        self.sink = sink
        self.metrics = metrics or MetricsCollector()
        self.proxy_pool = proxy_pool or ProxyPool(self.config.proxy_pool, rng=self.rng)
        self.sessions = SessionManager(
            backend,
            self.proxy_pool,
            max_concurrent_sessions=self.config.max_concurrent_sessions,
            proxy_rotation=self.config.proxy_rotation,
            randomize_fingerprint=self.config.randomize_fingerprint,
            rng=self.rng,
            acquire_timeout=acquire_timeout,
        )
        apply_log_level(self.config.log_level)

    def _resolve_config(self, config: ConfigOverrides) -> ScraperConfig:
        if config is None:
            return self.config
        if isinstance(config, ScraperConfig):
            return config
        return self.config.merged(config)

    # -------------------------------------------------------------------------
    # Sessions exposées aux appelants (réutilisation entre acquisitions)
    # -------------------------------------------------------------------------

    async def create_session(self, session_id: Optional[str] = None, config: ConfigOverrides = None) -> str:
        cfg = self._resolve_config(config)
        return await self.sessions.create_session(
            session_id,
            proxy_rotation=cfg.proxy_rotation,
            randomize_fingerprint=cfg.randomize_fingerprint,
        )

    async def close_session(self, session_id: str) -> None:
        await self.sessions.close_session(session_id)

    # -------------------------------------------------------------------------
    # Étapes
    # -------------------------------------------------------------------------

    async def _try_provider(
        self, url: str, platform: Platform, cfg: ScraperConfig, state: _ChainState
    ) -> Optional[ScrapedProduct]:
        if self.providers is None or self.providers.get(platform) is None:
            return None

        state.attempts += 1
        start = time.perf_counter()
        try:
            product = await asyncio.wait_for(
                self.providers.fetch(url, platform),
                timeout=cfg.provider_timeout / 1000,
            )
        except asyncio.TimeoutError:
            state.errors.append(f"provider: timeout after {cfg.provider_timeout}ms")
            logger.warning("Provider timeout, falling back to browser", url=url, platform=platform.value)
            return None
        except Exception as e:
            state.fail("provider", e)
            logger.warning(
                f"Provider failed, falling back to browser: {e}",
                url=url,
                platform=platform.value,
                error_type=type(e).__name__,
            )
            return None

        logger.debug(
            "Provider stage done",
            url=url,
            platform=platform.value,
            duration_ms=(time.perf_counter() - start) * 1000,
            found=product is not None,
        )
        return product

    def _report_proxy_failure(
        self, error: ScraperError, session: Optional[ScrapingSession], failed_proxies: Set[str]
    ) -> None:
        if isinstance(error, ProxyFailure):
            self.metrics.record_proxy_failure()
        if session is not None and session.proxy is not None:
            self.proxy_pool.report_failure(session.proxy)
            failed_proxies.add(session.proxy.key)

    async def _browser_path(
        self,
        url: str,
        platform: Platform,
        session_id: Optional[str],
        cfg: ScraperConfig,
        state: _ChainState,
    ) -> ScrapedProduct:
        """
        Session -> navigation -> extraction, avec la politique de retry:
        - ProxyFailure / SessionCreationError: nouveau proxy, max `max_proxy_retries` swaps
        - autre erreur (navigation, extraction vide): max `max_retries` tentatives

        Une session créée ici est toujours fermée après la tentative.
        Une session fournie par l'appelant reste ouverte en cas de succès.
        """
        navigator = NavigationHandler(
            self.backend,
            self.metrics,
            delay=cfg.delay_between_requests,
            solve_captcha=cfg.solve_captcha,
            captcha_timeout_ms=cfg.captcha_timeout,
            rng=self.rng,
        )
        if session_id is not None and self.sessions.get_session(session_id) is None:
            raise SessionCreationError(f"Unknown session {session_id}", url=url)

        failed_proxies: Set[str] = set()
        proxy_swaps = 0
        failures = 0
        caller_session = session_id

        while True:
            state.attempts += 1
            sid = caller_session
            if sid is None:
                try:
                    sid = await self.sessions.create_session(
                        exclude_proxies=failed_proxies,
                        proxy_rotation=cfg.proxy_rotation,
                        randomize_fingerprint=cfg.randomize_fingerprint,
                    )
                except SessionCreationError as e:
                    proxy_swaps += 1
                    if proxy_swaps > cfg.max_proxy_retries:
                        raise
                    logger.warning(f"Session creation failed, retrying ({proxy_swaps}/{cfg.max_proxy_retries}): {e}", url=url)
                    continue

            session = self.sessions.get_session(sid)
            keep_open = False
            try:
                async with self.sessions.lease(sid) as session:
                    content = await navigator.load(session, url, cfg.request_timeout)
                    product = build_product(extract(content, platform, url), url, platform)
                if session.proxy is not None:
                    self.proxy_pool.report_success(session.proxy)
                keep_open = sid == caller_session
                return product

            except SessionBusyError:
                keep_open = True
                raise

            except (ProxyFailure, SessionCreationError) as e:
                self._report_proxy_failure(e, session, failed_proxies)
                caller_session = None
                proxy_swaps += 1
                if proxy_swaps > cfg.max_proxy_retries:
                    logger.warning(f"Proxy retries exhausted: {e}", url=url, session_id=sid)
                    raise
                logger.warning(
                    f"Proxy failure, swapping proxy ({proxy_swaps}/{cfg.max_proxy_retries}): {e}",
                    url=url,
                    session_id=sid,
                )

            except Exception as e:
                caller_session = None
                failures += 1
                if failures >= cfg.max_retries:
                    logger.warning(f"Browser retries exhausted: {e}", url=url, session_id=sid)
                    if isinstance(e, ScraperError):
                        raise
                    raise NavigationError(f"Browser attempt failed: {e}", url=url) from e
                logger.info(
                    f"Browser attempt failed, retrying ({failures}/{cfg.max_retries}): {e}",
                    url=url,
                    session_id=sid,
                    error_type=type(e).__name__,
                )

            finally:
                if not keep_open:
                    await self.sessions.close_session(sid)

    async def _try_direct(
        self, url: str, platform: Platform, cfg: ScraperConfig, state: _ChainState
    ) -> Optional[ScrapedProduct]:
        if self.fetcher is None or not cfg.direct_fetch_fallback:
            return None

        state.attempts += 1
        proxy = self.proxy_pool.select_random() if cfg.proxy_rotation else None
        start = time.perf_counter()
        try:
            content = await self.fetcher.fetch(url, cfg.request_timeout, proxy)
            product = extract_product(content, platform, url)
        except ProxyFailure as e:
            self.metrics.record_proxy_failure()
            if proxy is not None:
                self.proxy_pool.report_failure(proxy)
            state.fail("direct", e)
            return None
        except Exception as e:
            state.fail("direct", e)
            logger.info(f"Direct fetch failed: {e}", url=url, error_type=type(e).__name__)
            return None

        logger.debug("Direct stage done", url=url, duration_ms=(time.perf_counter() - start) * 1000)
        return product

    async def _run_chain(
        self,
        url: str,
        platform: Platform,
        session_id: Optional[str],
        cfg: ScraperConfig,
        state: _ChainState,
    ) -> Tuple[ScrapedProduct, AcquisitionMethod]:
        product = await self._try_provider(url, platform, cfg, state)
        method = AcquisitionMethod.PROVIDER

        if product is None:
            start = time.perf_counter()
            try:
                product = await self._browser_path(url, platform, session_id, cfg, state)
                method = AcquisitionMethod.BROWSER
            except ScraperError as e:
                state.fail("browser", e)
            logger.debug("Browser stage done", url=url, duration_ms=(time.perf_counter() - start) * 1000)

        if product is None:
            product = await self._try_direct(url, platform, cfg, state)
            method = AcquisitionMethod.DIRECT

        if product is None:
            raise AcquisitionFailed("; ".join(state.errors) or "All acquisition methods failed", url=url)

        if cfg.enable_ai and self.enhancer is not None:
            product = await self.enhancer.enhance(product, timeout_ms=cfg.enhancement_timeout)

        return product, method

    # -------------------------------------------------------------------------
    # API publique
    # -------------------------------------------------------------------------

    async def acquire(
        self,
        url: str,
        session_id: Optional[str] = None,
        config: ConfigOverrides = None,
        deadline: Optional[float] = None,
    ) -> ScrapingResult:
        """
        Acquiert un produit. Retourne toujours un ScrapingResult.

        Args:
            url: URL produit
            session_id: session existante à réutiliser
            config: options (ScraperConfig ou dict camelCase/snake_case).
                Le plafond global de sessions est celui du constructeur;
                `maxConcurrentSessions` par appel ne borne que `acquire_many`.
            deadline: délai global en secondes (sessions libérées à l'expiration)
        """
        set_trace_id()
        start = time.perf_counter()
        self.metrics.record_request()
        state = _ChainState()

        def elapsed_ms() -> float:
            return (time.perf_counter() - start) * 1000

        try:
            cfg = self._resolve_config(config)
            if config is not None:
                apply_log_level(cfg.log_level)
            validation = validate_url(url)
            if not validation.valid:
                raise InvalidUrlError(validation.error or "Invalid URL", url=url)

            platform = detect_platform(url)
            logger.acquire_start(url, platform.value)
            chain = self._run_chain(url, platform, session_id, cfg, state)
            if deadline is not None:
                product, method = await asyncio.wait_for(chain, timeout=deadline)
            else:
                product, method = await chain

        except asyncio.CancelledError:
            self.metrics.record_failure()
            logger.warning("Acquisition cancelled", url=url, duration_ms=elapsed_ms())
            raise
        except asyncio.TimeoutError as e:
            error = TimeoutError(f"Deadline exceeded after {deadline}s") if deadline is not None else e
            return self._failure(url, error, elapsed_ms(), state)
        except Exception as e:
            return self._failure(url, e, elapsed_ms(), state)

        self.metrics.record_success()
        duration = elapsed_ms()
        logger.acquire_success(url, platform.value, method.value, duration)
        result = ScrapingResult.success(url, product, duration, method.value, attempts=state.attempts)
        await self._save(result)
        return result

    def _failure(self, url: str, error: BaseException, duration: float, state: _ChainState) -> ScrapingResult:
        self.metrics.record_failure()
        logger.acquire_error(url, error, duration)
        message = error.message if isinstance(error, ScraperError) else str(error)
        return ScrapingResult.failure(url, message or type(error).__name__, duration, attempts=state.attempts)

    async def _save(self, result: ScrapingResult) -> None:
        if self.sink is None:
            return
        try:
            await self.sink.save(result)
        except Exception as e:
            logger.error(f"Product sink failed: {e}", url=result.url)

    async def acquire_many(
        self,
        urls: List[str],
        config: ConfigOverrides = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[ScrapingResult]:
        """Acquisition parallèle, bornée par max_concurrent_sessions, ordre préservé."""
        cfg = self._resolve_config(config)
        limit = asyncio.Semaphore(cfg.max_concurrent_sessions)
        done = 0

        async def _one(url: str) -> ScrapingResult:
            nonlocal done
            async with limit:
                result = await self.acquire(url, config=cfg)
            done += 1
            if on_progress is not None:
                on_progress(done, len(urls), result)
            return result

        return list(await asyncio.gather(*(_one(url) for url in urls)))

    def get_metrics(self) -> MetricsSnapshot:
        return self.metrics.snapshot(
            active_sessions=self.sessions.active_count,
            session_totals=self.sessions.session_totals(),
        )

    async def close(self) -> None:
        await self.sessions.close_all()
        if self.providers is not None:
            await self.providers.aclose()


# =============================================================================
# SINGLETON
# =============================================================================

_orchestrator: Optional[ScrapingOrchestrator] = None


def build_orchestrator(config: Optional[ScraperConfig] = None) -> ScrapingOrchestrator:
    """Orchestrateur de production: Playwright, providers HTTP, cloudscraper, Anthropic."""
    config = config or ScraperConfig()
    rng = random.Random()
    proxy_pool = ProxyPool(list(config.proxy_pool) + load_proxies_from_env(), rng=rng)
    return ScrapingOrchestrator(
        backend=PlaywrightBackend(),
        config=config,
        providers=build_default_registry(timeout=config.provider_timeout / 1000),
        fetcher=DirectFetcher(rng),
        enhancer=build_default_enhancer(config.enhancement_timeout),
        proxy_pool=proxy_pool,
        rng=rng,
    )


def get_orchestrator() -> ScrapingOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


async def shutdown_orchestrator() -> None:
    """Ferme les sessions et clients du singleton s'il a été créé."""
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.close()
        _orchestrator = None
