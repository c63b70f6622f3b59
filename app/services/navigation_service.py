"""
Navigation & Challenge Handler.

Pour une session:
1. applique l'empreinte (UA, viewport, locale, masquage webdriver)
2. s'authentifie au proxy si besoin
3. attend un délai aléatoire [min, max]
4. navigue sous timeout
5. tente de résoudre un éventuel challenge anti-bot (non fatal)
6. retourne le HTML rendu
"""
import asyncio
import random
from typing import Optional

from app.core.config import DelayRange
from app.core.exceptions import (
    ChallengeUnsolved,
    NavigationError,
    NavigationTimeout,
    ProxyFailure,
    ScraperError,
    looks_like_proxy_error,
)
from app.core.logging import get_logger
from app.services.browser_worker import PAGE_CONTENT_SCRIPT, AutomationBackend
from app.services.metrics_service import MetricsCollector
from app.services.session_manager import ScrapingSession
from app.utils.http_stealth import pick_delay_ms

logger = get_logger(__name__)


class NavigationHandler:
    def __init__(
        self,
        backend: AutomationBackend,
        metrics: MetricsCollector,
        delay: Optional[DelayRange] = None,
        solve_captcha: bool = False,
        captcha_timeout_ms: int = 30000,
        rng: Optional[random.Random] = None,
    ):
        self.backend = backend
        self.metrics = metrics
        self.delay = delay or DelayRange()
        self.solve_captcha = solve_captcha
        self.captcha_timeout_ms = captcha_timeout_ms
        self._rng = rng or random.Random()

    def _wrap(self, session: ScrapingSession, url: str, error: Exception, step: str) -> ScraperError:
        """Convertit une erreur brute du backend en erreur du pipeline."""
        if looks_like_proxy_error(error):
            return ProxyFailure(
                f"Proxy error: {error}",
                proxy=session.proxy.key if session.proxy else None,
                url=url,
            )
        return NavigationError(f"{step} failed: {error}", url=url)

    async def _prepare(self, session: ScrapingSession, url: str) -> None:
        try:
            await self.backend.apply_fingerprint(session.handle, session.fingerprint)
            proxy = session.proxy
            if proxy and proxy.has_credentials:
                await self.backend.authenticate_proxy(session.handle, proxy.username, proxy.password)
        except ScraperError:
            raise
        except Exception as e:
            raise self._wrap(session, url, e, "Session setup") from e

    async def _navigate(self, session: ScrapingSession, url: str, timeout_ms: int) -> None:
        try:
            await asyncio.wait_for(
                self.backend.navigate(session.handle, url, timeout_ms),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError as e:
            raise NavigationTimeout(f"Navigation timeout after {timeout_ms}ms", timeout_ms=timeout_ms, url=url) from e
        except ScraperError:
            raise
        except Exception as e:
            raise self._wrap(session, url, e, "Navigation") from e

    async def _solve_challenge(self, session: ScrapingSession, url: str) -> None:
        """Non fatal: en cas d'échec on continue avec le contenu chargé."""
        try:
            solved = await asyncio.wait_for(
                self.backend.attempt_challenge_solve(session.handle, self.captcha_timeout_ms),
                timeout=self.captcha_timeout_ms / 1000,
            )
        except (asyncio.TimeoutError, ChallengeUnsolved) as e:
            logger.info(f"Challenge not solved: {type(e).__name__}", url=url, session_id=session.id)
            return
        except Exception as e:
            logger.warning(
                f"Challenge solving failed: {e}",
                url=url,
                session_id=session.id,
                error_type=type(e).__name__,
            )
            return

        if solved:
            self.metrics.record_challenge_solved()
            logger.info("CAPTCHA solved successfully", url=url, session_id=session.id)
        else:
            logger.debug("No CAPTCHA detected or solving failed", url=url, session_id=session.id)

    async def load(self, session: ScrapingSession, url: str, timeout_ms: int) -> str:
        """
        Charge la page et retourne son HTML.

        Raises:
            NavigationTimeout, ProxyFailure, NavigationError
        """
        session.request_count += 1
        await self._prepare(session, url)

        delay_ms = pick_delay_ms(self.delay, self._rng)
        if delay_ms:
            await asyncio.sleep(delay_ms / 1000)

        logger.debug(f"Navigating with session {session.id}", url=url, session_id=session.id, delay_ms=delay_ms)
        await self._navigate(session, url, timeout_ms)

        if self.solve_captcha:
            await self._solve_challenge(session, url)

        try:
            content = await self.backend.evaluate(session.handle, PAGE_CONTENT_SCRIPT)
        except ScraperError:
            raise
        except Exception as e:
            raise self._wrap(session, url, e, "Content read") from e
        return content if isinstance(content, str) else ""
