"""
Browser Worker - Capacité d'automatisation navigateur.

`AutomationBackend` est le contrat consommé par le pipeline (ouvrir un
handle, appliquer une empreinte, s'authentifier au proxy, naviguer,
évaluer un script, tenter un challenge, fermer). `PlaywrightBackend` en
est l'implémentation Chromium headless.
"""
import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from app.core.config import HEADLESS
from app.core.exceptions import (
    NavigationError,
    NavigationTimeout,
    ProxyFailure,
    SessionCreationError,
    looks_like_proxy_error,
)
from app.core.logging import get_logger
from app.normalizers.session import BrowserFingerprint, ProxyEndpoint

logger = get_logger(__name__)

# Script d'extraction: le HTML rendu est parsé côté Python
PAGE_CONTENT_SCRIPT = "() => document.documentElement.outerHTML"

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--disable-gpu",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-features=TranslateUI",
    "--disable-blink-features=AutomationControlled",
]

# Marqueurs DOM de challenge anti-bot
CHALLENGE_SELECTORS = [
    "iframe[src*='recaptcha']",
    "iframe[src*='hcaptcha']",
    "iframe[src*='challenges.cloudflare.com']",
    "#challenge-form",
    "#cf-challenge-running",
    "form[action*='validateCaptcha']",
    "#px-captcha",
]


class AutomationBackend(ABC):
    """Contrat d'un moteur d'automatisation (un handle = un navigateur isolé)."""

    @abstractmethod
    async def open(self, proxy: Optional[ProxyEndpoint] = None) -> Any:
        """Ouvre un handle. Lève SessionCreationError si le moteur ne démarre pas."""

    @abstractmethod
    async def apply_fingerprint(self, handle: Any, fingerprint: BrowserFingerprint) -> None:
        ...

    @abstractmethod
    async def authenticate_proxy(self, handle: Any, username: str, password: str) -> None:
        ...

    @abstractmethod
    async def navigate(self, handle: Any, url: str, timeout_ms: int) -> None:
        ...

    @abstractmethod
    async def evaluate(self, handle: Any, script: str) -> Any:
        ...

    @abstractmethod
    async def attempt_challenge_solve(self, handle: Any, timeout_ms: int) -> bool:
        """True si un challenge était présent et a été résolu."""

    @abstractmethod
    async def close(self, handle: Any) -> None:
        """Libère le handle (idempotent)."""


class ChallengeSolver(Protocol):
    async def solve(self, page: Page, timeout_ms: int) -> bool:
        ...


def build_stealth_script(fingerprint: BrowserFingerprint) -> str:
    """Script injecté avant chaque document pour masquer l'automatisation."""
    fp = json.dumps({
        "locale": fingerprint.locale,
        "platform": fingerprint.platform,
        "webgl": fingerprint.webgl,
        "canvas": fingerprint.canvas,
    })
    return """
    (() => {
      const fp = %s;
      Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
      window.chrome = { runtime: {} };
      Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
      Object.defineProperty(navigator, 'language', { get: () => fp.locale });
      Object.defineProperty(navigator, 'languages', { get: () => [fp.locale, fp.locale.split('-')[0]] });
      Object.defineProperty(navigator, 'platform', { get: () => fp.platform });
      if (!fp.webgl) {
        const getContext = HTMLCanvasElement.prototype.getContext;
        HTMLCanvasElement.prototype.getContext = function (type, ...args) {
          if (type && type.startsWith('webgl')) return null;
          return getContext.call(this, type, ...args);
        };
      }
      if (!fp.canvas) {
        HTMLCanvasElement.prototype.toDataURL = () => 'data:,';
      }
    })();
    """ % fp


class ClearanceWaitSolver:
    """
    Attend la disparition des marqueurs de challenge (les challenges JS de
    type Cloudflare se résolvent seuls une fois l'empreinte acceptée).
    """

    poll_interval = 0.5

    async def _has_challenge(self, page: Page) -> bool:
        for selector in CHALLENGE_SELECTORS:
            if await page.query_selector(selector):
                return True
        title = (await page.title()).lower()
        return "just a moment" in title or "robot check" in title

    async def solve(self, page: Page, timeout_ms: int) -> bool:
        if not await self._has_challenge(page):
            return False
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        while loop.time() < deadline:
            await asyncio.sleep(self.poll_interval)
            if not await self._has_challenge(page):
                return True
        return False


@dataclass
class PlaywrightHandle:
    playwright: Playwright
    browser: Browser
    proxy: Optional[ProxyEndpoint] = None
    fingerprint: Optional[BrowserFingerprint] = None
    credentials: Optional[Dict[str, str]] = None
    context: Optional[BrowserContext] = None
    page: Optional[Page] = None
    closed: bool = field(default=False)


class PlaywrightBackend(AutomationBackend):
    def __init__(self, headless: bool = HEADLESS, solver: Optional[ChallengeSolver] = None):
        self.headless = headless
        self.solver = solver or ClearanceWaitSolver()

    async def open(self, proxy: Optional[ProxyEndpoint] = None) -> PlaywrightHandle:
        playwright = None
        try:
            playwright = await async_playwright().start()
            launch_options: Dict[str, Any] = {"headless": self.headless, "args": list(LAUNCH_ARGS)}
            if proxy:
                launch_options["proxy"] = {"server": proxy.server}
            browser = await playwright.chromium.launch(**launch_options)
        except Exception as e:
            if playwright:
                await playwright.stop()
            raise SessionCreationError(f"Browser launch failed: {e}") from e
        return PlaywrightHandle(playwright=playwright, browser=browser, proxy=proxy)

    async def apply_fingerprint(self, handle: PlaywrightHandle, fingerprint: BrowserFingerprint) -> None:
        handle.fingerprint = fingerprint

    async def authenticate_proxy(self, handle: PlaywrightHandle, username: str, password: str) -> None:
        handle.credentials = {"username": username, "password": password}

    async def _ensure_page(self, handle: PlaywrightHandle) -> Page:
        if handle.page is not None:
            return handle.page

        options: Dict[str, Any] = {"ignore_https_errors": True}
        fp = handle.fingerprint
        if fp:
            options.update(
                user_agent=fp.user_agent,
                viewport={"width": fp.viewport.width, "height": fp.viewport.height},
                locale=fp.locale,
                timezone_id=fp.timezone,
                extra_http_headers={"Accept-Language": fp.accept_language},
            )
        if handle.proxy:
            proxy_options = {"server": handle.proxy.server}
            if handle.credentials:
                proxy_options.update(handle.credentials)
            options["proxy"] = proxy_options

        handle.context = await handle.browser.new_context(**options)
        if fp:
            await handle.context.add_init_script(build_stealth_script(fp))
        handle.page = await handle.context.new_page()
        return handle.page

    async def navigate(self, handle: PlaywrightHandle, url: str, timeout_ms: int) -> None:
        try:
            page = await self._ensure_page(handle)
            response = await page.goto(url, timeout=timeout_ms, wait_until="networkidle")
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(f"Navigation timeout after {timeout_ms}ms", timeout_ms=timeout_ms, url=url) from e
        except PlaywrightError as e:
            if looks_like_proxy_error(e):
                raise ProxyFailure(f"Proxy error: {e}", proxy=handle.proxy.key if handle.proxy else None, url=url) from e
            raise NavigationError(f"Navigation failed: {e}", url=url) from e

        if response is not None and response.status == 407:
            raise ProxyFailure("Proxy authentication required (407)", url=url)
        if response is not None:
            logger.debug("Page loaded", url=url, status_code=response.status)

    async def evaluate(self, handle: PlaywrightHandle, script: str) -> Any:
        page = await self._ensure_page(handle)
        return await page.evaluate(script)

    async def attempt_challenge_solve(self, handle: PlaywrightHandle, timeout_ms: int) -> bool:
        page = await self._ensure_page(handle)
        return await self.solver.solve(page, timeout_ms)

    async def close(self, handle: PlaywrightHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        try:
            if handle.context:
                await handle.context.close()
            await handle.browser.close()
        except PlaywrightError as e:
            logger.warning(f"Browser close error: {e}")
        finally:
            await handle.playwright.stop()
