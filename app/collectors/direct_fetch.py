"""
Fetch HTTP direct (sans navigateur) via cloudscraper.

Dernier recours du pipeline: le HTML brut est passé au même extracteur que
le HTML rendu. cloudscraper est synchrone, l'appel tourne dans un thread.
"""
import asyncio
import random
from typing import Optional, Protocol

import requests.exceptions

from app.core.exceptions import NavigationError, NavigationTimeout, ProxyFailure
from app.core.logging import get_logger
from app.normalizers.session import ProxyEndpoint
from app.utils.http_stealth import FingerprintGenerator, create_stealth_scraper

logger = get_logger(__name__)


class PageFetcher(Protocol):
    async def fetch(self, url: str, timeout_ms: int, proxy: Optional[ProxyEndpoint] = None) -> str:
        ...


class DirectFetcher:
    """Implémentation cloudscraper de PageFetcher."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._fingerprints = FingerprintGenerator(rng or random.Random())

    def _fetch_sync(self, url: str, timeout_ms: int, proxy: Optional[ProxyEndpoint]) -> str:
        scraper, headers = create_stealth_scraper(self._fingerprints.generate())
        proxies = proxy.to_dict() if proxy else None
        timeout = timeout_ms / 1000

        try:
            resp = scraper.get(url, headers=headers, proxies=proxies, timeout=timeout, allow_redirects=True)
        except requests.exceptions.Timeout as e:
            raise NavigationTimeout(f"Direct fetch timeout after {timeout_ms}ms", timeout_ms=timeout_ms, url=url) from e
        except requests.exceptions.ProxyError as e:
            raise ProxyFailure(f"Proxy error: {e}", proxy=proxy.key if proxy else None, url=url) from e
        except requests.exceptions.RequestException as e:
            raise NavigationError(f"Direct fetch failed: {e}", url=url) from e
        finally:
            scraper.close()

        if resp.status_code == 407:
            raise ProxyFailure("Proxy authentication required (407)", proxy=proxy.key if proxy else None, url=url)
        if resp.status_code >= 400:
            raise NavigationError(
                f"HTTP {resp.status_code} on direct fetch",
                url=url,
                retryable=resp.status_code in (429, 500, 502, 503, 504),
            )

        logger.debug("Direct fetch OK", url=url, status_code=resp.status_code, size=len(resp.content))
        return resp.text

    async def fetch(self, url: str, timeout_ms: int, proxy: Optional[ProxyEndpoint] = None) -> str:
        """
        Raises:
            NavigationTimeout, ProxyFailure, NavigationError
        """
        return await asyncio.to_thread(self._fetch_sync, url, timeout_ms, proxy)
