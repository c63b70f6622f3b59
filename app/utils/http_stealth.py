"""
HTTP Stealth - Utilitaires anti-détection pour le scraping.

Fournit:
- Génération d'empreintes navigateur cohérentes (UA / plateforme / viewport)
- Headers complets simulant un vrai navigateur
- Délais aléatoires avant navigation
- Session cloudscraper préconfigurée

Toute la randomisation passe par un `random.Random` injecté.
"""
import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import cloudscraper

from app.core.config import DelayRange
from app.normalizers.session import BrowserFingerprint, Viewport


@dataclass(frozen=True)
class DeviceProfile:
    """Famille d'appareils: chaque UA n'est combiné qu'avec ses viewports."""
    platform: str
    user_agents: Tuple[str, ...]
    viewports: Tuple[Tuple[int, int], ...]
    sec_ch_platform: Optional[str]


DEVICE_PROFILES: List[DeviceProfile] = [
    DeviceProfile(
        platform="Win32",
        user_agents=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
        ),
        viewports=((1920, 1080), (1366, 768), (1536, 864)),
        sec_ch_platform='"Windows"',
    ),
    DeviceProfile(
        platform="MacIntel",
        user_agents=(
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
        ),
        viewports=((1440, 900), (1680, 1050), (1920, 1080)),
        sec_ch_platform='"macOS"',
    ),
    DeviceProfile(
        platform="Linux x86_64",
        user_agents=(
            "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        ),
        viewports=((1920, 1080), (1366, 768)),
        sec_ch_platform='"Linux"',
    ),
]

# Locale -> timezones plausibles
LOCALE_TIMEZONES: Dict[str, Tuple[str, ...]] = {
    "en-US": ("America/New_York", "America/Chicago", "America/Los_Angeles"),
    "en-GB": ("Europe/London",),
    "fr-FR": ("Europe/Paris",),
    "de-DE": ("Europe/Berlin",),
}

# Empreinte stable utilisée quand la randomisation est désactivée
DEFAULT_FINGERPRINT = BrowserFingerprint(
    user_agent=DEVICE_PROFILES[0].user_agents[0],
    viewport=Viewport(width=1920, height=1080),
    locale="en-US",
    timezone="America/New_York",
    platform="Win32",
    webgl=True,
    canvas=True,
)

# Headers de base pour simuler un vrai navigateur
BASE_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
    "Accept-Encoding": "gzip, deflate, br",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Sec-Ch-Ua": '"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"',
    "Sec-Ch-Ua-Mobile": "?0",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Upgrade-Insecure-Requests": "1",
}


class FingerprintGenerator:
    """Génère une empreinte navigateur plausible par session."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    def generate(self) -> BrowserFingerprint:
        profile = self._rng.choice(DEVICE_PROFILES)
        width, height = self._rng.choice(profile.viewports)
        locale = self._rng.choice(list(LOCALE_TIMEZONES))
        return BrowserFingerprint(
            user_agent=self._rng.choice(profile.user_agents),
            viewport=Viewport(width=width, height=height),
            locale=locale,
            timezone=self._rng.choice(LOCALE_TIMEZONES[locale]),
            platform=profile.platform,
            webgl=self._rng.random() > 0.5,
            canvas=self._rng.random() > 0.5,
        )


def _is_chromium(user_agent: str) -> bool:
    return "Chrome" in user_agent


def get_stealth_headers(fingerprint: BrowserFingerprint, referer: Optional[str] = None) -> Dict[str, str]:
    """
    Retourne des headers complets cohérents avec l'empreinte.

    Args:
        fingerprint: Empreinte de la session
        referer: URL de référence optionnelle
    """
    headers = BASE_HEADERS.copy()
    headers["User-Agent"] = fingerprint.user_agent
    headers["Accept-Language"] = fingerprint.accept_language

    if referer:
        headers["Referer"] = referer
        headers["Sec-Fetch-Site"] = "same-origin"

    # Safari / Firefox n'envoient pas les client hints
    if not _is_chromium(fingerprint.user_agent):
        del headers["Sec-Ch-Ua"]
        del headers["Sec-Ch-Ua-Mobile"]
    else:
        profile = next((p for p in DEVICE_PROFILES if p.platform == fingerprint.platform), None)
        if profile and profile.sec_ch_platform:
            headers["Sec-Ch-Ua-Platform"] = profile.sec_ch_platform

    return headers


def pick_delay_ms(delay: DelayRange, rng: random.Random) -> int:
    """Délai uniforme dans [min, max] (ms)."""
    if delay.max <= delay.min:
        return delay.min
    return int(rng.uniform(delay.min, delay.max))


def create_stealth_scraper(fingerprint: BrowserFingerprint) -> Tuple[cloudscraper.CloudScraper, Dict[str, str]]:
    """
    Crée un scraper cloudscraper cohérent avec l'empreinte.

    Returns:
        Tuple (scraper, headers)
    """
    ua = fingerprint.user_agent
    platform = "darwin" if "Macintosh" in ua else "linux" if "Linux" in ua else "windows"
    browser = {"browser": "chrome", "platform": platform, "mobile": False}

    scraper = cloudscraper.create_scraper(browser=browser)
    return scraper, get_stealth_headers(fingerprint)
