"""
Platform Detector - Associe une URL à une plateforme e-commerce.

La détection est une fonction pure du hostname, évaluée contre une liste
ordonnée de sous-chaînes (premier match gagnant). Toute URL inconnue ou
invalide retourne GENERIC.
"""
import re
from enum import Enum
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

from app.normalizers.session import UrlValidation


class Platform(str, Enum):
    AMAZON = "amazon"
    EBAY = "ebay"
    ALIBABA = "alibaba"
    ALIEXPRESS = "aliexpress"
    WALMART = "walmart"
    SHOPIFY = "shopify"
    GENERIC = "generic"


# Ordre = priorité
PLATFORM_HOST_PATTERNS: List[Tuple[Tuple[str, ...], Platform]] = [
    (("amazon",), Platform.AMAZON),
    (("ebay",), Platform.EBAY),
    (("aliexpress",), Platform.ALIEXPRESS),
    (("alibaba", "1688"), Platform.ALIBABA),
    (("walmart",), Platform.WALMART),
    (("myshopify", "shopifypreview", "shopify"), Platform.SHOPIFY),
]

# Identifiants produits utilisés par les providers
_IDENTIFIER_PATTERNS: Dict[Platform, List[re.Pattern]] = {
    Platform.AMAZON: [
        re.compile(r"/dp/([A-Z0-9]{10})"),
        re.compile(r"/gp/product/([A-Z0-9]{10})"),
        re.compile(r"/exec/obidos/ASIN/([A-Z0-9]{10})"),
        re.compile(r"asin=([A-Z0-9]{10})", re.IGNORECASE),
    ],
    Platform.ALIBABA: [re.compile(r"product-detail/(?:[^/]*?_)?([0-9]+)")],
    Platform.ALIEXPRESS: [re.compile(r"item/([0-9]+)")],
    Platform.EBAY: [re.compile(r"itm/(?:[^/]+/)?([0-9]+)")],
    Platform.WALMART: [re.compile(r"ip/[^/]+/([0-9]+)"), re.compile(r"ip/([0-9]+)")],
    Platform.SHOPIFY: [re.compile(r"/products/([^/?#]+)")],
}

_URL_SUGGESTIONS: Dict[Platform, List[str]] = {
    Platform.AMAZON: [
        "Make sure the URL is a product page (contains /dp/ or /gp/product/)",
        "Remove tracking parameters (ref=, tag=) for cleaner URLs",
    ],
    Platform.ALIBABA: [
        "Use product detail page URLs (contains /product-detail/)",
        "Avoid supplier store URLs for better results",
    ],
    Platform.ALIEXPRESS: [
        "Use individual product URLs (contains /item/)",
        "Avoid category or search result URLs",
    ],
}


def _hostname(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def detect_platform(url: str) -> Platform:
    """Détecte la plateforme (déterministe et totale)."""
    hostname = _hostname(url)
    if not hostname:
        return Platform.GENERIC
    for needles, platform in PLATFORM_HOST_PATTERNS:
        if any(needle in hostname for needle in needles):
            return platform
    return Platform.GENERIC


def extract_identifier(url: str, platform: Optional[Platform] = None) -> Optional[str]:
    """Extrait l'identifiant produit (ASIN, item id...) utilisé par les providers."""
    platform = platform or detect_platform(url)
    for pattern in _IDENTIFIER_PATTERNS.get(platform, []):
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def validate_url(url: str) -> UrlValidation:
    """Valide l'URL et retourne la plateforme + des conseils."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return UrlValidation(valid=False, error="Invalid URL format")

    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return UrlValidation(valid=False, error="Invalid URL format")

    platform = detect_platform(url)
    return UrlValidation(
        valid=True,
        platform=platform.value,
        suggestions=list(_URL_SUGGESTIONS.get(platform, [])),
    )
