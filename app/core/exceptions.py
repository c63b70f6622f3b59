"""
Hiérarchie d'exceptions pour le pipeline d'acquisition produit.

Permet de distinguer:
- Erreurs de session / proxy (retry avec un nouveau proxy)
- Erreurs de navigation (retry avec une nouvelle session)
- Erreurs locales non fatales (captcha, enrichissement IA)
- Erreurs terminales (extraction vide, provider en erreur)
"""
from typing import Optional


class ScraperError(Exception):
    """Exception de base pour tout le pipeline."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        retryable: bool = False,
    ):
        self.url = url
        self.retryable = retryable
        super().__init__(message)

    @property
    def message(self) -> str:
        return self.args[0] if self.args else ""

    def __str__(self) -> str:
        parts = [self.message]
        if self.url:
            parts.append(f"url={self.url[:80]}")
        return " | ".join(parts)


class InvalidUrlError(ScraperError):
    """URL mal formée ou schéma non supporté."""
    pass


# =============================================================================
# SESSIONS & PROXIES
# =============================================================================

class SessionCreationError(ScraperError):
    """Le backend d'automatisation n'a pas pu démarrer (ressources, binaire...)."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, retryable=True, **kwargs)


class SessionBusyError(ScraperError):
    """La session demandée est déjà utilisée par une autre tâche."""
    pass


class ProxyFailure(ScraperError):
    """Erreur de connexion / navigation imputable au proxy."""

    def __init__(self, message: str, proxy: Optional[str] = None, **kwargs):
        self.proxy = proxy
        super().__init__(message, retryable=True, **kwargs)


# =============================================================================
# NAVIGATION
# =============================================================================

class NavigationError(ScraperError):
    """Erreur de navigation générique."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)


class NavigationTimeout(NavigationError):
    """La page ne s'est pas stabilisée dans le délai imparti."""

    def __init__(self, message: str = "Navigation timeout", timeout_ms: Optional[int] = None, **kwargs):
        self.timeout_ms = timeout_ms
        super().__init__(message, **kwargs)


class ChallengeUnsolved(ScraperError):
    """Challenge anti-bot détecté mais non résolu (non fatal)."""
    pass


# =============================================================================
# EXTRACTION & PROVIDERS
# =============================================================================

class ExtractionEmpty(ScraperError):
    """Titre introuvable, même après le fallback générique."""
    pass


class ProviderAPIError(ScraperError):
    """Réponse non-2xx ou mal formée d'un provider de données structurées."""

    def __init__(self, message: str, status_code: Optional[int] = None, provider: Optional[str] = None, **kwargs):
        self.status_code = status_code
        self.provider = provider
        retryable = status_code is None or status_code >= 500 or status_code == 429
        super().__init__(message, retryable=retryable, **kwargs)

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code:
            return f"HTTP {self.status_code}: {base}"
        return base


class EnhancementFailure(ScraperError):
    """Échec de l'enrichissement IA (toujours absorbé localement)."""
    pass


# =============================================================================
# HELPERS
# =============================================================================

_PROXY_ERROR_MARKERS = (
    "err_proxy",
    "err_tunnel_connection_failed",
    "proxy",
    "407",
    "err_socks",
)


def is_retryable(exc: BaseException) -> bool:
    """Vérifie si une exception est retryable."""
    if isinstance(exc, ScraperError):
        return exc.retryable
    import httpx
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    return False


def looks_like_proxy_error(exc: BaseException) -> bool:
    """Heuristique: l'erreur brute du backend mentionne-t-elle le proxy ?"""
    if isinstance(exc, ProxyFailure):
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _PROXY_ERROR_MARKERS)
