"""
Parsing des champs produit (prix, images, note, disponibilité...).

Fonctions pures, sans I/O: testables sans navigateur.
"""
import html
import re
from typing import Any, Dict, Iterable, List, Optional, Pattern, Tuple

# Sous-chaînes "monétaires": symbole devant ou derrière le montant
PRICE_RE = re.compile(
    r"(?:US\s?)?[$€£¥₹₽]\s*\d[\d,.]*"
    r"|\d[\d,.]*\s?[€£₽]"
    r"|\b(?:USD|EUR|GBP)\s?\d[\d,.]*",
    re.IGNORECASE,
)

RATING_PATTERNS = [
    re.compile(r"(\d+(?:[.,]\d+)?)\s*out\s+of\s+5", re.IGNORECASE),
    re.compile(r"(\d+(?:[.,]\d+)?)\s*/\s*5(?![\d.])"),
    re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:sur|von|de)\s+5", re.IGNORECASE),
]

CURRENCY_SYMBOLS = [
    ("US $", "USD"),
    ("US$", "USD"),
    ("€", "EUR"),
    ("£", "GBP"),
    ("¥", "JPY"),
    ("₹", "INR"),
    ("₽", "RUB"),
    ("$", "USD"),
    ("USD", "USD"),
    ("EUR", "EUR"),
    ("GBP", "GBP"),
]

# Pixels de tracking / placeholders
_TRACKING_MARKERS = ("1x1", "transparent", "pixel", "spacer", "blank.gif", "sprite")
# Tailles de vignettes détectables: 50x50, _SS40_, _thumb, /thumbs/
_THUMBNAIL_RE = re.compile(r"(?:[_./-]\d{1,2}x\d{1,2}[_./-]|_(?:SS|SX|SY|US|UX|UY)\d{1,2}_|[_/-]thumbs?[_./-])", re.IGNORECASE)
_IMAGE_EXT_RE = re.compile(r"\.(?:jpe?g|png|webp|gif|avif)(?:$|[?#])", re.IGNORECASE)


def clean_text(text: Optional[str]) -> str:
    """Normalise les espaces et décode les entités HTML."""
    if not text:
        return ""
    text = html.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


def parse_price_value(text: str) -> Optional[float]:
    """
    Convertit une sous-chaîne monétaire en float.

    "$1,234.56" -> 1234.56 ; "12,99 €" -> 12.99 ; "1.299,00€" -> 1299.0
    """
    cleaned = re.sub(r"[^\d.,]", "", text or "")
    if not cleaned:
        return None
    if "," in cleaned and "." in cleaned:
        # Le dernier séparateur est le séparateur décimal
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        if re.search(r",\d{1,2}$", cleaned):
            cleaned = cleaned.replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif cleaned.count(".") > 1:
        cleaned = cleaned.replace(".", "")
    cleaned = cleaned.strip(".")
    try:
        return float(cleaned)
    except ValueError:
        return None


def find_prices(text: str) -> List[float]:
    """Toutes les valeurs monétaires > 0, dans l'ordre d'apparition."""
    values = []
    for match in PRICE_RE.findall(text or ""):
        value = parse_price_value(match)
        if value is not None and value > 0:
            values.append(value)
    return values


def parse_prices(text: str) -> Tuple[Optional[float], Optional[float]]:
    """
    Retourne (prix courant, prix original).

    Plusieurs montants: le plus bas est le prix courant, le plus haut le prix
    barré. Un seul montant (ou tous égaux): pas de prix original.
    """
    values = find_prices(text)
    if not values:
        return None, None
    low, high = min(values), max(values)
    return low, (high if high > low else None)


def detect_currency(text: Optional[str], default: str = "USD") -> str:
    if not text:
        return default
    for symbol, code in CURRENCY_SYMBOLS:
        if symbol in text:
            return code
    return default


def parse_rating(text: Optional[str]) -> Optional[float]:
    """Première note "<n> out of 5" (ou équivalent). Absente -> None."""
    if not text:
        return None
    for pattern in RATING_PATTERNS:
        match = pattern.search(text)
        if match:
            value = float(match.group(1).replace(",", "."))
            return min(value, 5.0)
    return None


def parse_rating_value(value: Any) -> Optional[float]:
    """Note numérique brute (ex: itemprop ratingValue)."""
    if value is None:
        return None
    try:
        rating = float(str(value).replace(",", ".").strip())
    except ValueError:
        return parse_rating(str(value))
    if rating < 0:
        return None
    return min(rating, 5.0)


def parse_int(text: Any) -> Optional[int]:
    """'1,234 ratings' -> 1234"""
    if text is None:
        return None
    digits = re.sub(r"[^\d]", "", str(text))
    return int(digits) if digits else None


def normalize_availability(text: Optional[str]) -> str:
    if not text:
        return "unknown"
    lower = text.lower()
    if "out of stock" in lower or "outofstock" in lower or "unavailable" in lower or "sold out" in lower:
        return "out_of_stock"
    if "limited" in lower or "only " in lower and "left" in lower:
        return "limited_stock"
    if "in stock" in lower or "instock" in lower or "available" in lower:
        return "in_stock"
    return "unknown"


def normalize_specifications(specs: Any) -> Dict[str, str]:
    if not isinstance(specs, dict):
        return {}
    normalized = {}
    for key, value in specs.items():
        if isinstance(value, str) and value.strip():
            normalized[clean_text(str(key)).rstrip(":")] = clean_text(value)
    return normalized


def absolutize(src: str, base_scheme: str = "https") -> str:
    src = src.strip()
    if src.startswith("//"):
        return f"{base_scheme}:{src}"
    return src


def is_tracking_image(url: str) -> bool:
    lower = url.lower()
    return url.startswith("data:") or any(marker in lower for marker in _TRACKING_MARKERS)


def is_thumbnail(url: str) -> bool:
    return bool(_THUMBNAIL_RE.search(url))


def filter_images(
    candidates: Iterable[str],
    limit: int = 8,
    rewrites: Iterable[Tuple[Pattern, str]] = (),
    require_extension: bool = False,
) -> List[str]:
    """
    Nettoie une liste d'URLs d'images:
    - rejette data:, pixels de tracking, vignettes détectables
    - applique les réécritures de taille propres à la plateforme
    - dédoublonne en gardant le premier vu, borne à `limit`
    """
    rewrites = list(rewrites)
    seen = set()
    result = []
    for raw in candidates:
        if not raw or not isinstance(raw, str):
            continue
        url = absolutize(raw)
        if not url.startswith(("http://", "https://")):
            continue
        if is_tracking_image(url):
            continue
        for pattern, replacement in rewrites:
            url = pattern.sub(replacement, url)
        if is_thumbnail(url):
            continue
        if require_extension and not _IMAGE_EXT_RE.search(url):
            continue
        if url in seen:
            continue
        seen.add(url)
        result.append(url)
        if len(result) >= limit:
            break
    return result
