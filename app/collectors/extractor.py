"""
Extracteur de fiche produit à partir du HTML (rendu ou brut).

Ordre de résolution de chaque champ:
1. table de sélecteurs de la plateforme
2. données structurées (JSON-LD Product, balises og:/product:)
3. table générique, si la table plateforme n'a pas trouvé de titre

L'extraction ne lève jamais pour un champ manquant; seule la construction
du produit (`build_product`) échoue si aucun titre n'est résolu.
"""
import json
import re
from typing import Any, Dict, Iterable, List, Optional

from bs4 import BeautifulSoup, Tag

from app.collectors.parsing import (
    clean_text,
    detect_currency,
    filter_images,
    normalize_availability,
    normalize_specifications,
    parse_int,
    parse_price_value,
    parse_prices,
    parse_rating,
    parse_rating_value,
)
from app.collectors.rules import GENERIC_RULES, ExtractionRules, get_rules
from app.core.exceptions import ExtractionEmpty
from app.core.logging import get_logger
from app.core.platforms import Platform
from app.normalizers.product import PLACEHOLDER_TITLE, RawProductFields, ScrapedProduct

logger = get_logger(__name__)

MAX_DESCRIPTION_LENGTH = 5000

_BRAND_PATTERNS = [
    re.compile(r"Visit the (.+?) Store", re.IGNORECASE),
    re.compile(r"Brand:\s*([^<\n]+)", re.IGNORECASE),
]


# =============================================================================
# HELPERS DOM
# =============================================================================

def _element_text(el: Tag) -> str:
    text = clean_text(el.get_text(" "))
    if not text:
        text = clean_text(el.get("content") or el.get("value") or "")
    return text


def _first_text(soup: BeautifulSoup, selectors: Iterable[str]) -> str:
    for selector in selectors:
        for el in soup.select(selector, limit=3):
            text = _element_text(el)
            if text:
                return text
    return ""


def _image_candidates(soup: BeautifulSoup, rules: ExtractionRules) -> List[str]:
    candidates = []
    for selector in rules.images:
        for el in soup.select(selector, limit=20):
            for attr in rules.image_attributes:
                value = el.get(attr)
                if value:
                    candidates.append(value)
                    break
    return candidates


def _specifications(soup: BeautifulSoup, selectors: Iterable[str]) -> Dict[str, str]:
    specs = {}
    for selector in selectors:
        for row in soup.select(selector, limit=50):
            cells = row.find_all(["th", "td"])
            if len(cells) < 2:
                cells = [c for c in row.find_all(recursive=False) if isinstance(c, Tag)]
            if len(cells) < 2:
                continue
            key, value = _element_text(cells[0]), _element_text(cells[1])
            if key and value:
                specs[key] = value
        if specs:
            break
    return specs


def _clean_brand(text: str) -> Optional[str]:
    if not text:
        return None
    for pattern in _BRAND_PATTERNS:
        match = pattern.search(text)
        if match:
            return clean_text(match.group(1))
    return text


def page_title(soup: BeautifulSoup) -> Optional[str]:
    """<title> sans le suffixe de site ("Produit | Boutique" -> "Produit")."""
    if soup.title and soup.title.string:
        title = clean_text(soup.title.string.split("|")[0])
        return title or None
    return None


def _meta_content(soup: BeautifulSoup, **attrs) -> str:
    el = soup.find("meta", attrs=attrs)
    return clean_text(el.get("content")) if el and el.get("content") else ""


# =============================================================================
# DONNÉES STRUCTURÉES
# =============================================================================

def _walk_jsonld(node: Any) -> Iterable[Dict[str, Any]]:
    if isinstance(node, list):
        for item in node:
            yield from _walk_jsonld(item)
    elif isinstance(node, dict):
        yield node
        if "@graph" in node:
            yield from _walk_jsonld(node["@graph"])


def _is_product(node: Dict[str, Any]) -> bool:
    node_type = node.get("@type")
    if isinstance(node_type, list):
        return "Product" in node_type
    return node_type == "Product"


def find_jsonld_product(soup: BeautifulSoup) -> Optional[Dict[str, Any]]:
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(script.string or "")
        except json.JSONDecodeError:
            continue
        for node in _walk_jsonld(data):
            if _is_product(node):
                return node
    return None


def _json_text(value: Any) -> str:
    """Texte d'un champ JSON-LD; tout ce qui n'est pas une chaîne est ignoré."""
    return clean_text(value) if isinstance(value, str) else ""


def _json_image(item: Any) -> str:
    if isinstance(item, dict):
        item = item.get("url")
    return item if isinstance(item, str) else ""


def _structured_fields(soup: BeautifulSoup) -> RawProductFields:
    fields = RawProductFields()
    product = find_jsonld_product(soup)

    if product:
        fields.title = _json_text(product.get("name")) or None
        fields.description = _json_text(product.get("description")) or None

        brand = product.get("brand")
        if isinstance(brand, dict):
            brand = brand.get("name")
        fields.brand = _json_text(brand) or None

        image = product.get("image")
        if isinstance(image, (str, dict)):
            image = [image]
        if isinstance(image, list):
            fields.images = [src for src in map(_json_image, image) if src]

        offers = product.get("offers") or {}
        if isinstance(offers, list):
            offers = offers[0] if offers else {}
        if isinstance(offers, dict):
            price = offers.get("price") or offers.get("lowPrice")
            fields.price = parse_price_value(str(price)) if price is not None else None
            fields.currency = _json_text(offers.get("priceCurrency")) or None
            if offers.get("availability"):
                fields.availability = normalize_availability(str(offers["availability"]))

        rating = product.get("aggregateRating") or {}
        if isinstance(rating, dict):
            fields.rating = parse_rating_value(rating.get("ratingValue"))
            fields.review_count = parse_int(rating.get("reviewCount") or rating.get("ratingCount"))

        category = product.get("category")
        fields.category = _json_text(category) or None

    # Balises Open Graph / product:
    if not fields.title:
        fields.title = _meta_content(soup, property="og:title") or None
    if not fields.description:
        fields.description = _meta_content(soup, property="og:description") or None
    if not fields.images:
        og_image = _meta_content(soup, property="og:image")
        fields.images = [og_image] if og_image else []
    if fields.price is None:
        amount = _meta_content(soup, property="product:price:amount")
        fields.price = parse_price_value(amount) if amount else None
    if not fields.currency:
        fields.currency = _meta_content(soup, property="product:price:currency") or None

    return fields


# =============================================================================
# APPLICATION D'UNE TABLE
# =============================================================================

def _parse_price_fields(price_text: str, original_text: str):
    price, original = parse_prices(f"{price_text} {original_text}")
    if price is None and price_text:
        value = parse_price_value(price_text)
        price = value if value and value > 0 else None
    if original is None and original_text and price:
        value = parse_price_value(original_text)
        original = value if value and value > price else None
    return price, original


def apply_rules(rules: ExtractionRules, soup: BeautifulSoup, content: str) -> RawProductFields:
    """Applique une table de sélecteurs au document."""
    price_text = _first_text(soup, rules.price)
    original_text = _first_text(soup, rules.original_price)
    price, original_price = _parse_price_fields(price_text, original_text)

    candidates = _image_candidates(soup, rules)
    for pattern in rules.image_patterns:
        candidates.extend(pattern.findall(content))

    rating_text = _first_text(soup, rules.rating)
    availability_text = _first_text(soup, rules.availability)

    return RawProductFields(
        title=_first_text(soup, rules.title) or None,
        description=_first_text(soup, rules.description)[:MAX_DESCRIPTION_LENGTH] or None,
        price=price,
        original_price=original_price,
        currency=detect_currency(price_text or original_text, rules.default_currency) if price else None,
        availability=normalize_availability(availability_text) if availability_text else None,
        images=filter_images(candidates, rules.max_images, rules.image_rewrites),
        brand=_clean_brand(_first_text(soup, rules.brand)),
        category=_first_text(soup, rules.category) or None,
        rating=parse_rating_value(rating_text) if rating_text else None,
        review_count=parse_int(_first_text(soup, rules.review_count)),
        specifications=_specifications(soup, rules.specifications),
    )


def _merge(primary: RawProductFields, *fallbacks: RawProductFields) -> RawProductFields:
    data = primary.model_dump()
    for fallback in fallbacks:
        for key, value in fallback.model_dump().items():
            if data.get(key) in (None, "", [], {}) and value not in (None, "", [], {}):
                data[key] = value
    return RawProductFields(**data)


def extract(content: str, platform: Platform, url: str = "") -> RawProductFields:
    """
    Extrait les champs candidats du document.

    Ne lève jamais: un champ introuvable reste à None (ou vide).
    """
    content = content or ""
    soup = BeautifulSoup(content, "html.parser")
    rules = get_rules(platform)

    fields = apply_rules(rules, soup, content)
    fallbacks = [_structured_fields(soup)]
    if not fields.title and rules is not GENERIC_RULES:
        logger.debug("No title with platform rules, applying generic rules", url=url, platform=platform.value)
        fallbacks.append(apply_rules(GENERIC_RULES, soup, content))

    merged = _merge(fields, *fallbacks)

    if not merged.description:
        merged.description = _meta_content(soup, name="description") or None
    if merged.rating is None:
        merged.rating = parse_rating(soup.get_text(" "))
    if platform == Platform.AMAZON and not merged.brand:
        merged.brand = _clean_brand_from_html(content)

    merged.images = filter_images(merged.images, rules.max_images, rules.image_rewrites)
    merged.page_title = page_title(soup)
    return merged


def _clean_brand_from_html(content: str) -> Optional[str]:
    match = _BRAND_PATTERNS[1].search(content)
    return clean_text(match.group(1)) if match else None


def build_product(fields: RawProductFields, url: str, platform: Platform) -> ScrapedProduct:
    """
    Construit le produit normalisé.

    Sans titre extrait, le titre de page (ou le placeholder) n'est retenu que
    si le document porte un signal produit (prix ou images); sinon la page est
    considérée vide (challenge, page d'erreur...).

    Raises:
        ExtractionEmpty
    """
    title = fields.title
    if not title and (fields.price is not None or fields.images):
        title = fields.page_title or PLACEHOLDER_TITLE
    if not title:
        raise ExtractionEmpty("No product title found", url=url)

    return ScrapedProduct(
        title=title,
        description=fields.description or "",
        price=fields.price,
        original_price=fields.original_price,
        currency=(fields.currency or "USD").upper(),
        availability=fields.availability or "unknown",
        images=fields.images,
        brand=fields.brand,
        category=fields.category,
        rating=fields.rating,
        review_count=fields.review_count,
        specifications=normalize_specifications(fields.specifications),
        variants=fields.variants,
        seller_info=fields.seller_info,
        source_url=url,
        source_platform=platform.value,
    )


def extract_product(content: str, platform: Platform, url: str) -> ScrapedProduct:
    """extract + build_product."""
    return build_product(extract(content, platform, url), url, platform)
