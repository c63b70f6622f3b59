"""
Providers de données structurées (APIs produit tierces).

Chaque provider est indexé par plateforme et consulté par identifiant
produit (ASIN, item id, handle...). Contrat:
- retourne un ScrapedProduct si l'API connaît le produit
- retourne None si non configuré / identifiant absent / produit inconnu
- lève ProviderAPIError sur réponse non-2xx ou JSON invalide

Les erreurs sont absorbées par l'orchestrateur, qui passe au navigateur.
"""
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

import httpx
from loguru import logger

from app.collectors.parsing import clean_text, filter_images, parse_price_value, parse_rating_value
from app.core.config import RAPIDAPI_KEY, WALMART_API_KEY
from app.core.exceptions import ProviderAPIError
from app.core.platforms import Platform, extract_identifier
from app.normalizers.product import MAX_IMAGES, ScrapedProduct
from app.utils.retry import with_retry_async

DEFAULT_TIMEOUT = 15.0


def _normalize_images(images: Any) -> List[str]:
    if not isinstance(images, list):
        return []
    urls = []
    for img in images:
        if isinstance(img, str):
            urls.append(img)
        elif isinstance(img, dict):
            urls.append(img.get("url") or img.get("src") or img.get("large") or img.get("largeImage") or img.get("medium"))
    return filter_images([u for u in urls if u], MAX_IMAGES)


def _price(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    parsed = parse_price_value(str(value))
    return parsed if parsed and parsed > 0 else None


class StructuredDataProvider(ABC):
    name: str = "provider"
    platform: Platform = Platform.GENERIC

    def __init__(self, client: httpx.AsyncClient, retries: int = 2):
        self.client = client
        self.retries = retries

    def is_configured(self) -> bool:
        return True

    async def _request_json(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        async def _call():
            try:
                resp = await self.client.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                raise ProviderAPIError(f"Timeout: {e}", provider=self.name) from e
            except httpx.HTTPError as e:
                raise ProviderAPIError(f"Transport error: {e}", provider=self.name) from e

            if resp.status_code == 404:
                return {}
            if not resp.is_success:
                raise ProviderAPIError(
                    f"{self.name} responded {resp.status_code}",
                    status_code=resp.status_code,
                    provider=self.name,
                )
            try:
                data = resp.json()
            except ValueError as e:
                raise ProviderAPIError(f"Invalid JSON from {self.name}", status_code=resp.status_code, provider=self.name) from e
            if not isinstance(data, dict):
                raise ProviderAPIError(f"Unexpected payload from {self.name}", status_code=resp.status_code, provider=self.name)
            return data

        return await with_retry_async(_call, retries=self.retries, source=self.name)

    @abstractmethod
    async def fetch_product(self, url: str, identifier: str) -> Optional[ScrapedProduct]:
        ...


# =============================================================================
# RAPIDAPI
# =============================================================================

class RapidAPIProvider(StructuredDataProvider):
    host: str = ""

    def __init__(self, client: httpx.AsyncClient, api_key: str = RAPIDAPI_KEY, retries: int = 2):
        super().__init__(client, retries)
        self.api_key = api_key

    def is_configured(self) -> bool:
        return bool(self.api_key)

    @property
    def headers(self) -> Dict[str, str]:
        return {"X-RapidAPI-Key": self.api_key, "X-RapidAPI-Host": self.host}


class AmazonRapidAPIProvider(RapidAPIProvider):
    name = "rapidapi-amazon"
    platform = Platform.AMAZON
    host = "amazon-product-details1.p.rapidapi.com"

    async def fetch_product(self, url: str, identifier: str) -> Optional[ScrapedProduct]:
        data = await self._request_json(
            "POST",
            f"https://{self.host}/product/details",
            headers=self.headers,
            json={"asin": identifier, "country": "US"},
        )
        return map_amazon_payload(data, url)


class AliExpressRapidAPIProvider(RapidAPIProvider):
    name = "rapidapi-aliexpress"
    platform = Platform.ALIEXPRESS
    host = "aliexpress-product-details.p.rapidapi.com"

    async def fetch_product(self, url: str, identifier: str) -> Optional[ScrapedProduct]:
        data = await self._request_json(
            "GET",
            f"https://{self.host}/product",
            headers=self.headers,
            params={"product_id": identifier},
        )
        return map_aliexpress_payload(data, url)


class EbayRapidAPIProvider(RapidAPIProvider):
    name = "rapidapi-ebay"
    platform = Platform.EBAY
    host = "ebay-products-search.p.rapidapi.com"

    async def fetch_product(self, url: str, identifier: str) -> Optional[ScrapedProduct]:
        data = await self._request_json("GET", f"https://{self.host}/item/{identifier}", headers=self.headers)
        return map_ebay_payload(data, url)


# =============================================================================
# APIS MARCHANDS
# =============================================================================

class WalmartProvider(StructuredDataProvider):
    name = "walmart-open-api"
    platform = Platform.WALMART
    base_url = "https://api.walmart.com/v1/items"

    def __init__(self, client: httpx.AsyncClient, api_key: str = WALMART_API_KEY, retries: int = 2):
        super().__init__(client, retries)
        self.api_key = api_key

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def fetch_product(self, url: str, identifier: str) -> Optional[ScrapedProduct]:
        data = await self._request_json(
            "GET",
            f"{self.base_url}/{identifier}",
            headers={
                "WM_SVC.NAME": "Walmart Open API",
                "WM_CONSUMER.ID": self.api_key,
                "Accept": "application/json",
            },
        )
        return map_walmart_payload(data, url, identifier)


class ShopifyProvider(StructuredDataProvider):
    """Endpoint public `/products/<handle>.json` des boutiques Shopify (sans clé)."""
    name = "shopify-storefront"
    platform = Platform.SHOPIFY

    async def fetch_product(self, url: str, identifier: str) -> Optional[ScrapedProduct]:
        parsed = urlparse(url)
        data = await self._request_json(
            "GET",
            f"{parsed.scheme}://{parsed.netloc}/products/{identifier}.json",
            headers={"Accept": "application/json"},
        )
        return map_shopify_payload(data, url)


# =============================================================================
# MAPPING DES RÉPONSES
# =============================================================================

def map_amazon_payload(data: Dict[str, Any], url: str) -> Optional[ScrapedProduct]:
    if data.get("status") != "success" or not data.get("product"):
        return None
    product = data["product"]
    price = product.get("price") or {}
    bullets = product.get("feature_bullets") or []
    return ScrapedProduct(
        title=clean_text(product.get("title")) or "Amazon Product",
        description=clean_text(product.get("description")) or clean_text(" ".join(bullets)),
        price=_price(price.get("current") or price.get("value")),
        original_price=_price(price.get("original") or price.get("before")),
        currency="USD",
        images=_normalize_images(product.get("images")),
        brand=product.get("brand"),
        rating=parse_rating_value(product.get("rating")),
        review_count=product.get("reviews_count"),
        source_url=url,
        source_platform=Platform.AMAZON.value,
    )


def map_aliexpress_payload(data: Dict[str, Any], url: str) -> Optional[ScrapedProduct]:
    if not data.get("success") or not data.get("data"):
        return None
    product = data["data"]
    price = product.get("price") or {}
    rating = product.get("rating") or {}
    return ScrapedProduct(
        title=clean_text(product.get("title")) or "AliExpress Product",
        description=clean_text(product.get("description")),
        price=_price(price.get("current")),
        original_price=_price(price.get("original")),
        currency="USD",
        images=_normalize_images(product.get("images")),
        brand=(product.get("store") or {}).get("name"),
        rating=parse_rating_value(rating.get("average")),
        review_count=rating.get("count"),
        source_url=url,
        source_platform=Platform.ALIEXPRESS.value,
    )


def map_ebay_payload(data: Dict[str, Any], url: str) -> Optional[ScrapedProduct]:
    if not data.get("success") or not data.get("item"):
        return None
    item = data["item"]
    price = item.get("price") or {}
    return ScrapedProduct(
        title=clean_text(item.get("title")) or "eBay Item",
        description=clean_text(item.get("description")),
        price=_price(price.get("value")),
        currency=price.get("currency") or "USD",
        images=_normalize_images(item.get("images")),
        source_url=url,
        source_platform=Platform.EBAY.value,
    )


def map_walmart_payload(data: Dict[str, Any], url: str, identifier: str) -> Optional[ScrapedProduct]:
    if not data.get("name"):
        return None
    sale, msrp = _price(data.get("salePrice")), _price(data.get("msrp"))
    images = [img.get("largeImage") for img in data.get("imageEntities") or [] if isinstance(img, dict)]
    return ScrapedProduct(
        title=clean_text(data["name"]),
        description=clean_text(data.get("longDescription") or data.get("shortDescription")),
        price=sale or msrp,
        original_price=msrp if sale and msrp and msrp > sale else None,
        images=_normalize_images(images),
        brand=data.get("brandName"),
        rating=parse_rating_value(data.get("customerRating")),
        review_count=data.get("numReviews"),
        source_url=data.get("productUrl") or url or f"https://walmart.com/ip/{identifier}",
        source_platform=Platform.WALMART.value,
    )


def map_shopify_payload(data: Dict[str, Any], url: str) -> Optional[ScrapedProduct]:
    product = data.get("product")
    if not product or not product.get("title"):
        return None
    variants = product.get("variants") or []
    first = variants[0] if variants else {}
    price = _price(first.get("price"))
    compare_at = _price(first.get("compare_at_price"))
    return ScrapedProduct(
        title=clean_text(product["title"]),
        description=clean_text(_strip_tags(product.get("body_html") or "")),
        price=price,
        original_price=compare_at if price and compare_at and compare_at > price else None,
        images=_normalize_images([img.get("src") for img in product.get("images") or [] if isinstance(img, dict)]),
        brand=product.get("vendor"),
        category=product.get("product_type") or None,
        variants=[
            {"id": v.get("id"), "title": v.get("title"), "price": _price(v.get("price")), "available": v.get("available")}
            for v in variants
        ],
        source_url=url,
        source_platform=Platform.SHOPIFY.value,
    )


def _strip_tags(html_text: str) -> str:
    return re.sub(r"<[^>]*>", " ", html_text)


# =============================================================================
# REGISTRE
# =============================================================================

class ProviderRegistry:
    """Providers indexés par plateforme; possède le client HTTP partagé."""

    def __init__(self, providers: Iterable[StructuredDataProvider] = (), client: Optional[httpx.AsyncClient] = None):
        self._providers: Dict[Platform, StructuredDataProvider] = {}
        self._client = client
        for provider in providers:
            self.register(provider)

    def register(self, provider: StructuredDataProvider) -> None:
        self._providers[provider.platform] = provider

    def get(self, platform: Platform) -> Optional[StructuredDataProvider]:
        provider = self._providers.get(platform)
        if provider is None or not provider.is_configured():
            return None
        return provider

    async def fetch(self, url: str, platform: Platform) -> Optional[ScrapedProduct]:
        """
        Consulte le provider de la plateforme.

        Returns:
            None si aucun provider utilisable ou identifiant introuvable
        Raises:
            ProviderAPIError
        """
        provider = self.get(platform)
        if provider is None:
            return None
        identifier = extract_identifier(url, platform)
        if not identifier:
            logger.debug(f"No product identifier in URL for {provider.name}: {url[:80]}")
            return None

        product = await provider.fetch_product(url, identifier)
        if product:
            logger.info(f"Product fetched via {provider.name}: {product.title[:50]}")
        return product

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def build_default_registry(
    client: Optional[httpx.AsyncClient] = None,
    rapidapi_key: str = RAPIDAPI_KEY,
    walmart_key: str = WALMART_API_KEY,
    timeout: float = DEFAULT_TIMEOUT,
) -> ProviderRegistry:
    client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
    return ProviderRegistry(
        [
            AmazonRapidAPIProvider(client, rapidapi_key),
            AliExpressRapidAPIProvider(client, rapidapi_key),
            EbayRapidAPIProvider(client, rapidapi_key),
            WalmartProvider(client, walmart_key),
            ShopifyProvider(client),
        ],
        client=client,
    )
