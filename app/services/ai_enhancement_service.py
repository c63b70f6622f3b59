"""
AI Enhancement Service - Enrichissement optionnel d'un produit extrait.

- Description réécrite (100-200 mots)
- Contenu SEO (titre, meta description, mots-clés)
- Catégorie suggérée et liste de caractéristiques

Ne fait JAMAIS échouer une acquisition: en cas d'erreur ou de timeout,
le produit d'origine est retourné tel quel.
"""
import asyncio
import json
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

import anthropic
from loguru import logger
from pydantic import BaseModel

from app.core.config import ANTHROPIC_API_KEY, ANTHROPIC_MODEL
from app.core.exceptions import EnhancementFailure
from app.normalizers.product import ScrapedProduct

DEFAULT_TIMEOUT_MS = 20000

CATEGORIES = [
    "Electronics & Technology",
    "Fashion & Apparel",
    "Home & Garden",
    "Sports & Outdoors",
    "Health & Beauty",
    "Automotive",
    "Books & Media",
    "Toys & Games",
    "Jewelry & Accessories",
    "Office & Business",
    "Pet Supplies",
    "Baby & Kids",
    "Food & Beverages",
    "Art & Crafts",
]


class EnhancementOptions(BaseModel):
    enhance_description: bool = True
    generate_seo: bool = True
    categorize: bool = True
    extract_features: bool = True

    @property
    def wants_structured(self) -> bool:
        return self.generate_seo or self.categorize or self.extract_features


class TextGenerator(Protocol):
    async def generate(self, prompt: str, max_tokens: int = 500) -> str:
        ...


class AnthropicTextGenerator:
    """Générateur de texte basé sur l'API Messages d'Anthropic."""

    def __init__(
        self,
        api_key: str = ANTHROPIC_API_KEY,
        model: str = ANTHROPIC_MODEL,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        self.model = model
        self.client = client or anthropic.AsyncAnthropic(api_key=api_key)

    async def generate(self, prompt: str, max_tokens: int = 500) -> str:
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            raise EnhancementFailure(f"Text generation failed: {e}") from e
        if not response.content:
            raise EnhancementFailure("Empty response from text generator")
        return response.content[0].text.strip()


# =============================================================================
# PROMPTS
# =============================================================================

def _product_context(product: ScrapedProduct) -> str:
    price = f"{product.currency} {product.price}" if product.price is not None else "Not specified"
    return (
        f"Title: {product.title}\n"
        f"Current Description: {product.description or 'No description available'}\n"
        f"Price: {price}\n"
        f"Brand: {product.brand or 'Not specified'}\n"
        f"Platform: {product.source_platform}"
    )


def build_description_prompt(product: ScrapedProduct) -> str:
    return f"""Improve this e-commerce product description.

{_product_context(product)}

Requirements:
1. 100-200 words, professional and informative
2. Highlight key features and benefits
3. Include relevant keywords naturally
4. No invented specifications

Return only the description text."""


def build_structured_prompt(product: ScrapedProduct, options: EnhancementOptions) -> str:
    keys = []
    if options.generate_seo:
        keys.append('"seo_title": SEO title, 50-60 characters')
        keys.append('"seo_meta_description": meta description, 150-160 characters')
        keys.append('"seo_keywords": 5-10 keywords')
    if options.categorize:
        keys.append(f'"category": one of {", ".join(CATEGORIES)}')
    if options.extract_features:
        keys.append('"features": 5-8 specific product features')
    fields = "\n".join(f"- {k}" for k in keys)
    return f"""Analyze this product for an online store.

{_product_context(product)}

Return ONLY a minified JSON object with these keys:
{fields}"""


def parse_json_response(text: str) -> Dict[str, Any]:
    """Parse la réponse JSON (blocs ```json tolérés)."""
    text = (text or "").strip()
    if text.startswith("```"):
        text = re.sub(r"^```\w*\n?", "", text)
        text = re.sub(r"\n?```$", "", text)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise EnhancementFailure(f"Invalid JSON from text generator: {e}") from e
    if not isinstance(data, dict):
        raise EnhancementFailure("Text generator did not return a JSON object")
    return data


def _str_list(value: Any) -> Optional[List[str]]:
    if not isinstance(value, list):
        return None
    items = [str(v).strip() for v in value if str(v).strip()]
    return items or None


# =============================================================================
# ENHANCER
# =============================================================================

class ProductEnhancer:
    def __init__(self, generator: TextGenerator, timeout_ms: int = DEFAULT_TIMEOUT_MS):
        self.generator = generator
        self.timeout_ms = timeout_ms

    async def _updates(self, product: ScrapedProduct, options: EnhancementOptions) -> Dict[str, Any]:
        updates: Dict[str, Any] = {}

        if options.enhance_description:
            description = await self.generator.generate(build_description_prompt(product), max_tokens=600)
            if description:
                updates["description"] = description

        if options.wants_structured:
            raw = await self.generator.generate(build_structured_prompt(product, options), max_tokens=500)
            data = parse_json_response(raw)
            if options.generate_seo:
                updates["seo_title"] = data.get("seo_title") or product.title
                updates["seo_meta_description"] = data.get("seo_meta_description")
                updates["seo_keywords"] = _str_list(data.get("seo_keywords"))
            if options.categorize and data.get("category"):
                updates["suggested_category"] = str(data["category"]).strip()
            if options.extract_features:
                updates["product_features"] = _str_list(data.get("features"))

        return updates

    async def enhance(
        self,
        product: ScrapedProduct,
        options: Optional[EnhancementOptions] = None,
        timeout_ms: Optional[int] = None,
    ) -> ScrapedProduct:
        """Retourne le produit enrichi, ou l'original en cas d'échec."""
        options = options or EnhancementOptions()
        timeout_ms = timeout_ms or self.timeout_ms
        try:
            updates = await asyncio.wait_for(self._updates(product, options), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.warning(f"AI enhancement timed out after {timeout_ms}ms, keeping original: {product.title[:50]}")
            return product
        except Exception as e:
            logger.warning(f"AI enhancement failed, keeping original: {e}")
            return product

        logger.info(f"AI enhanced product: {product.title[:50]} ({', '.join(sorted(updates)) or 'no changes'})")
        return product.model_copy(update=updates)


def build_default_enhancer(timeout_ms: int = DEFAULT_TIMEOUT_MS) -> Optional[ProductEnhancer]:
    """Enhancer Anthropic, ou None sans ANTHROPIC_API_KEY."""
    if not ANTHROPIC_API_KEY:
        logger.debug("No ANTHROPIC_API_KEY, AI enhancement disabled")
        return None
    return ProductEnhancer(AnthropicTextGenerator(), timeout_ms=timeout_ms)


# =============================================================================
# FILE D'ENRICHISSEMENT
# =============================================================================

EnhancementSink = Callable[[ScrapedProduct], Awaitable[None]]


class EnhancementQueue:
    """
    Pool de workers qui enrichit des produits en arrière-plan.

    La file est bornée: `submit` attend quand elle est pleine.
    Chaque produit enrichi (ou l'original si l'enrichissement échoue) est
    remis au sink.
    """

    def __init__(
        self,
        enhancer: ProductEnhancer,
        sink: EnhancementSink,
        workers: int = 2,
        maxsize: int = 100,
    ):
        self.enhancer = enhancer
        self.sink = sink
        self.workers = workers
        self._queue: "asyncio.Queue[Tuple[ScrapedProduct, Optional[EnhancementOptions]]]" = asyncio.Queue(maxsize=maxsize)
        self._tasks: List[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [asyncio.create_task(self._worker(i)) for i in range(self.workers)]
        logger.info(f"Enhancement queue started ({self.workers} workers)")

    async def submit(self, product: ScrapedProduct, options: Optional[EnhancementOptions] = None) -> None:
        if not self._tasks:
            raise RuntimeError("EnhancementQueue is not started")
        await self._queue.put((product, options))

    async def join(self) -> None:
        """Attend que tous les produits soumis soient traités."""
        await self._queue.join()

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("Enhancement queue stopped")

    async def _worker(self, worker_id: int) -> None:
        while True:
            product, options = await self._queue.get()
            try:
                enhanced = await self.enhancer.enhance(product, options)
                await self.sink(enhanced)
            except Exception as e:
                logger.error(f"Enhancement worker {worker_id} sink error: {e}")
            finally:
                self._queue.task_done()
