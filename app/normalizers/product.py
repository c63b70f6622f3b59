from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Any, Dict, List

from pydantic import BaseModel, Field, field_validator, model_validator

MAX_IMAGES = 10
PLACEHOLDER_TITLE = "Untitled Product"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def dedupe_images(images: List[str], limit: int = MAX_IMAGES) -> List[str]:
    """Dédoublonne en gardant l'ordre d'apparition, sans data: URI."""
    seen = set()
    result = []
    for img in images:
        if not img or not isinstance(img, str):
            continue
        if img.startswith("data:") or img in seen:
            continue
        seen.add(img)
        result.append(img)
        if len(result) >= limit:
            break
    return result


class RawProductFields(BaseModel):
    """Champs candidats avant normalisation (tous optionnels)."""
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    original_price: Optional[float] = None
    currency: Optional[str] = None
    availability: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    brand: Optional[str] = None
    category: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    specifications: Dict[str, str] = Field(default_factory=dict)
    variants: List[Dict[str, Any]] = Field(default_factory=list)
    seller_info: Optional[Dict[str, Any]] = None
    page_title: Optional[str] = None


class ScrapedProduct(BaseModel):
    title: str
    description: str = ""

    # Prix et remise
    price: Optional[float] = None
    original_price: Optional[float] = None
    discount_percentage: Optional[float] = None
    currency: str = "USD"

    availability: str = "unknown"
    images: List[str] = Field(default_factory=list)

    brand: Optional[str] = None
    category: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    specifications: Dict[str, str] = Field(default_factory=dict)
    variants: List[Dict[str, Any]] = Field(default_factory=list)
    seller_info: Optional[Dict[str, Any]] = None

    source_url: str
    source_platform: str
    scraped_at: datetime = Field(default_factory=utcnow)

    # Enrichissement IA (optionnel)
    seo_title: Optional[str] = None
    seo_meta_description: Optional[str] = None
    seo_keywords: Optional[List[str]] = None
    suggested_category: Optional[str] = None
    product_features: Optional[List[str]] = None

    @field_validator("title")
    @classmethod
    def _title_not_empty(cls, v: str) -> str:
        v = (v or "").strip()
        return v or PLACEHOLDER_TITLE

    @field_validator("price", "original_price")
    @classmethod
    def _price_not_negative(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError("price must be >= 0")
        return v

    @field_validator("images")
    @classmethod
    def _clean_images(cls, v: List[str]) -> List[str]:
        return dedupe_images(v)

    @model_validator(mode="after")
    def _compute_discount(self) -> "ScrapedProduct":
        if (
            self.discount_percentage is None
            and self.price
            and self.original_price
            and self.original_price > self.price
        ):
            self.discount_percentage = round((self.original_price - self.price) / self.original_price * 100)
        return self


class ScrapingStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class ScrapingResult(BaseModel):
    """Résultat terminal d'une acquisition (immuable)."""
    model_config = {"frozen": True}

    url: str
    status: ScrapingStatus
    product: Optional[ScrapedProduct] = None
    error: Optional[str] = None
    scraped_at: datetime = Field(default_factory=utcnow)
    processing_time: float = 0.0  # ms
    method: Optional[str] = None
    attempts: int = 0

    @model_validator(mode="after")
    def _check_status(self) -> "ScrapingResult":
        if self.status == ScrapingStatus.SUCCESS and self.product is None:
            raise ValueError("successful result requires a product")
        if self.status == ScrapingStatus.FAILED and not self.error:
            raise ValueError("failed result requires an error")
        return self

    @classmethod
    def success(cls, url: str, product: ScrapedProduct, processing_time: float, method: str, attempts: int = 1):
        return cls(
            url=url,
            status=ScrapingStatus.SUCCESS,
            product=product,
            processing_time=round(processing_time, 2),
            method=method,
            attempts=attempts,
        )

    @classmethod
    def failure(cls, url: str, error: str, processing_time: float, attempts: int = 0):
        return cls(
            url=url,
            status=ScrapingStatus.FAILED,
            error=error or "Unknown error",
            processing_time=round(processing_time, 2),
            attempts=attempts,
        )
