"""
Règles d'extraction par plateforme.

Une plateforme = une table de sélecteurs CSS + motifs d'images CDN.
Ajouter une plateforme = ajouter une entrée dans EXTRACTION_RULES,
le moteur d'extraction ne change pas.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, List, Pattern, Tuple

from app.core.platforms import Platform


@dataclass(frozen=True)
class ExtractionRules:
    name: str
    title: List[str] = field(default_factory=list)
    price: List[str] = field(default_factory=list)
    original_price: List[str] = field(default_factory=list)
    description: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)
    rating: List[str] = field(default_factory=list)
    review_count: List[str] = field(default_factory=list)
    availability: List[str] = field(default_factory=list)
    brand: List[str] = field(default_factory=list)
    category: List[str] = field(default_factory=list)
    specifications: List[str] = field(default_factory=list)  # lignes label/valeur
    # URLs d'images recherchées directement dans le HTML brut
    image_patterns: List[Pattern] = field(default_factory=list)
    image_rewrites: List[Tuple[Pattern, str]] = field(default_factory=list)
    image_attributes: Tuple[str, ...] = ("data-old-hires", "data-src", "src")
    max_images: int = 8
    default_currency: str = "USD"


# Amazon: les variantes de taille (._SS40_., ._AC_US100_.) sont ramenées à la haute définition
_AMAZON_SIZE_RE = re.compile(r"\._[A-Z0-9_,]+_\.")

AMAZON_RULES = ExtractionRules(
    name="amazon",
    title=["#productTitle", ".product-title"],
    price=[
        "#corePrice_feature_div .a-price .a-offscreen",
        ".a-price-current .a-offscreen",
        ".a-price .a-offscreen",
        "#priceblock_ourprice",
        "#priceblock_dealprice",
    ],
    original_price=[".a-price.a-text-price .a-offscreen", "#priceblock_listprice"],
    description=["#feature-bullets ul", "#productDescription"],
    images=["#landingImage", "#imgTagWrapperId img", ".image.item img"],
    rating=[".a-icon-alt", ".cr-original-review-stars", "#acrPopover"],
    review_count=["#acrCustomerReviewText"],
    availability=["#availability span", "#availability"],
    brand=["#bylineInfo", "a#brand"],
    category=["#wayfinding-breadcrumbs_feature_div li:last-child a"],
    specifications=[
        "#productDetails_techSpec_section_1 tr",
        "#productDetails_detailBullets_sections1 tr",
    ],
    image_patterns=[
        re.compile(r"https://[^\"'\s]*(?:images-amazon|media-amazon)[^\"'\s]*\.(?:jpg|jpeg|png|webp)", re.IGNORECASE),
    ],
    image_rewrites=[(_AMAZON_SIZE_RE, "._AC_SL1500_.")],
    max_images=8,
)

EBAY_RULES = ExtractionRules(
    name="ebay",
    title=[".x-item-title__mainTitle", "h1.x-item-title-label", "#itemTitle"],
    price=[".x-price-primary", "#prcIsum", ".notranslate"],
    original_price=[".x-additional-info .ux-textspans--STRIKETHROUGH", "#orgPrc"],
    description=["#desc_wrapper_ctr", ".viSNotesCnt"],
    images=[".ux-image-carousel-item img", "#icImg", ".vi-image-panel img"],
    availability=["#qtySubTxt", ".d-quantity__availability"],
    brand=["[itemprop=brand]"],
    specifications=[".ux-layout-section-evo__col"],
    image_patterns=[re.compile(r"https://i\.ebayimg\.com/[^\"'\s]+\.(?:jpg|jpeg|png|webp)", re.IGNORECASE)],
    image_rewrites=[(re.compile(r"/s-l\d+\."), "/s-l1600.")],
    max_images=8,
)

ALIBABA_RULES = ExtractionRules(
    name="alibaba",
    title=[".ma-title h1", ".product-title", "h1"],
    price=[".ma-ref-price .price-value", ".price-item .price", ".price"],
    description=[".ma-product-params", ".product-description", ".do-entry-list"],
    images=[".image-viewer img", ".main-image img", ".detail-main-img img"],
    brand=[".company-name a"],
    specifications=[".do-entry-list .do-entry-item"],
    image_patterns=[re.compile(r"https://[^\"'\s]*alicdn[^\"'\s]*\.(?:jpg|jpeg|png|webp)", re.IGNORECASE)],
    max_images=10,
)

ALIEXPRESS_RULES = ExtractionRules(
    name="aliexpress",
    title=[".product-title-text", "[data-pl=product-title]", "h1"],
    price=[".product-price-current", ".price--current", ".uniform-banner-box-price"],
    original_price=[".product-price-original", ".price--original"],
    description=[".product-description", "#product-description", ".description"],
    images=[".image-view img", ".images-view-item img", ".main-image img"],
    rating=[".overview-rating-average", ".reviewer--rating"],
    review_count=[".product-reviewer-reviews", ".reviewer--reviews"],
    brand=[".store-header .store-name", ".shop-name a"],
    image_patterns=[re.compile(r"https://[^\"'\s]*alicdn[^\"'\s]*\.(?:jpg|jpeg|png|webp)", re.IGNORECASE)],
    image_rewrites=[(re.compile(r"_\d+x\d+\.(jpg|jpeg|png|webp)"), "")],
    max_images=8,
)

WALMART_RULES = ExtractionRules(
    name="walmart",
    title=["[data-testid=product-title]", "h1[itemprop=name]", "h1"],
    price=["[itemprop=price]", "[data-testid=price-wrap] [aria-hidden=true]", ".price-characteristic"],
    original_price=["[data-testid=strike-through-price]", ".was-price"],
    description=["[data-testid=product-description-content]", ".about-desc"],
    images=["[data-testid=hero-image-container] img", ".hero-image img", ".product-image img"],
    rating=["[itemprop=ratingValue]", ".rating-number"],
    review_count=["[itemprop=reviewCount]", "[data-testid=item-review-section-link]"],
    availability=["[data-testid=fulfillment-badge]", ".prod-ProductOffer-oosMsg"],
    brand=["[data-testid=product-brand]", "a[link-identifier=brandName]"],
    image_patterns=[re.compile(r"https://i5\.walmartimages\.com/[^\"'\s]+\.(?:jpg|jpeg|png|webp)", re.IGNORECASE)],
    max_images=8,
)

SHOPIFY_RULES = ExtractionRules(
    name="shopify",
    title=[".product__title h1", ".product-title", "h1.title", "h1"],
    price=[".price-item--sale", ".price__sale .price-item", ".product-price", ".price"],
    original_price=[".price-item--regular", ".compare-at-price", "s.price-item"],
    description=[".product__description", ".product-description", ".description"],
    images=[".product__media img", ".product-image img", ".featured-image img"],
    availability=[".product-form__inventory", ".product__inventory"],
    brand=[".product__vendor", ".product-vendor"],
    image_patterns=[re.compile(r"https://cdn\.shopify\.com/[^\"'\s]+\.(?:jpg|jpeg|png|webp)", re.IGNORECASE)],
    image_rewrites=[(re.compile(r"_(?:\d+x\d*|\d*x\d+|small|medium|thumb)(?=\.(?:jpg|jpeg|png|webp))"), "")],
    max_images=8,
)

GENERIC_RULES = ExtractionRules(
    name="generic",
    title=["[itemprop=name]", ".product-title", "h1", ".title"],
    price=["[itemprop=price]", ".price", ".amount", ".cost"],
    original_price=[".was-price", ".compare-price", "del", "s"],
    description=["[itemprop=description]", ".product-description", ".description", ".details"],
    images=["[itemprop=image]", ".product-image img", "img"],
    rating=["[itemprop=ratingValue]"],
    review_count=["[itemprop=reviewCount]"],
    availability=["[itemprop=availability]", ".availability", ".stock"],
    brand=["[itemprop=brand]"],
    specifications=["table.specs tr", ".specifications tr"],
    image_attributes=("data-src", "src", "content"),
    max_images=5,
)

EXTRACTION_RULES: Dict[Platform, ExtractionRules] = {
    Platform.AMAZON: AMAZON_RULES,
    Platform.EBAY: EBAY_RULES,
    Platform.ALIBABA: ALIBABA_RULES,
    Platform.ALIEXPRESS: ALIEXPRESS_RULES,
    Platform.WALMART: WALMART_RULES,
    Platform.SHOPIFY: SHOPIFY_RULES,
}


def get_rules(platform: Platform) -> ExtractionRules:
    """Table de la plateforme, ou la table générique si inconnue."""
    return EXTRACTION_RULES.get(platform, GENERIC_RULES)
