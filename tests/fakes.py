"""
Collaborateurs en mémoire pour les tests (aucun navigateur, aucun réseau).
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, List, Optional

from app.core.platforms import Platform
from app.normalizers.product import ScrapedProduct, ScrapingResult
from app.normalizers.session import BrowserFingerprint, ProxyEndpoint
from app.services.browser_worker import AutomationBackend
from app.services.provider_service import StructuredDataProvider


AMAZON_HTML = """
<html>
<head>
  <title>Amazon.com : Wireless Headphones | Electronics</title>
  <meta name="description" content="Great wireless headphones">
</head>
<body>
  <span id="productTitle">  Wireless   Noise Cancelling Headphones </span>
  <a id="bylineInfo">Visit the Sonic Store</a>
  <div id="corePrice_feature_div"><span class="a-price"><span class="a-offscreen">$49.99</span></span></div>
  <span class="a-price a-text-price"><span class="a-offscreen">$79.99</span></span>
  <div id="feature-bullets"><ul><li>40h battery</li><li>Bluetooth 5.3</li></ul></div>
  <div id="availability"><span>In Stock.</span></div>
  <span class="a-icon-alt">4.5 out of 5 stars</span>
  <span id="acrCustomerReviewText">1,234 ratings</span>
  <img id="landingImage" src="https://m.media-amazon.com/images/I/71abc._AC_SX679_.jpg">
  <script>var data = {"hiRes":"https://m.media-amazon.com/images/I/81xyz._AC_SL1500_.jpg"};</script>
  <img src="https://m.media-amazon.com/images/G/01/1x1._CB485948.gif">
</body>
</html>
"""

GENERIC_HTML = """
<html>
<head><title>Ceramic Mug | Shop</title></head>
<body>
  <h1>Ceramic Mug</h1>
  <div class="price">€12,99</div>
  <img src="https://shop.example.com/img/mug.jpg">
  <img src="https://shop.example.com/img/mug.jpg">
  <img src="data:image/png;base64,AAAA">
</body>
</html>
"""

EMPTY_HTML = "<html><head></head><body><div>Just a moment...</div></body></html>"

CONTEXT_DESTROYED = "Execution context was destroyed, most likely because of a navigation"


@dataclass
class FakeHandle:
    id: int
    proxy: Optional[ProxyEndpoint] = None
    fingerprint: Optional[BrowserFingerprint] = None
    credentials: Optional[tuple] = None
    closed: bool = False


class FakeBackend(AutomationBackend):
    """
    Backend scripté.

    `navigate_errors`: exceptions levées dans l'ordre, une par navigation
    (None = navigation réussie).
    """

    def __init__(
        self,
        content: str = AMAZON_HTML,
        navigate_delay: float = 0.0,
        navigate_errors: Optional[List[Optional[BaseException]]] = None,
        open_errors: Optional[List[Optional[BaseException]]] = None,
        challenge_solved: bool = False,
        challenge_error: Optional[BaseException] = None,
        hold_open: float = 0.0,
    ):
        self.content = content
        self.navigate_delay = navigate_delay
        self.navigate_errors = list(navigate_errors or [])
        self.open_errors = list(open_errors or [])
        self.challenge_solved = challenge_solved
        self.challenge_error = challenge_error
        self.hold_open = hold_open
        self.handles: List[FakeHandle] = []
        self.open_calls = 0
        self.navigate_calls = 0
        self.close_calls = 0
        self.challenge_calls = 0
        self.open_now = 0
        self.max_open = 0

    async def open(self, proxy: Optional[ProxyEndpoint] = None) -> FakeHandle:
        self.open_calls += 1
        if self.open_errors:
            error = self.open_errors.pop(0)
            if error is not None:
                raise error
        handle = FakeHandle(id=len(self.handles), proxy=proxy)
        self.handles.append(handle)
        self.open_now += 1
        self.max_open = max(self.max_open, self.open_now)
        return handle

    async def apply_fingerprint(self, handle: FakeHandle, fingerprint: BrowserFingerprint) -> None:
        handle.fingerprint = fingerprint

    async def authenticate_proxy(self, handle: FakeHandle, username: str, password: str) -> None:
        handle.credentials = (username, password)

    async def navigate(self, handle: FakeHandle, url: str, timeout_ms: int) -> None:
        self.navigate_calls += 1
        if self.navigate_delay:
            await asyncio.sleep(self.navigate_delay)
        if self.navigate_errors:
            error = self.navigate_errors.pop(0)
            if error is not None:
                raise error
        if self.hold_open:
            await asyncio.sleep(self.hold_open)

    async def evaluate(self, handle: FakeHandle, script: str) -> Any:
        return self.content

    async def attempt_challenge_solve(self, handle: FakeHandle, timeout_ms: int) -> bool:
        self.challenge_calls += 1
        if self.challenge_error is not None:
            raise self.challenge_error
        return self.challenge_solved

    async def close(self, handle: FakeHandle) -> None:
        if handle.closed:
            return
        self.close_calls += 1
        handle.closed = True
        self.open_now -= 1


class BrokenReadBackend(FakeBackend):
    """Navigation OK, mais la lecture du contenu échoue (contexte détruit)."""

    async def evaluate(self, handle: FakeHandle, script: str) -> Any:
        raise RuntimeError(CONTEXT_DESTROYED)


class FakeProvider(StructuredDataProvider):
    name = "fake-provider"

    def __init__(
        self,
        platform: Platform = Platform.AMAZON,
        product: Optional[ScrapedProduct] = None,
        error: Optional[BaseException] = None,
        delay: float = 0.0,
    ):
        super().__init__(client=None, retries=0)
        self.platform = platform
        self.product = product
        self.error = error
        self.delay = delay
        self.calls: List[str] = []

    async def fetch_product(self, url: str, identifier: str) -> Optional[ScrapedProduct]:
        self.calls.append(identifier)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.product


class FakeGenerator:
    """TextGenerator scripté: réponses successives, ou exception."""

    def __init__(self, responses: Optional[List[str]] = None, error: Optional[BaseException] = None, delay: float = 0.0):
        self.responses = list(responses or [])
        self.error = error
        self.delay = delay
        self.prompts: List[str] = []

    async def generate(self, prompt: str, max_tokens: int = 500) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.responses.pop(0) if self.responses else ""


class FakeFetcher:
    def __init__(self, content: str = GENERIC_HTML, error: Optional[BaseException] = None):
        self.content = content
        self.error = error
        self.calls: List[str] = []

    async def fetch(self, url: str, timeout_ms: int, proxy: Optional[ProxyEndpoint] = None) -> str:
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return self.content


@dataclass
class RecordingSink:
    results: List[ScrapingResult] = field(default_factory=list)
    error: Optional[BaseException] = None

    async def save(self, result: ScrapingResult) -> None:
        if self.error is not None:
            raise self.error
        self.results.append(result)


def make_product(**overrides) -> ScrapedProduct:
    data = dict(
        title="Provider Headphones",
        description="Original description",
        price=59.0,
        original_price=99.0,
        images=["https://m.media-amazon.com/images/I/1.jpg"],
        source_url="https://www.amazon.com/dp/B08N5WRWNW",
        source_platform="amazon",
    )
    data.update(overrides)
    return ScrapedProduct(**data)
