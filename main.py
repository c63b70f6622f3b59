import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import LOG_LEVEL
from app.core.logging import get_logger, set_trace_id, setup_logging
from app.normalizers.product import ScrapedProduct
from app.routers.scraper import router as scraper_router
from app.services.ai_enhancement_service import EnhancementQueue, build_default_enhancer
from app.services.scraping_orchestrator import shutdown_orchestrator

setup_logging(LOG_LEVEL)
logger = get_logger(__name__)

# =============================================================================
# APP CONFIGURATION
# =============================================================================

API_VERSION = "1.0.0"
API_TITLE = "Product Acquisition API"


async def log_enhanced_product(product: ScrapedProduct) -> None:
    logger.info(
        "Product enhanced",
        url=product.source_url,
        platform=product.source_platform,
        category=product.suggested_category,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    enhancer = build_default_enhancer()
    queue = EnhancementQueue(enhancer, sink=log_enhanced_product) if enhancer else None
    if queue:
        queue.start()
    app.state.enhancement_queue = queue
    try:
        yield
    finally:
        if queue:
            await queue.stop()
        await shutdown_orchestrator()
        logger.info("Shutdown complete")


app = FastAPI(
    title=API_TITLE,
    version=API_VERSION,
    description="E-commerce product acquisition API",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:3001",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Response-Time"],
)


# =============================================================================
# MIDDLEWARE - Request tracking & timing
# =============================================================================

@app.middleware("http")
async def add_request_context(request: Request, call_next):
    """Add trace_id and timing to all requests."""
    trace_id = set_trace_id()
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000
    response.headers["X-Request-ID"] = trace_id
    response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

    if request.url.path != "/health":
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )

    return response


app.include_router(scraper_router)


# =============================================================================
# SYSTEM ENDPOINTS - Health & Info
# =============================================================================

@app.get("/health")
def health():
    """Health check endpoint for load balancers & monitoring."""
    return {"status": "ok"}


@app.get("/v1/info")
def api_info():
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "status": "operational",
    }
