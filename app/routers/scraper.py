"""
Scraper Router - Acquisition de fiches produit.
Endpoints: /v1/scraper/*
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field, ValidationError

from app.core.logging import get_logger
from app.core.platforms import validate_url
from app.normalizers.product import ScrapedProduct
from app.services.ai_enhancement_service import EnhancementOptions, EnhancementQueue
from app.services.scraping_orchestrator import ScrapingOrchestrator, get_orchestrator

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/scraper", tags=["scraper"])

MAX_BATCH_SIZE = 50


class ScrapeRequest(BaseModel):
    url: str
    session_id: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    deadline: Optional[float] = Field(default=None, gt=0)  # secondes


class BatchRequest(BaseModel):
    urls: List[str] = Field(min_length=1, max_length=MAX_BATCH_SIZE)
    config: Optional[Dict[str, Any]] = None


class ValidateRequest(BaseModel):
    url: str


class EnhanceRequest(BaseModel):
    product: ScrapedProduct
    options: Optional[EnhancementOptions] = None


def get_enhancement_queue(request: Request) -> Optional[EnhancementQueue]:
    return getattr(request.app.state, "enhancement_queue", None)


def _check_config(orchestrator: ScrapingOrchestrator, config: Optional[Dict[str, Any]]):
    """Valide les overrides avant de lancer l'acquisition (422 si invalides)."""
    if not config:
        return None
    try:
        return orchestrator.config.merged(config)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))


@router.post("/scrape")
async def scrape(body: ScrapeRequest, orchestrator: ScrapingOrchestrator = Depends(get_orchestrator)):
    """Acquiert un produit. Les échecs sont retournés avec status=failed (HTTP 200)."""
    cfg = _check_config(orchestrator, body.config)
    result = await orchestrator.acquire(body.url, session_id=body.session_id, config=cfg, deadline=body.deadline)
    return result.model_dump(mode="json")


@router.post("/batch")
async def scrape_batch(body: BatchRequest, orchestrator: ScrapingOrchestrator = Depends(get_orchestrator)):
    cfg = _check_config(orchestrator, body.config)
    results = await orchestrator.acquire_many(body.urls, config=cfg)
    succeeded = sum(1 for r in results if r.status == "success")
    logger.info("Batch completed", total=len(results), succeeded=succeeded)
    return {
        "total": len(results),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "results": [r.model_dump(mode="json") for r in results],
    }


@router.post("/validate")
def validate(body: ValidateRequest):
    return validate_url(body.url).model_dump()


@router.get("/metrics")
def metrics(orchestrator: ScrapingOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_metrics().model_dump()


@router.post("/enhance", status_code=202)
async def enhance(body: EnhanceRequest, queue: Optional[EnhancementQueue] = Depends(get_enhancement_queue)):
    """Met un produit en file d'enrichissement IA (traité en arrière-plan)."""
    if queue is None or not queue.is_running:
        raise HTTPException(status_code=503, detail="AI enhancement is not configured")
    await queue.submit(body.product, body.options)
    return {"queued": True, "pending": queue.pending}
