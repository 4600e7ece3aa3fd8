"""AI Queries Service - dispatch phrases to AI models and stream scored results

Endpoints:
- POST /{domain_id} - SSE stream of progress/result/stats events for a domain
- POST /analyze - score one phrase against one model
- POST /reanalyze-phrase - rerun all models for one phrase
- GET /results/{domain_id}, /stats/{domain_id}, /competitors/{domain_id}
"""

import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask

from ai_client import AI_MODELS, DISPLAY_MODELS, get_ai_client
from config import get_settings
from dispatcher import QueryDispatcher
from query_types import AnalysisError, ConcurrencyLimitError, DomainNotFoundError, PhraseNotFoundError
from sse import SSE_HEADERS, format_sse
from stats import calculate_comprehensive_stats, calculate_keyword_stats, calculate_stats
from store import AnalysisStore, get_store

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="AI Queries Service",
    description="Streams AI model answers for selected phrases, scored for brand presence.",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Lazy initialization; tests override get_dispatcher via dependency_overrides
_dispatcher = None

def get_dispatcher() -> QueryDispatcher:
    """Get dispatcher instance (lazy initialization)."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = QueryDispatcher(get_store(), get_ai_client(), get_settings())
    return _dispatcher


# ==================== Request Models ====================

class StreamRequest(BaseModel):
    location: Optional[str] = None


class AnalyzeRequest(BaseModel):
    phrase: str = Field(..., min_length=1)
    domain: str = Field(..., min_length=1, description="Target domain, e.g. example.com")
    model: str = Field(default="GPT-4o", description=f"One of: {', '.join(DISPLAY_MODELS)}")
    keyword: str = ""


class ReanalyzeRequest(BaseModel):
    phraseId: int


# ==================== Endpoints ====================

@app.get("/health")
async def health():
    """Service health."""
    settings = get_settings()
    return {
        "status": "healthy",
        "service": "ai-queries",
        "version": "1.0.0",
        "models": DISPLAY_MODELS,
        "openrouter_configured": bool(settings.openrouter_api_key),
        "ai_presence_detection": settings.ai_presence_detection,
    }


@app.post("/analyze")
async def analyze(request: AnalyzeRequest, dispatcher: QueryDispatcher = Depends(get_dispatcher)):
    """Query one model for one phrase and score the answer."""
    if request.model not in AI_MODELS:
        raise HTTPException(status_code=400, detail=f"Unknown model: {request.model}")
    try:
        result = await dispatcher.analyze_phrase(
            request.phrase, request.domain, request.model, request.keyword or request.phrase
        )
    except AnalysisError as e:
        status = 504 if e.is_retryable else 502
        raise HTTPException(status_code=status, detail=str(e))
    return result.to_dict()


@app.post("/reanalyze-phrase")
async def reanalyze_phrase(request: ReanalyzeRequest, dispatcher: QueryDispatcher = Depends(get_dispatcher)):
    """Delete stored results for a phrase and query every display model again."""
    try:
        results = await dispatcher.reanalyze_phrase(request.phraseId)
    except (PhraseNotFoundError, DomainNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {
        "phraseId": request.phraseId,
        "results": [r.to_dict() for r in results],
        "stats": calculate_stats(results),
    }


@app.get("/results/{domain_id}")
async def get_results(domain_id: int, store: AnalysisStore = Depends(get_store)):
    """Stored results for a domain with per-model stats."""
    try:
        store.get_domain(domain_id)
    except DomainNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    results = store.results_for_domain(domain_id)
    return {
        "results": [r.to_dict() for r in results],
        "stats": calculate_stats(results),
        "snapshots": store.snapshots(domain_id),
    }


@app.get("/stats/{domain_id}")
async def get_stats(domain_id: int, store: AnalysisStore = Depends(get_store)):
    """Totals, mention rate and per-keyword breakdown."""
    try:
        store.get_domain(domain_id)
    except DomainNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return calculate_keyword_stats(store.results_for_domain(domain_id))


@app.get("/competitors/{domain_id}")
async def get_competitors(domain_id: int, store: AnalysisStore = Depends(get_store)):
    """Competitors seen across stored results, with threat levels."""
    try:
        store.get_domain(domain_id)
    except DomainNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    results = store.results_for_domain(domain_id)
    comprehensive = calculate_comprehensive_stats(results)
    return {
        "competitors": comprehensive["competitors"],
        "insights": comprehensive["insights"],
        "totalResults": comprehensive["totalResults"],
    }


@app.post("/{domain_id}")
async def stream_analysis(
    domain_id: int,
    request: Optional[StreamRequest] = None,
    dispatcher: QueryDispatcher = Depends(get_dispatcher),
):
    """Run the analysis for a domain as a Server-Sent Events stream."""
    try:
        dispatcher.acquire(domain_id)
    except ConcurrencyLimitError as e:
        raise HTTPException(status_code=429, detail=str(e))

    if request and request.location:
        domain = dispatcher.store.domains.get(domain_id)
        if domain is not None:
            domain.location = request.location

    released = False

    def release_slot():
        nonlocal released
        if not released:
            released = True
            dispatcher.active_requests.release(domain_id)

    async def event_generator():
        try:
            async for event, payload in dispatcher.stream(domain_id, acquired=True):
                yield format_sse(event, payload)
        finally:
            release_slot()

    # The background task also runs when the client leaves before the first chunk.
    logger.info(f"Starting analysis stream for domain {domain_id}")
    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        background=BackgroundTask(release_slot),
    )
