"""
AI Brand Analyzer - Unified API Gateway

Services mounted under one app:
- /api/domains/* - Domains, keywords and phrase selection
- /api/ai-queries/* - AI query dispatch, SSE result streaming, stats

Run locally: python main.py  (or `brand-analyzer serve`)
"""

import os
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ai_client import DISPLAY_MODELS
from config import get_settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Main app
app = FastAPI(
    title="AI Brand Analyzer",
    description="Unified API gateway for AI brand presence analysis",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    """Service directory."""
    return {
        "service": "brand-analyzer",
        "version": "1.0.0",
        "endpoints": {
            # Domains
            "/api/domains/": "POST - Register a domain",
            "/api/domains/{id}": "GET - Domain with its phrases",
            "/api/domains/{id}/keywords": "POST - Add a keyword and its phrases",
            "/api/domains/{id}/phrases": "GET - List phrases",
            "/api/domains/{id}/phrases/selection": "PUT - Select or deselect phrases",
            # AI queries
            "/api/ai-queries/{id}": "POST - SSE analysis stream",
            "/api/ai-queries/analyze": "POST - Score one phrase against one model",
            "/api/ai-queries/reanalyze-phrase": "POST - Rerun all models for a phrase",
            "/api/ai-queries/results/{id}": "GET - Stored results and stats",
            "/api/ai-queries/stats/{id}": "GET - Mention rate and keyword stats",
            "/api/ai-queries/competitors/{id}": "GET - Competitors and threat levels",
            "/api/ai-queries/health": "GET - AI queries service status",
            # Gateway
            "/status": "GET - Gateway status",
        }
    }


@app.get("/status")
async def gateway_status():
    """Gateway health check with service status."""
    settings = get_settings()
    return {
        "status": "healthy",
        "service": "brand-analyzer",
        "version": "1.0.0",
        "openrouter_configured": bool(settings.openrouter_api_key),
        "models": DISPLAY_MODELS,
        "services": {
            "domains": "operational",
            "ai-queries": "operational",
        }
    }


# Mount Domain service under /api/domains
from domain_service import app as domain_app
app.mount("/api/domains", domain_app)

# Mount AI Queries service under /api/ai-queries
from ai_queries_service import app as ai_queries_app
app.mount("/api/ai-queries", ai_queries_app)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
