"""Domain Service - domains, keywords and the phrases selected for analysis"""

import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from query_types import DomainNotFoundError, PhraseNotFoundError
from store import AnalysisStore, get_store

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Domain Service",
    description="Register domains and manage the keyword phrases sent to AI models.",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class DomainCreate(BaseModel):
    url: str = Field(..., min_length=1)
    context: str = ""
    location: Optional[str] = None


class KeywordPhrases(BaseModel):
    keyword: str = Field(..., min_length=1)
    phrases: List[str] = Field(default_factory=list)
    selected: bool = True


class SelectionUpdate(BaseModel):
    phraseIds: List[int]
    selected: bool = True


def _phrase_payload(store: AnalysisStore, domain_id: int):
    phrases = []
    for phrase in store.phrases_for_domain(domain_id):
        item = phrase.to_dict()
        item["keyword"] = store.keyword_for(phrase).term
        phrases.append(item)
    return phrases


@app.post("/")
async def create_domain(request: DomainCreate, store: AnalysisStore = Depends(get_store)):
    domain = store.create_domain(request.url, request.context, request.location)
    return domain.to_dict()


@app.get("/{domain_id}")
async def get_domain(domain_id: int, store: AnalysisStore = Depends(get_store)):
    try:
        domain = store.get_domain(domain_id)
    except DomainNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    data = domain.to_dict()
    data["phrases"] = _phrase_payload(store, domain_id)
    return data


@app.post("/{domain_id}/keywords")
async def add_keyword_phrases(domain_id: int, request: KeywordPhrases, store: AnalysisStore = Depends(get_store)):
    """Attach a keyword and its intent phrases to a domain."""
    try:
        keyword = store.add_keyword(domain_id, request.keyword)
    except DomainNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    phrases = [store.add_phrase(keyword.id, text, request.selected) for text in request.phrases if text.strip()]
    logger.info(f"Added {len(phrases)} phrases for '{keyword.term}' to domain {domain_id}")
    return {
        "keyword": keyword.to_dict(),
        "phrases": [p.to_dict() for p in phrases],
    }


@app.put("/{domain_id}/phrases/selection")
async def update_selection(domain_id: int, request: SelectionUpdate, store: AnalysisStore = Depends(get_store)):
    try:
        store.get_domain(domain_id)
        owned = {p.id for p in store.phrases_for_domain(domain_id)}
        for phrase_id in request.phraseIds:
            if phrase_id not in owned:
                raise PhraseNotFoundError(phrase_id)
            store.set_phrase_selected(phrase_id, request.selected)
    except (DomainNotFoundError, PhraseNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"updated": len(request.phraseIds), "selected": request.selected}


@app.get("/{domain_id}/phrases")
async def list_phrases(domain_id: int, selected_only: bool = False, store: AnalysisStore = Depends(get_store)):
    try:
        store.get_domain(domain_id)
    except DomainNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    phrases = _phrase_payload(store, domain_id)
    if selected_only:
        phrases = [p for p in phrases if p["isSelected"]]
    return {"phrases": phrases}
