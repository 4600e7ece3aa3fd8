# ABOUTME: In-memory repository for domains, keywords, phrases, query results and snapshots
# ABOUTME: One process-wide instance via get_store(); tests call reset_store()

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from query_types import DomainNotFoundError, PhraseNotFoundError, QueryResult

logger = logging.getLogger(__name__)


@dataclass
class Domain:
    id: int
    url: str
    context: str = ""
    location: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "context": self.context,
            "location": self.location,
            "createdAt": self.created_at,
        }


@dataclass
class Keyword:
    id: int
    domain_id: int
    term: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "domainId": self.domain_id, "term": self.term}


@dataclass
class Phrase:
    id: int
    keyword_id: int
    text: str
    is_selected: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "keywordId": self.keyword_id,
            "phrase": self.text,
            "isSelected": self.is_selected,
        }


class AnalysisStore:
    """Thread-safe in-memory storage. Results are unique per (phrase, model)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.domains: Dict[int, Domain] = {}
        self.keywords: Dict[int, Keyword] = {}
        self.phrases: Dict[int, Phrase] = {}
        self.results: Dict[int, QueryResult] = {}
        self._snapshots: Dict[int, List[Dict[str, Any]]] = {}

    # ---------- domains ----------

    def create_domain(self, url: str, context: str = "", location: Optional[str] = None) -> Domain:
        with self._lock:
            domain = Domain(id=next(self._ids), url=url, context=context, location=location)
            self.domains[domain.id] = domain
        logger.info(f"Created domain {domain.id}: {url}")
        return domain

    def get_domain(self, domain_id: int) -> Domain:
        domain = self.domains.get(domain_id)
        if domain is None:
            raise DomainNotFoundError(domain_id)
        return domain

    # ---------- keywords & phrases ----------

    def add_keyword(self, domain_id: int, term: str) -> Keyword:
        self.get_domain(domain_id)
        with self._lock:
            for keyword in self.keywords.values():
                if keyword.domain_id == domain_id and keyword.term == term:
                    return keyword
            keyword = Keyword(id=next(self._ids), domain_id=domain_id, term=term)
            self.keywords[keyword.id] = keyword
        return keyword

    def add_phrase(self, keyword_id: int, text: str, is_selected: bool = True) -> Phrase:
        if keyword_id not in self.keywords:
            raise KeyError(f"Keyword {keyword_id} not found")
        with self._lock:
            phrase = Phrase(id=next(self._ids), keyword_id=keyword_id, text=text, is_selected=is_selected)
            self.phrases[phrase.id] = phrase
        return phrase

    def get_phrase(self, phrase_id: int) -> Phrase:
        phrase = self.phrases.get(phrase_id)
        if phrase is None:
            raise PhraseNotFoundError(phrase_id)
        return phrase

    def set_phrase_selected(self, phrase_id: int, selected: bool) -> Phrase:
        phrase = self.get_phrase(phrase_id)
        phrase.is_selected = selected
        return phrase

    def keyword_for(self, phrase: Phrase) -> Keyword:
        return self.keywords[phrase.keyword_id]

    def phrases_for_domain(self, domain_id: int) -> List[Phrase]:
        keyword_ids = {k.id for k in self.keywords.values() if k.domain_id == domain_id}
        return [p for p in self.phrases.values() if p.keyword_id in keyword_ids]

    def selected_phrases(self, domain_id: int) -> List[Phrase]:
        """Selected phrases in insertion order."""
        self.get_domain(domain_id)
        return [p for p in self.phrases_for_domain(domain_id) if p.is_selected]

    def domain_for_phrase(self, phrase: Phrase) -> Domain:
        return self.get_domain(self.keyword_for(phrase).domain_id)

    # ---------- results ----------

    def find_result(self, phrase_id: int, model: str) -> Optional[QueryResult]:
        for result in self.results.values():
            if result.phrase_id == phrase_id and result.model == model:
                return result
        return None

    def results_for_phrase(self, phrase_id: int) -> List[QueryResult]:
        return [r for r in self.results.values() if r.phrase_id == phrase_id]

    def results_for_domain(self, domain_id: int) -> List[QueryResult]:
        return [r for r in self.results.values() if r.domain_id == domain_id]

    def save_result(self, result: QueryResult) -> QueryResult:
        """Insert or replace the stored result for (phrase, model)."""
        with self._lock:
            existing = None
            if result.phrase_id is not None:
                for stored in self.results.values():
                    if stored.phrase_id == result.phrase_id and stored.model == result.model:
                        existing = stored
                        break
            result.id = existing.id if existing else next(self._ids)
            self.results[result.id] = result
        return result

    def delete_results_for_phrase(self, phrase_id: int) -> int:
        with self._lock:
            doomed = [rid for rid, r in self.results.items() if r.phrase_id == phrase_id]
            for rid in doomed:
                del self.results[rid]
        return len(doomed)

    # ---------- dashboard snapshots ----------

    def add_snapshot(self, domain_id: int, snapshot: Dict[str, Any]) -> None:
        with self._lock:
            self._snapshots.setdefault(domain_id, []).append(snapshot)

    def snapshots(self, domain_id: int) -> List[Dict[str, Any]]:
        return list(self._snapshots.get(domain_id, []))


_store = None

def get_store() -> AnalysisStore:
    """Get store instance (lazy initialization)."""
    global _store
    if _store is None:
        _store = AnalysisStore()
    return _store


def reset_store() -> AnalysisStore:
    """Replace the process-wide store with an empty one."""
    global _store
    _store = AnalysisStore()
    return _store
