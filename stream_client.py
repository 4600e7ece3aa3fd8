"""Stream Client - consumes an analysis SSE stream and materializes dashboard stats.

Lifecycle: initializing -> streaming -> complete | error

Results are keyed by (model, phrase, keyword) with model names normalized, so
results seeded from /results and results replayed by the server are never
counted twice. Progress follows the total announced by the server's first
progress event; until it arrives each accepted result adds 2%.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import httpx

from ai_client import DISPLAY_MODELS
from query_types import QueryResult
from sse import iter_sse_events
from stats import calculate_keyword_stats, calculate_stats

logger = logging.getLogger(__name__)

MODEL_ALIASES = {
    "gpt-4o": "chatgpt",
    "claude 3": "claude",
    "gemini 1.5": "gemini",
}

UNKNOWN_TOTAL_STEP = 2.0


class AnalysisStatus(str, Enum):
    INITIALIZING = "initializing"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"


def normalize_model(name: str) -> str:
    """Map display names to short platform ids: GPT-4o -> chatgpt."""
    lowered = (name or "").strip().lower()
    if lowered in MODEL_ALIASES:
        return MODEL_ALIASES[lowered]
    if "gpt" in lowered or "chatgpt" in lowered:
        return "chatgpt"
    if "claude" in lowered:
        return "claude"
    if "gemini" in lowered:
        return "gemini"
    return lowered


def missing_phrases(
    results: Iterable[QueryResult],
    phrases: Iterable[str],
    models: Iterable[str] = DISPLAY_MODELS,
) -> List[str]:
    """Phrases that lack a result for at least one expected model."""
    expected = {normalize_model(m) for m in models}
    covered: Dict[str, Set[str]] = {}
    for r in results:
        covered.setdefault(r.phrase, set()).add(normalize_model(r.model))
    return [p for p in phrases if not expected <= covered.get(p, set())]


@dataclass
class AnalysisState:
    """Client-side view of one analysis run."""
    status: AnalysisStatus = AnalysisStatus.INITIALIZING
    results: List[QueryResult] = field(default_factory=list)
    seen: Set[Tuple[str, str, str]] = field(default_factory=set)
    stats: Dict[str, Any] = field(default_factory=dict)
    server_stats: Dict[str, Any] = field(default_factory=dict)
    message: str = ""
    error: Optional[str] = None
    total: Optional[int] = None
    progress: float = 0.0
    accepted_this_run: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.status in (AnalysisStatus.COMPLETE, AnalysisStatus.ERROR)

    def add_result(self, result: QueryResult, seeded: bool = False) -> bool:
        """Accept a result unless its (model, phrase, keyword) was already seen."""
        key = (normalize_model(result.model), result.phrase, result.keyword)
        if key in self.seen:
            logger.debug(f"Duplicate result ignored: {key}")
            return False
        self.seen.add(key)
        self.results.append(result)
        if not seeded:
            self.accepted_this_run += 1
            if self.total:
                self.progress = max(self.progress, min(100.0, self.accepted_this_run / self.total * 100))
            else:
                self.progress = min(100.0, self.progress + UNKNOWN_TOTAL_STEP)
        return True

    def fail(self, message: str) -> None:
        self.status = AnalysisStatus.ERROR
        self.error = message
        self.message = message
        logger.error(f"Analysis failed: {message}")

    def final_stats(self) -> Dict[str, Any]:
        stats = calculate_stats(self.results)
        keywords = calculate_keyword_stats(self.results)
        stats["mentionRate"] = keywords["mentionRate"]
        stats["keywordStats"] = keywords["keywordStats"]
        return stats


EventCallback = Callable[[str, Dict[str, Any], AnalysisState], None]


class AnalysisStreamClient:
    """Runs analyses against a brand-analyzer API over SSE."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        connection_timeout: float = 300.0,
        overall_timeout: float = 1200.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.connection_timeout = connection_timeout
        self.overall_timeout = overall_timeout
        self.transport = transport

    def _client(self, timeout: httpx.Timeout) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=self.transport,
        )

    async def load_existing(self, domain_id: int) -> List[QueryResult]:
        """Stored results for a domain. Invalid records are skipped."""
        async with self._client(httpx.Timeout(30.0)) as client:
            response = await client.get(f"/api/ai-queries/results/{domain_id}")
            response.raise_for_status()
            data = response.json()

        results = []
        for record in data.get("results", []):
            try:
                results.append(QueryResult.from_dict(record))
            except ValueError as e:
                logger.warning(f"Skipping stored result: {e}")
        return results

    async def load_selected_phrases(self, domain_id: int) -> List[str]:
        async with self._client(httpx.Timeout(30.0)) as client:
            response = await client.get(f"/api/domains/{domain_id}/phrases", params={"selected_only": "true"})
            response.raise_for_status()
            return [p["phrase"] for p in response.json().get("phrases", [])]

    async def analyze(
        self,
        domain_id: int,
        selected_phrases: Optional[List[str]] = None,
        on_event: Optional[EventCallback] = None,
        expected_models: Iterable[str] = DISPLAY_MODELS,
    ) -> AnalysisState:
        """Seed from stored results and stream only when coverage is incomplete."""
        state = AnalysisState()
        for result in await self.load_existing(domain_id):
            state.add_result(result, seeded=True)

        phrases = selected_phrases if selected_phrases is not None else await self.load_selected_phrases(domain_id)
        if phrases and not missing_phrases(state.results, phrases, expected_models):
            logger.info(f"Domain {domain_id}: all {len(phrases)} phrases already analyzed")
            state.status = AnalysisStatus.COMPLETE
            state.message = "All selected phrases already analyzed"
            state.progress = 100.0
            state.stats = state.final_stats()
            return state

        return await self.run(domain_id, on_event=on_event, state=state)

    async def run(
        self,
        domain_id: int,
        location: Optional[str] = None,
        on_event: Optional[EventCallback] = None,
        state: Optional[AnalysisState] = None,
    ) -> AnalysisState:
        """Open the SSE stream and consume it until a terminal event."""
        state = state or AnalysisState()
        state.status = AnalysisStatus.INITIALIZING
        try:
            await asyncio.wait_for(
                self._consume(domain_id, location, on_event, state),
                timeout=self.overall_timeout,
            )
        except asyncio.TimeoutError:
            state.fail(f"Analysis timed out after {self.overall_timeout:.0f} seconds")
        except httpx.TimeoutException:
            state.fail(f"Connection timed out: no data received for {self.connection_timeout:.0f} seconds")
        except httpx.HTTPError as e:
            state.fail(f"Connection error: {e}")

        if not state.finished:
            state.fail("Stream closed before the analysis completed")
        return state

    async def _consume(
        self,
        domain_id: int,
        location: Optional[str],
        on_event: Optional[EventCallback],
        state: AnalysisState,
    ) -> None:
        timeout = httpx.Timeout(self.connection_timeout)
        body = {"location": location} if location else {}
        async with self._client(timeout) as client:
            async with client.stream("POST", f"/api/ai-queries/{domain_id}", json=body) as response:
                if not response.is_success:
                    await response.aread()
                    state.fail(_error_detail(response))
                    return

                state.status = AnalysisStatus.STREAMING
                async for event in iter_sse_events(response.aiter_lines()):
                    try:
                        payload = event.json()
                    except ValueError:
                        logger.warning(f"Malformed {event.event} event ignored")
                        continue
                    self.handle_event(state, event.event, payload)
                    if on_event:
                        on_event(event.event, payload, state)
                    if state.finished:
                        return

    def handle_event(self, state: AnalysisState, name: str, payload: Dict[str, Any]) -> None:
        if name == "progress":
            if payload.get("total"):
                state.total = int(payload["total"])
            if payload.get("message"):
                state.message = payload["message"]
            if payload.get("error"):
                state.warnings.append(f"{payload.get('model', '')}: {payload['error']}".strip(": "))
            if state.total and payload.get("completed") is not None:
                state.progress = max(state.progress, min(100.0, payload["completed"] / state.total * 100))
        elif name == "result":
            try:
                result = QueryResult.from_dict(payload)
            except ValueError as e:
                logger.warning(f"Invalid result event ignored: {e}")
                return
            state.add_result(result)
        elif name == "stats":
            state.server_stats = payload
        elif name == "complete":
            state.status = AnalysisStatus.COMPLETE
            state.progress = 100.0
            state.message = payload.get("message") or "Analysis complete"
            state.stats = state.final_stats()
        elif name == "error":
            state.fail(payload.get("error") or "Unknown error")


def _error_detail(response: httpx.Response) -> str:
    try:
        detail = response.json().get("detail")
    except ValueError:
        detail = None
    return detail or f"Request failed with status {response.status_code}"
