"""Query Dispatcher - fans selected phrases out to AI models and streams scored results.

For one domain, every selected (keyword, phrase) pair is asked to each active
display model. Each answer is scored by the presence scorer, persisted and
emitted as an event:

- progress: initialization (with the run's total), batch start, per-query
  querying/evaluating, skips, timeouts and per-query failures
- result: one per (model, phrase, keyword) per run, never repeated
- stats: after every batch, then once more with comprehensive stats
- complete / error: terminal

Per-query timeouts and failures are reported as progress events and the run
continues. Repeated timeouts for a domain switch it to the fallback model set
until the timeout counter resets.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

from ai_client import DISPLAY_MODELS, FALLBACK_MODELS
from config import Settings, get_settings
from presence_scorer import analyze_response, score_response
from query_types import (
    AnalysisError,
    NoSelectedPhrasesError,
    ProviderResponse,
    QueryResult,
    QueryTask,
    QueryTimeoutError,
    TooManyQueriesError,
    ConcurrencyLimitError,
)
from stats import build_dashboard_snapshot, calculate_comprehensive_stats, calculate_stats
from store import AnalysisStore

logger = logging.getLogger(__name__)

Event = Tuple[str, Dict[str, Any]]


def batch_size_for(total_queries: int) -> int:
    """Smaller batches for bigger runs."""
    if total_queries > 100:
        return 4
    if total_queries > 50:
        return 6
    if total_queries > 20:
        return 8
    return 10


class ActiveRequestTracker:
    """Counts open analysis streams per domain."""

    def __init__(self, limit: int):
        self.limit = limit
        self._active: Dict[int, int] = {}

    def active(self, domain_id: int) -> int:
        return self._active.get(domain_id, 0)

    def acquire(self, domain_id: int) -> None:
        if self.active(domain_id) >= self.limit:
            logger.warning(f"Concurrency limit reached for domain {domain_id}")
            raise ConcurrencyLimitError(domain_id)
        self._active[domain_id] = self.active(domain_id) + 1

    def release(self, domain_id: int) -> None:
        count = self.active(domain_id) - 1
        if count > 0:
            self._active[domain_id] = count
        else:
            self._active.pop(domain_id, None)


class TimeoutTracker:
    """Per-domain timeout counter with a time-based reset."""

    def __init__(self, threshold: int, reset_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.threshold = threshold
        self.reset_seconds = reset_seconds
        self._clock = clock
        self._counts: Dict[int, int] = {}
        self._last_reset = clock()

    def _maybe_reset(self) -> None:
        now = self._clock()
        if now - self._last_reset >= self.reset_seconds:
            self._counts.clear()
            self._last_reset = now

    def count(self, domain_id: int) -> int:
        self._maybe_reset()
        return self._counts.get(domain_id, 0)

    def record(self, domain_id: int) -> int:
        count = self.count(domain_id) + 1
        self._counts[domain_id] = count
        if count == self.threshold:
            logger.warning(f"Domain {domain_id} hit {count} timeouts, switching to fallback models")
        return count

    def models_for(self, domain_id: int) -> List[str]:
        if self.count(domain_id) >= self.threshold:
            return list(FALLBACK_MODELS)
        return list(DISPLAY_MODELS)


@dataclass
class _RunState:
    total: int
    models_per_task: int = 0
    completed: int = 0
    processed: Set[Tuple[str, str, str]] = field(default_factory=set)
    results: List[QueryResult] = field(default_factory=list)

    @property
    def progress(self) -> float:
        if not self.total:
            return 0.0
        return min(100.0, round(self.completed / self.total * 100, 2))

    def claim(self, key: Tuple[str, str, str]) -> bool:
        """Reserve a (model, phrase, keyword) triple for this run."""
        if key in self.processed:
            return False
        self.processed.add(key)
        return True

    def resize(self, delta: int) -> None:
        """Grow or shrink the planned total; never below what already completed."""
        self.total = max(self.completed, self.total + delta)

    def counters(self) -> Dict[str, Any]:
        return {"completed": self.completed, "total": self.total, "progress": self.progress}


class QueryDispatcher:
    """Runs analysis streams against a store and an AI client."""

    def __init__(
        self,
        store: AnalysisStore,
        ai_client,
        settings: Optional[Settings] = None,
        active_requests: Optional[ActiveRequestTracker] = None,
        timeouts: Optional[TimeoutTracker] = None,
    ):
        self.store = store
        self.ai_client = ai_client
        self.settings = settings or get_settings()
        self.active_requests = active_requests or ActiveRequestTracker(self.settings.max_concurrent_requests)
        self.timeouts = timeouts or TimeoutTracker(
            self.settings.timeout_threshold, self.settings.timeout_reset_seconds
        )

    # ==================== Planning ====================

    def build_tasks(self, domain_id: int) -> Dict[str, List[QueryTask]]:
        """Selected phrases grouped by keyword term, in insertion order."""
        grouped: Dict[str, List[QueryTask]] = {}
        for phrase in self.store.selected_phrases(domain_id):
            term = self.store.keyword_for(phrase).term
            grouped.setdefault(term, []).append(
                QueryTask(keyword=term, phrase=phrase.text, domain_id=domain_id, phrase_id=phrase.id)
            )
        return grouped

    # ==================== Single queries ====================

    async def score_answer(
        self,
        phrase: str,
        domain_url: str,
        model: str,
        keyword: str,
        answer: ProviderResponse,
        latency: float,
        domain_id: Optional[int] = None,
        phrase_id: Optional[int] = None,
    ) -> QueryResult:
        analysis = await analyze_response(
            answer.response,
            domain_url,
            ai_client=self.ai_client,
            use_ai=self.settings.ai_presence_detection,
        )
        scores = score_response(phrase, answer.response, domain_url, analysis, answer.sources)
        return QueryResult(
            keyword=keyword,
            phrase=phrase,
            model=model,
            response=answer.response,
            scores=scores,
            latency=latency,
            cost=answer.cost,
            domain_id=domain_id,
            phrase_id=phrase_id,
            sources=answer.sources,
        )

    async def analyze_phrase(
        self,
        phrase: str,
        domain_url: str,
        model: str,
        keyword: str,
        domain_id: Optional[int] = None,
        phrase_id: Optional[int] = None,
    ) -> QueryResult:
        """Ask one model one phrase and score the answer. Not persisted."""
        start = time.time()
        answer = await self.ai_client.query(phrase, model)
        return await self.score_answer(
            phrase, domain_url, model, keyword, answer, time.time() - start, domain_id, phrase_id
        )

    async def reanalyze_phrase(self, phrase_id: int) -> List[QueryResult]:
        """Drop stored results for a phrase and rerun every display model."""
        phrase = self.store.get_phrase(phrase_id)
        keyword = self.store.keyword_for(phrase)
        domain = self.store.domain_for_phrase(phrase)

        removed = self.store.delete_results_for_phrase(phrase_id)
        logger.info(f"Re-analyzing phrase {phrase_id} ({removed} old results removed)")

        outcomes = await asyncio.gather(
            *(
                asyncio.wait_for(
                    self.analyze_phrase(phrase.text, domain.url, model, keyword.term, domain.id, phrase.id),
                    timeout=self.settings.query_timeout_seconds,
                )
                for model in DISPLAY_MODELS
            ),
            return_exceptions=True,
        )

        results = []
        for model, outcome in zip(DISPLAY_MODELS, outcomes):
            if isinstance(outcome, asyncio.TimeoutError):
                logger.warning(f"Re-analysis of phrase {phrase_id} timed out for {model}")
            elif isinstance(outcome, AnalysisError):
                logger.warning(f"Re-analysis of phrase {phrase_id} failed for {model}: {outcome}")
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(self.store.save_result(outcome))
        return results

    # ==================== Streaming ====================

    def acquire(self, domain_id: int) -> None:
        """Reserve a stream slot. Raises ConcurrencyLimitError when full."""
        self.active_requests.acquire(domain_id)

    async def stream(self, domain_id: int, acquired: bool = False) -> AsyncIterator[Event]:
        """Yield (event, payload) pairs for one analysis run.

        Without `acquired` the stream takes a slot itself and releases it when
        the iterator finishes or is closed. With `acquired` the caller already
        holds the slot and releases it. Closing early cancels outstanding
        queries.
        """
        if not acquired:
            self.acquire(domain_id)

        queue: asyncio.Queue = asyncio.Queue()

        async def emit(event: str, payload: Dict[str, Any]) -> None:
            await queue.put((event, payload))

        async def produce() -> None:
            try:
                await self._run(domain_id, emit)
            except AnalysisError as e:
                logger.warning(f"Analysis for domain {domain_id} stopped: {e}")
                await emit("error", {"error": str(e)})
            except Exception as e:
                logger.exception(f"Analysis for domain {domain_id} failed")
                await emit("error", {"error": f"An unexpected error occurred: {e}"})
            finally:
                await queue.put(None)

        producer = asyncio.create_task(produce())
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield item
        finally:
            if not producer.done():
                logger.info(f"Client disconnected from domain {domain_id} stream, cancelling")
                producer.cancel()
                await asyncio.gather(producer, return_exceptions=True)
            if not acquired:
                self.active_requests.release(domain_id)

    async def _run(self, domain_id: int, emit) -> None:
        domain = self.store.get_domain(domain_id)
        tasks = [task for group in self.build_tasks(domain_id).values() for task in group]
        if not tasks:
            raise NoSelectedPhrasesError()

        models = self.timeouts.models_for(domain_id)
        total = len(tasks) * len(models)
        if total > self.settings.max_queries:
            raise TooManyQueriesError(total, self.settings.max_queries)

        run = _RunState(total=total, models_per_task=len(models))
        await emit("progress", {
            "message": f"Initializing analysis of {len(tasks)} phrases across {len(models)} AI models",
            "models": models,
            **run.counters(),
        })

        size = batch_size_for(total)
        batches = [tasks[i:i + size] for i in range(0, len(tasks), size)]
        logger.info(f"Domain {domain_id}: {total} queries in {len(batches)} batches of {size}")

        for index, batch in enumerate(batches, 1):
            await emit("progress", {
                "message": f"Processing batch {index}/{len(batches)}",
                "batch": index,
                "totalBatches": len(batches),
                **run.counters(),
            })
            await asyncio.gather(*(self._process_task(domain, task, run, emit) for task in batch))
            await emit("stats", calculate_stats(run.results))
            if index < len(batches) and self.settings.batch_delay_seconds > 0:
                await asyncio.sleep(self.settings.batch_delay_seconds)

        if run.results:
            final = calculate_comprehensive_stats(run.results)
            await emit("stats", {**final, "final": True})
            self.store.add_snapshot(domain_id, build_dashboard_snapshot(final))

        await emit("complete", {
            "message": "Analysis complete",
            "totalResults": len(run.results),
            **run.counters(),
        })

    async def _emit_result(self, result: QueryResult, run: _RunState, emit) -> None:
        run.completed += 1
        result.progress = run.progress
        run.results.append(result)
        await emit("result", result.to_dict())

    async def _adjust_total(self, run: _RunState, models: int, task: QueryTask, emit) -> None:
        """Correct the total when a phrase runs on a different model count than planned."""
        delta = models - run.models_per_task
        if not delta:
            return
        run.resize(delta)
        await emit("progress", {
            "message": f"Running {models} models for: {task.phrase}",
            "phrase": task.phrase,
            "keyword": task.keyword,
            **run.counters(),
        })

    async def _process_task(self, domain, task: QueryTask, run: _RunState, emit) -> None:
        stored = {}
        if task.phrase_id is not None:
            for model in DISPLAY_MODELS:
                existing = self.store.find_result(task.phrase_id, model)
                if existing is not None:
                    stored[model] = existing

        if len(stored) == len(DISPLAY_MODELS):
            await emit("progress", {
                "message": f"Skipping already analyzed phrase: {task.phrase}",
                "phrase": task.phrase,
                "keyword": task.keyword,
                "skipped": True,
                **run.counters(),
            })
            await self._adjust_total(run, len(DISPLAY_MODELS), task, emit)
            for model in DISPLAY_MODELS:
                if run.claim((model, task.phrase, task.keyword)):
                    await self._emit_result(stored[model], run, emit)
                else:
                    run.resize(-1)
            return

        models = self.timeouts.models_for(domain.id)
        await self._adjust_total(run, len(models), task, emit)
        await asyncio.gather(
            *(self._process_query(domain, task, model, stored.get(model), run, emit) for model in models)
        )

    async def _process_query(
        self,
        domain,
        task: QueryTask,
        model: str,
        stored: Optional[QueryResult],
        run: _RunState,
        emit,
    ) -> None:
        if not run.claim((model, task.phrase, task.keyword)):
            run.resize(-1)
            return
        if stored is not None:
            await self._emit_result(stored, run, emit)
            return

        details = {"model": model, "phrase": task.phrase, "keyword": task.keyword}
        await emit("progress", {
            "message": f"Querying {model} for: {task.phrase}",
            "stage": "querying",
            **details,
            **run.counters(),
        })

        async def query_and_score() -> QueryResult:
            start = time.time()
            answer = await self.ai_client.query(task.phrase, model)
            await emit("progress", {
                "message": f"Evaluating {model} response for: {task.phrase}",
                "stage": "evaluating",
                **details,
                **run.counters(),
            })
            return await self.score_answer(
                task.phrase, domain.url, model, task.keyword, answer,
                time.time() - start, domain.id, task.phrase_id,
            )

        try:
            result = await asyncio.wait_for(query_and_score(), timeout=self.settings.query_timeout_seconds)
        except (asyncio.TimeoutError, QueryTimeoutError):
            count = self.timeouts.record(domain.id)
            run.completed += 1
            logger.warning(f"{model} timed out on '{task.phrase}' (domain {domain.id}, {count} timeouts)")
            await emit("progress", {
                "message": f"Timeout for {model} on: {task.phrase}",
                "error": str(QueryTimeoutError()),
                "timeout": True,
                "timeoutCount": count,
                **details,
                **run.counters(),
            })
            return
        except AnalysisError as e:
            run.completed += 1
            logger.warning(f"{model} failed on '{task.phrase}': {e}")
            await emit("progress", {
                "message": f"Error querying {model}",
                "error": str(e),
                **details,
                **run.counters(),
            })
            return
        except Exception as e:
            run.completed += 1
            logger.exception(f"Unexpected failure for {model} on '{task.phrase}'")
            await emit("progress", {
                "message": f"Error querying {model}",
                "error": str(e),
                **details,
                **run.counters(),
            })
            return

        saved = self.store.save_result(result)
        await self._emit_result(saved, run, emit)
