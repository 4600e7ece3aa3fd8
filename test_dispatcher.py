"""
Tests for the query dispatcher: batching, resume, timeouts, failures, limits.
Run with: pytest test_dispatcher.py -v
"""
import asyncio

import pytest

from ai_client import DISPLAY_MODELS, FALLBACK_MODELS
from conftest import FakeAIClient
from dispatcher import ActiveRequestTracker, QueryDispatcher, TimeoutTracker, batch_size_for
from query_types import ConcurrencyLimitError


async def collect(dispatcher, domain_id):
    return [event async for event in dispatcher.stream(domain_id)]


def of_type(events, name):
    return [payload for event, payload in events if event == name]


class HangingAIClient(FakeAIClient):
    """Never answers; counts cancelled queries."""

    def __init__(self):
        super().__init__()
        self.cancelled = 0

    async def query(self, phrase, model):
        self.calls.append((phrase, model))
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise


class BrokenAIClient(FakeAIClient):
    async def query(self, phrase, model):
        raise RuntimeError("connection reset")


@pytest.mark.parametrize("total,expected", [
    (5, 10), (20, 10), (21, 8), (50, 8), (51, 6), (100, 6), (101, 4), (1000, 4),
])
def test_batch_size_for(total, expected):
    assert batch_size_for(total) == expected


def test_build_tasks_groups_by_keyword(dispatcher, seeded_domain, store):
    keyword = store.add_keyword(seeded_domain.id, "kanban")
    store.add_phrase(keyword.id, "kanban boards")
    store.add_phrase(keyword.id, "unselected phrase", is_selected=False)

    grouped = dispatcher.build_tasks(seeded_domain.id)

    assert list(grouped) == ["project management", "kanban"]
    assert [t.phrase for t in grouped["kanban"]] == ["kanban boards"]


@pytest.mark.asyncio
async def test_stream_emits_results_stats_and_complete(dispatcher, seeded_domain, store):
    events = await collect(dispatcher, seeded_domain.id)

    first_event, first_payload = events[0]
    assert first_event == "progress"
    assert first_payload["total"] == 6
    assert first_payload["completed"] == 0

    results = of_type(events, "result")
    assert len(results) == 6
    assert len({(r["model"], r["phrase"], r["keyword"]) for r in results}) == 6
    assert results[-1]["progress"] == 100
    assert all(r["scores"]["presence"] == 1 for r in results)

    stats = of_type(events, "stats")
    assert stats[-1]["final"] is True
    assert "competitors" in stats[-1]
    assert stats[0]["totalResults"] == 6

    assert events[-1][0] == "complete"
    assert events[-1][1]["totalResults"] == 6
    assert len(store.results_for_domain(seeded_domain.id)) == 6
    assert len(store.snapshots(seeded_domain.id)) == 1


@pytest.mark.asyncio
async def test_stream_unknown_domain(dispatcher):
    events = await collect(dispatcher, 999)
    assert events == [("error", {"error": "Domain not found"})]


@pytest.mark.asyncio
async def test_stream_without_selected_phrases(dispatcher, store):
    domain = store.create_domain("acme.io")
    events = await collect(dispatcher, domain.id)
    assert events == [("error", {
        "error": "No selected phrases found for this domain. Please go back and select phrases first."
    })]


@pytest.mark.asyncio
async def test_stream_rejects_too_many_queries(store, fake_ai, settings, seeded_domain):
    settings.max_queries = 5
    dispatcher = QueryDispatcher(store, fake_ai, settings)

    events = await collect(dispatcher, seeded_domain.id)

    assert events == [("error", {"error": "Too many queries requested: 6. Maximum allowed is 5."})]
    assert fake_ai.calls == []


@pytest.mark.asyncio
async def test_timeouts_are_not_terminal(store, settings, seeded_domain):
    settings.query_timeout_seconds = 0.05
    fake_ai = FakeAIClient(slow_models=["Gemini 1.5"])
    dispatcher = QueryDispatcher(store, fake_ai, settings)

    events = await collect(dispatcher, seeded_domain.id)

    timeouts = [p for p in of_type(events, "progress") if p.get("timeout")]
    assert len(timeouts) == 2
    assert timeouts[0]["model"] == "Gemini 1.5"
    assert timeouts[0]["error"] == "Query timeout - AI model taking too long to respond"
    assert len(of_type(events, "result")) == 4
    assert events[-1][0] == "complete"
    assert dispatcher.timeouts.count(seeded_domain.id) == 2


@pytest.mark.asyncio
async def test_provider_failures_are_not_terminal(store, settings, seeded_domain):
    dispatcher = QueryDispatcher(store, FakeAIClient(fail_models=["Claude 3"]), settings)

    events = await collect(dispatcher, seeded_domain.id)

    failures = [p for p in of_type(events, "progress") if p.get("error")]
    assert {p["model"] for p in failures} == {"Claude 3"}
    assert {p["phrase"] for p in failures} == {"best project management tool", "acme alternatives"}
    assert len(of_type(events, "result")) == 4
    assert events[-1][0] == "complete"
    assert events[-1][1]["completed"] == 6


@pytest.mark.asyncio
async def test_resume_reemits_stored_results(store, settings, seeded_domain):
    await collect(QueryDispatcher(store, FakeAIClient(), settings), seeded_domain.id)

    second_ai = FakeAIClient()
    events = await collect(QueryDispatcher(store, second_ai, settings), seeded_domain.id)

    assert second_ai.calls == []
    skipped = [p for p in of_type(events, "progress") if p.get("skipped")]
    assert len(skipped) == 2
    assert len(of_type(events, "result")) == 6
    assert events[-1][0] == "complete"


@pytest.mark.asyncio
async def test_partial_resume_only_queries_missing_models(store, settings, seeded_domain):
    await collect(QueryDispatcher(store, FakeAIClient(fail_models=["Gemini 1.5"]), settings), seeded_domain.id)

    second_ai = FakeAIClient()
    events = await collect(QueryDispatcher(store, second_ai, settings), seeded_domain.id)

    assert {model for _, model in second_ai.calls} == {"Gemini 1.5"}
    assert len(of_type(events, "result")) == 6


@pytest.mark.asyncio
async def test_duplicate_phrases_emit_one_result_per_model(dispatcher, store):
    domain = store.create_domain("acme.io")
    keyword = store.add_keyword(domain.id, "crm")
    store.add_phrase(keyword.id, "best crm")
    store.add_phrase(keyword.id, "best crm")

    events = await collect(dispatcher, domain.id)

    results = of_type(events, "result")
    assert len(results) == len(DISPLAY_MODELS)
    assert len({r["model"] for r in results}) == len(DISPLAY_MODELS)


@pytest.mark.asyncio
async def test_closing_stream_releases_slot(dispatcher, seeded_domain):
    stream = dispatcher.stream(seeded_domain.id)
    event, _ = await stream.__anext__()
    assert event == "progress"
    assert dispatcher.active_requests.active(seeded_domain.id) == 1

    await stream.aclose()

    assert dispatcher.active_requests.active(seeded_domain.id) == 0


@pytest.mark.asyncio
async def test_closing_stream_cancels_outstanding_queries(store, settings, seeded_domain):
    ai = HangingAIClient()
    dispatcher = QueryDispatcher(store, ai, settings)
    stream = dispatcher.stream(seeded_domain.id)
    async for event, payload in stream:
        if payload.get("stage") == "querying":
            break
    await asyncio.sleep(0.05)

    await stream.aclose()

    assert ai.calls
    assert ai.cancelled == len(ai.calls)
    assert dispatcher.active_requests.active(seeded_domain.id) == 0


@pytest.mark.asyncio
async def test_stream_with_caller_held_slot_leaves_release_to_caller(dispatcher, seeded_domain):
    dispatcher.acquire(seeded_domain.id)

    events = [event async for event in dispatcher.stream(seeded_domain.id, acquired=True)]

    assert events[-1][0] == "complete"
    assert dispatcher.active_requests.active(seeded_domain.id) == 1


@pytest.mark.asyncio
async def test_fallback_models_shrink_the_total(store, settings):
    settings.query_timeout_seconds = 0.05
    settings.timeout_threshold = 1
    ai = FakeAIClient(slow_models=["Gemini 1.5"])
    dispatcher = QueryDispatcher(store, ai, settings)
    domain = store.create_domain("acme.io")
    keyword = store.add_keyword(domain.id, "crm")
    for i in range(14):
        store.add_phrase(keyword.id, f"best crm {i}")

    events = await collect(dispatcher, domain.id)

    # 8 phrases on all three models, then 6 on the two fallback models
    assert len([call for call in ai.calls if call[1] == "Gemini 1.5"]) == 8
    assert events[0][1]["total"] == 42
    complete = events[-1]
    assert complete[0] == "complete"
    assert complete[1]["totalResults"] == 28
    assert complete[1]["completed"] == complete[1]["total"] == 36
    assert complete[1]["progress"] == 100.0
    for event, payload in events:
        if "completed" in payload:
            assert payload["completed"] <= payload["total"]
    second_batch = {r["model"] for r in of_type(events, "result") if int(r["phrase"].split()[-1]) >= 8}
    assert second_batch == set(FALLBACK_MODELS)


@pytest.mark.asyncio
async def test_unexpected_run_failure_is_terminal_error(dispatcher, seeded_domain, store, monkeypatch):
    def offline(domain_id):
        raise RuntimeError("database offline")

    monkeypatch.setattr(store, "selected_phrases", offline)

    events = await collect(dispatcher, seeded_domain.id)

    assert events == [("error", {"error": "An unexpected error occurred: database offline"})]
    assert dispatcher.active_requests.active(seeded_domain.id) == 0


@pytest.mark.asyncio
async def test_unexpected_query_failure_is_not_terminal(store, settings, seeded_domain):
    dispatcher = QueryDispatcher(store, BrokenAIClient(), settings)

    events = await collect(dispatcher, seeded_domain.id)

    failures = [p for p in of_type(events, "progress") if p.get("error")]
    assert len(failures) == 6
    assert failures[0]["error"] == "connection reset"
    assert of_type(events, "result") == []
    assert events[-1][0] == "complete"
    assert events[-1][1]["progress"] == 100.0


@pytest.mark.asyncio
async def test_analyze_phrase(dispatcher):
    result = await dispatcher.analyze_phrase("best crm", "acme.io", "Claude 3", "crm")

    assert result.model == "Claude 3"
    assert result.scores.presence == 1
    assert result.scores.detection_method == "url"
    assert result.cost == 0.001


@pytest.mark.asyncio
async def test_reanalyze_phrase_replaces_results(dispatcher, seeded_domain, store, fake_ai):
    await collect(dispatcher, seeded_domain.id)
    phrase = store.selected_phrases(seeded_domain.id)[0]
    fake_ai.calls.clear()

    results = await dispatcher.reanalyze_phrase(phrase.id)

    assert sorted(r.model for r in results) == sorted(DISPLAY_MODELS)
    assert len(fake_ai.calls) == len(DISPLAY_MODELS)
    assert len(store.results_for_phrase(phrase.id)) == len(DISPLAY_MODELS)


def test_active_request_tracker_limit():
    tracker = ActiveRequestTracker(limit=2)
    tracker.acquire(1)
    tracker.acquire(1)
    with pytest.raises(ConcurrencyLimitError):
        tracker.acquire(1)
    tracker.acquire(2)

    tracker.release(1)
    tracker.acquire(1)
    assert tracker.active(1) == 2


def test_timeout_tracker_switches_to_fallback_and_resets():
    now = [0.0]
    tracker = TimeoutTracker(threshold=3, reset_seconds=600, clock=lambda: now[0])

    for _ in range(2):
        tracker.record(7)
    assert tracker.models_for(7) == DISPLAY_MODELS

    tracker.record(7)
    assert tracker.models_for(7) == FALLBACK_MODELS
    assert tracker.models_for(8) == DISPLAY_MODELS

    now[0] = 601.0
    assert tracker.count(7) == 0
    assert tracker.models_for(7) == DISPLAY_MODELS
