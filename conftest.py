"""Shared fixtures: fake AI client, fresh store, test settings."""
import asyncio

import pytest

from ai_client import AI_MODELS
from config import Settings
from dispatcher import QueryDispatcher
from query_types import ProviderError, ProviderResponse
from store import reset_store

DEFAULT_ANSWER = (
    "For {phrase}, the best option is https://acme.io because teams love it. "
    "Other popular tools include Trello and Asana."
)


class FakeAIClient:
    """Stands in for AIClient; answers every phrase from a template."""

    def __init__(self, answers=None, fail_models=(), slow_models=(), delay=0.0):
        self.answers = answers or {}
        self.fail_models = set(fail_models)
        self.slow_models = set(slow_models)
        self.delay = delay
        self.calls = []

    async def query(self, phrase, model):
        self.calls.append((phrase, model))
        if model not in AI_MODELS:
            raise ProviderError(f"Unknown model: {model}", model=model)
        if model in self.fail_models:
            raise ProviderError(f"{model} request failed: upstream 500", model=model)
        if model in self.slow_models:
            await asyncio.sleep(5)
        if self.delay:
            await asyncio.sleep(self.delay)
        text = self.answers.get(model, DEFAULT_ANSWER).format(phrase=phrase)
        return ProviderResponse(response=text, cost=0.001, sources=[], model_id=AI_MODELS[model]["model"])

    async def complete_json(self, system_prompt, prompt, model=None):
        raise ProviderError("AI analysis disabled in tests")


@pytest.fixture
def settings():
    return Settings(
        openrouter_api_key="test-key",
        query_timeout_seconds=2.0,
        batch_delay_seconds=0,
    )


@pytest.fixture
def store():
    return reset_store()


@pytest.fixture
def fake_ai():
    return FakeAIClient()


@pytest.fixture
def dispatcher(store, fake_ai, settings):
    return QueryDispatcher(store, fake_ai, settings)


@pytest.fixture
def seeded_domain(store):
    """acme.io with one keyword and two selected phrases."""
    domain = store.create_domain("acme.io", context="Project management software")
    keyword = store.add_keyword(domain.id, "project management")
    store.add_phrase(keyword.id, "best project management tool")
    store.add_phrase(keyword.id, "acme alternatives")
    return domain


@pytest.fixture
def api(dispatcher):
    """Gateway app wired to the test dispatcher."""
    from main import app
    from ai_queries_service import app as ai_queries_app, get_dispatcher

    ai_queries_app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    yield app
    ai_queries_app.dependency_overrides.clear()
