"""
Unified AI Client - one OpenAI-compatible endpoint (OpenRouter) for every display model.
"""
import re
import json
import time
import logging
from typing import List, Dict, Any, Optional

from openai import AsyncOpenAI, APIError, APITimeoutError

from config import get_settings
from query_types import ProviderError, ProviderResponse, QueryTimeoutError

logger = logging.getLogger(__name__)

# Display models shown to users, routed via OpenRouter
AI_MODELS = {
    "GPT-4o": {
        "model": "openai/gpt-4o",
        "input_cost_per_token": 0.000005,
        "output_cost_per_token": 0.000015,
    },
    "Claude 3": {
        "model": "anthropic/claude-3-haiku",
        "input_cost_per_token": 0.00000025,
        "output_cost_per_token": 0.00000125,
    },
    "Gemini 1.5": {
        "model": "google/gemini-pro-1.5",
        "input_cost_per_token": 0.00000125,
        "output_cost_per_token": 0.000005,
    },
}

DISPLAY_MODELS = list(AI_MODELS.keys())

# Used once a domain keeps timing out
FALLBACK_MODELS = ["GPT-4o", "Claude 3"]

ANALYSIS_MODEL = "openai/gpt-4o"

SYSTEM_PROMPT = """You are a helpful AI assistant answering questions the way a modern chat assistant does.

- Provide comprehensive, well-researched responses
- Structure responses with clear headings and bullet points when appropriate
- When discussing tools, software, or services, name specific options and compare them
- Cite sources (URLs) when making factual claims
- Format responses in markdown"""

URL_PATTERN = re.compile(r'https?://[^\s)\]"\'>]+')


def extract_sources(text: str, limit: int = 8) -> List[str]:
    """Unique URLs in order of appearance."""
    seen = []
    for url in URL_PATTERN.findall(text or ""):
        url = url.rstrip(".,;:")
        if url not in seen:
            seen.append(url)
    return seen[:limit]


def estimate_cost(model: str, prompt: str, response: str) -> float:
    """Rough cost from character counts (~4 chars per token)."""
    config = AI_MODELS.get(model, AI_MODELS["GPT-4o"])
    input_tokens = -(-len(prompt) // 4)
    output_tokens = -(-len(response) // 4)
    return input_tokens * config["input_cost_per_token"] + output_tokens * config["output_cost_per_token"]


def extract_json_from_response(text: str) -> Dict[str, Any]:
    """Parse a JSON object out of a model reply, tolerating markdown fences."""
    cleaned = (text or "").strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    if cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    match = re.search(r'\{[\s\S]*\}', cleaned)
    if not match:
        raise ValueError("No JSON object in AI response")
    return json.loads(match.group(0))


class AIClient:
    """Chat completions against an OpenAI-compatible router."""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, timeout: Optional[float] = None):
        settings = get_settings()
        self.api_key = api_key or settings.openrouter_api_key
        if not self.api_key:
            raise ValueError("OPENROUTER_API_KEY not found in environment")
        self.timeout = timeout or settings.query_timeout_seconds
        self.client = AsyncOpenAI(
            api_key=self.api_key,
            base_url=base_url or settings.openrouter_base_url,
            timeout=self.timeout,
            max_retries=1,
        )
        logger.info(f"AIClient initialized for {len(AI_MODELS)} models")

    async def complete(
        self,
        messages: List[Dict[str, str]],
        model: str,
        temperature: float = 0.1,
        max_tokens: int = 2000,
        **kwargs
    ) -> Dict[str, Any]:
        """Single completion, returned as a plain dict with content and usage."""
        try:
            completion = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs
            )
        except APITimeoutError as e:
            raise QueryTimeoutError(model=model) from e
        except APIError as e:
            raise ProviderError(f"{model} request failed: {e}", model=model) from e

        content = ""
        if completion.choices:
            content = completion.choices[0].message.content or ""
        usage = completion.usage
        return {
            "content": content,
            "model": completion.model or model,
            "total_tokens": usage.total_tokens if usage else 0,
        }

    async def query(self, phrase: str, model: str) -> ProviderResponse:
        """Ask one display model a user phrase."""
        if model not in AI_MODELS:
            raise ProviderError(f"Unknown model: {model}", model=model)

        model_id = AI_MODELS[model]["model"]
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": phrase},
        ]
        start = time.time()
        result = await self.complete(messages, model_id, temperature=0.1, max_tokens=2000)
        text = result["content"]
        if not text:
            raise ProviderError(f"No response from {model}", model=model)

        logger.debug(f"{model} answered '{phrase[:40]}' in {time.time() - start:.2f}s")
        return ProviderResponse(
            response=text,
            cost=estimate_cost(model, SYSTEM_PROMPT + phrase, text),
            sources=extract_sources(text),
            model_id=model_id,
            tokens=result["total_tokens"],
        )

    async def complete_json(self, system_prompt: str, prompt: str, model: str = ANALYSIS_MODEL) -> Dict[str, Any]:
        """Deterministic completion parsed as JSON."""
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": prompt},
        ]
        result = await self.complete(messages, model, temperature=0, max_tokens=1200)
        return extract_json_from_response(result["content"])


# Initialize AI Client (lazy initialization)
_ai_client = None

def get_ai_client() -> AIClient:
    """Get AI client instance (lazy initialization)."""
    global _ai_client
    if _ai_client is None:
        _ai_client = AIClient()
    return _ai_client
