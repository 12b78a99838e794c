"""AI provider abstraction with retry logic and the strict JSON contract."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Optional, Protocol, runtime_checkable

import httpx

from ..core.errors import ModelCallFailed
from ..models.provider import CompletionResult, ModelResponse
from ..utils.sanitize import sanitize_error

logger = logging.getLogger(__name__)

JSON_SYSTEM_PROMPT = (
    "You are an elite smart contract auditor. Respond only with valid JSON."
)

DEFAULT_TOKEN_PRICE = 0.00001

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n([\s\S]*?)\n?\s*```\s*$")


@runtime_checkable
class AIProvider(Protocol):
    """Protocol that all AI providers must implement."""

    name: str

    async def complete(
        self, system_prompt: str, user_prompt: str, model: str
    ) -> CompletionResult: ...

    async def call_json(
        self, prompt: str, model_id: str, max_retries: Optional[int] = None
    ) -> ModelResponse: ...


def parse_json_object(content: Optional[str]) -> dict:
    """Parse a model reply that must be exactly one JSON object.

    A reply wrapped in a single Markdown code fence is unwrapped first.
    Raises ValueError for anything else.
    """
    if content is None:
        raise ValueError("Empty response content")
    text = content.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1).strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON response: {e.msg}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


class BaseProvider:
    """Base class with shared retry logic and config handling."""

    name: str = "base"
    API_URL: str = ""

    def __init__(
        self,
        provider_config: dict,
        common_config: dict,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = provider_config
        self.common = common_config
        self.max_attempts = common_config.get("retry_attempts", 3)
        self.retry_delay = common_config.get("retry_delay_seconds", 1)
        self.pricing: dict = common_config.get("pricing") or {}
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        timeout = self.common.get("timeout_seconds", 60)
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    def _max_tokens(self) -> int:
        return self.config.get("max_tokens") or self.common.get("max_tokens", 4000)

    def resolve_model(self, model_id: str) -> str:
        """Map a vendor-prefixed model id to the id this provider expects."""
        return model_id

    def calculate_cost(self, model_id: str, tokens: int) -> float:
        return float(self.pricing.get(model_id, DEFAULT_TOKEN_PRICE)) * tokens

    async def complete(
        self, system_prompt: str, user_prompt: str, model: str
    ) -> CompletionResult:
        raise NotImplementedError

    async def call_json(
        self, prompt: str, model_id: str, max_retries: Optional[int] = None
    ) -> ModelResponse:
        """Ask one model for a JSON object, retrying with linear backoff.

        Each attempt is a single complete() call. Transport failures and
        unparseable replies are both retried; after the last attempt
        ModelCallFailed carries the final error.
        """
        attempts = max_retries or self.max_attempts
        last_error: Optional[str] = None

        for attempt in range(1, attempts + 1):
            result = await self.complete(JSON_SYSTEM_PROMPT, prompt, model_id)

            if result.success:
                try:
                    parsed = parse_json_object(result.content)
                except ValueError as e:
                    last_error = str(e)
                else:
                    return ModelResponse(
                        model_id=model_id,
                        parsed_json=parsed,
                        tokens_used=result.tokens_used,
                        cost=self.calculate_cost(model_id, result.tokens_used),
                    )
            else:
                last_error = sanitize_error(result.error or "unknown error")

            logger.warning(
                "Attempt %d/%d failed for model %s: %s",
                attempt, attempts, model_id, last_error,
            )
            if attempt < attempts:
                await asyncio.sleep(attempt * self.retry_delay)

        raise ModelCallFailed(model_id, last_error)

    @staticmethod
    def _http_error(e: httpx.HTTPStatusError) -> CompletionResult:
        error_body = ""
        try:
            error_body = e.response.text
        except httpx.ResponseNotRead:
            pass
        return CompletionResult(
            success=False,
            error=sanitize_error(f"{e.response.status_code} | {error_body}"),
        )


PROVIDER_NAMES = ("openrouter", "openai", "anthropic")


def get_ai_provider(
    config: dict,
    provider_override: Optional[str] = None,
    dry_run: bool = False,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BaseProvider:
    """Factory function to create the configured AI provider."""
    ai_config = config.get("ai", {})
    provider_name = provider_override or ai_config.get("provider", "openrouter")

    provider_config = dict(ai_config.get(provider_name, {}))

    # Common config is the ai section minus provider sub-configs
    common_config = {
        k: v for k, v in ai_config.items() if k not in PROVIDER_NAMES
    }

    if dry_run:
        from .dry_run import DryRunProvider
        return DryRunProvider(provider_config, common_config)

    if provider_name == "openrouter":
        from .openrouter import OpenRouterProvider
        return OpenRouterProvider(provider_config, common_config, transport=transport)
    elif provider_name == "openai":
        from .openai_provider import OpenAIProvider
        return OpenAIProvider(provider_config, common_config, transport=transport)
    elif provider_name == "anthropic":
        from .anthropic import AnthropicProvider
        return AnthropicProvider(provider_config, common_config, transport=transport)
    else:
        raise ValueError(f"Unknown AI provider: {provider_name}")
