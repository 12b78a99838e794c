"""Anthropic Claude messages API provider."""

from __future__ import annotations

import os
from typing import Optional

import httpx

from ..models.provider import CompletionResult
from ..utils.sanitize import sanitize_error
from .base import BaseProvider

# Routed ids to dated Anthropic model names
MODEL_ALIASES = {
    "claude-3.5-sonnet": "claude-3-5-sonnet-20241022",
}


class AnthropicProvider(BaseProvider):
    name = "anthropic"
    API_URL = "https://api.anthropic.com/v1/messages"

    def _get_api_key(self) -> Optional[str]:
        env_var = self.config.get("api_key_env", "ANTHROPIC_API_KEY")
        return os.environ.get(env_var)

    def resolve_model(self, model_id: str) -> str:
        if model_id.startswith("anthropic/"):
            bare = model_id.split("/", 1)[1]
            return MODEL_ALIASES.get(bare, bare)
        if "/" in model_id:
            # Another vendor's model: use the configured Claude model instead
            return self.config.get("model", "claude-3-5-sonnet-20241022")
        return model_id

    async def complete(
        self, system_prompt: str, user_prompt: str, model: str
    ) -> CompletionResult:
        api_key = self._get_api_key()
        if not api_key:
            env_var = self.config.get("api_key_env", "ANTHROPIC_API_KEY")
            return CompletionResult(
                success=False,
                error=f"API key not found in environment variable: {env_var}",
            )

        body = {
            "model": self.resolve_model(model),
            "max_tokens": self._max_tokens(),
            "temperature": self.common.get("temperature", 0.1),
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
        }

        headers = {
            "x-api-key": api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }

        try:
            async with self._client() as client:
                response = await client.post(self.API_URL, json=body, headers=headers)
                response.raise_for_status()
                data = response.json()

            content = None
            for block in data.get("content", []):
                if block.get("type") == "text":
                    content = block.get("text")
                    break

            usage = data.get("usage") or {}
            tokens = usage.get("input_tokens", 0) + usage.get("output_tokens", 0)
            return CompletionResult(success=True, content=content, tokens_used=int(tokens))
        except httpx.HTTPStatusError as e:
            return self._http_error(e)
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            return CompletionResult(success=False, error=sanitize_error(str(e) or type(e).__name__))
