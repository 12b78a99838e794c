"""OpenAI API provider."""

from __future__ import annotations

import os
from typing import Optional

import httpx

from ..models.provider import CompletionResult
from ..utils.sanitize import sanitize_error
from .base import BaseProvider


class OpenAIProvider(BaseProvider):
    name = "openai"
    API_URL = "https://api.openai.com/v1/chat/completions"

    def _get_api_key(self) -> Optional[str]:
        env_var = self.config.get("api_key_env", "OPENAI_API_KEY")
        return os.environ.get(env_var)

    def resolve_model(self, model_id: str) -> str:
        # Routed ids look like "openai/gpt-4-turbo"
        if model_id.startswith("openai/"):
            return model_id.split("/", 1)[1]
        if "/" in model_id:
            # Another vendor's model: use the configured OpenAI model instead
            return self.config.get("model", "gpt-4-turbo")
        return model_id

    async def complete(
        self, system_prompt: str, user_prompt: str, model: str
    ) -> CompletionResult:
        api_key = self._get_api_key()
        if not api_key:
            env_var = self.config.get("api_key_env", "OPENAI_API_KEY")
            return CompletionResult(
                success=False,
                error=f"API key not found in environment variable: {env_var}",
            )

        body = {
            "model": self.resolve_model(model),
            "max_tokens": self._max_tokens(),
            "temperature": self.common.get("temperature", 0.1),
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }

        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with self._client() as client:
                response = await client.post(
                    self.config.get("endpoint") or self.API_URL, json=body, headers=headers
                )
                response.raise_for_status()
                data = response.json()

            content = data["choices"][0]["message"]["content"]
            usage = data.get("usage") or {}
            tokens = usage.get("total_tokens") or (
                usage.get("prompt_tokens", 0) + usage.get("completion_tokens", 0)
            )
            return CompletionResult(success=True, content=content, tokens_used=int(tokens))
        except httpx.HTTPStatusError as e:
            return self._http_error(e)
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            return CompletionResult(success=False, error=sanitize_error(str(e) or type(e).__name__))
