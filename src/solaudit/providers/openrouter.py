"""OpenRouter chat-completions provider (default)."""

from __future__ import annotations

import os
from typing import Optional

import httpx

from ..models.provider import CompletionResult
from ..utils.sanitize import sanitize_error
from .base import BaseProvider


class OpenRouterProvider(BaseProvider):
    name = "openrouter"
    API_URL = "https://openrouter.ai/api/v1"

    def _get_api_key(self) -> Optional[str]:
        env_var = self.config.get("api_key_env", "OPENROUTER_API_KEY")
        return os.environ.get(env_var)

    def _base_url(self) -> str:
        return (self.config.get("base_url") or self.API_URL).rstrip("/")

    async def complete(
        self, system_prompt: str, user_prompt: str, model: str
    ) -> CompletionResult:
        api_key = self._get_api_key()
        if not api_key:
            env_var = self.config.get("api_key_env", "OPENROUTER_API_KEY")
            return CompletionResult(
                success=False,
                error=f"API key not found in environment variable: {env_var}",
            )

        body = {
            "model": self.resolve_model(model),
            "max_tokens": self._max_tokens(),
            "temperature": self.common.get("temperature", 0.1),
            "top_p": self.common.get("top_p", 0.9),
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }

        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.config.get("referer", "https://github.com/solaudit/solaudit"),
            "X-Title": self.config.get("title", "solaudit"),
        }

        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self._base_url()}/chat/completions", json=body, headers=headers
                )
                response.raise_for_status()
                data = response.json()

            content = data["choices"][0]["message"]["content"]
            usage = data.get("usage") or {}
            return CompletionResult(
                success=True,
                content=content,
                tokens_used=int(usage.get("total_tokens", 0) or 0),
            )
        except httpx.HTTPStatusError as e:
            return self._http_error(e)
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            return CompletionResult(success=False, error=sanitize_error(str(e) or type(e).__name__))
