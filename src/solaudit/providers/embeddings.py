"""Embedding clients for the knowledge store."""

from __future__ import annotations

import os
from typing import Optional

import httpx

from ..core.errors import KnowledgeRetrievalDegraded
from ..utils.sanitize import sanitize_error


class OpenAIEmbedder:
    """Calls the OpenAI embeddings endpoint and returns one vector per text."""

    API_URL = "https://api.openai.com/v1/embeddings"

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key_env: str = "OPENAI_API_KEY",
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.model = model
        self.api_key_env = api_key_env
        self.timeout = timeout
        self.transport = transport

    async def embed(self, text: str) -> list[float]:
        api_key = os.environ.get(self.api_key_env)
        if not api_key:
            raise KnowledgeRetrievalDegraded(
                f"API key not found in environment variable: {self.api_key_env}"
            )

        body = {"model": self.model, "input": text, "encoding_format": "float"}
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.API_URL, json=body, headers=headers)
                response.raise_for_status()
                data = response.json()
            return [float(x) for x in data["data"][0]["embedding"]]
        except httpx.HTTPStatusError as e:
            raise KnowledgeRetrievalDegraded(
                sanitize_error(f"Embedding request failed: {e.response.status_code}")
            ) from e
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            raise KnowledgeRetrievalDegraded(
                sanitize_error(f"Embedding request failed: {e}")
            ) from e
