"""Offline provider that answers with bundled mock analyses."""

from __future__ import annotations

import json

from ..models.provider import CompletionResult
from .base import BaseProvider


class DryRunProvider(BaseProvider):
    """Returns a fixed JSON payload per agent rubric; never touches the network."""

    name = "dry-run"

    def calculate_cost(self, model_id: str, tokens: int) -> float:
        return 0.0

    async def complete(
        self, system_prompt: str, user_prompt: str, model: str
    ) -> CompletionResult:
        from ..core.agents import MOCK_RESPONSES

        if "tokenomicsScore" in user_prompt:
            payload = MOCK_RESPONSES["tokenomics"]
        elif "gasScore" in user_prompt:
            payload = MOCK_RESPONSES["gasOptimizer"]
        else:
            payload = MOCK_RESPONSES["security"]
        return CompletionResult(success=True, content=json.dumps(payload), tokens_used=0)
