"""AI provider data models."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class CompletionResult(BaseModel):
    success: bool
    content: Optional[str] = None
    tokens_used: int = 0
    error: Optional[str] = None


class ModelResponse(BaseModel):
    """A successful, JSON-parsed reply from one model."""

    model_id: str
    parsed_json: dict
    tokens_used: int = 0
    cost: float = 0.0
