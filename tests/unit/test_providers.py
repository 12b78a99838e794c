"""Tests for providers/."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from solaudit.core.errors import KnowledgeRetrievalDegraded, ModelCallFailed
from solaudit.models.provider import CompletionResult
from solaudit.providers.base import (
    JSON_SYSTEM_PROMPT,
    BaseProvider,
    get_ai_provider,
    parse_json_object,
)
from solaudit.providers.embeddings import OpenAIEmbedder
from solaudit.providers.openrouter import OpenRouterProvider
from solaudit.utils.sanitize import sanitize_error


class TestGetAIProvider:
    def test_default_is_openrouter(self):
        provider = get_ai_provider({"ai": {}})
        assert provider.name == "openrouter"

    def test_openai_provider(self):
        provider = get_ai_provider({"ai": {"provider": "openai"}})
        assert provider.name == "openai"

    def test_anthropic_provider(self):
        provider = get_ai_provider({"ai": {"provider": "anthropic"}})
        assert provider.name == "anthropic"

    def test_dry_run_wins(self):
        provider = get_ai_provider({"ai": {"provider": "openai"}}, dry_run=True)
        assert provider.name == "dry-run"

    def test_invalid_provider_raises(self):
        with pytest.raises(ValueError, match="Unknown"):
            get_ai_provider({"ai": {"provider": "invalid"}})

    def test_provider_override(self):
        provider = get_ai_provider({"ai": {"provider": "openrouter"}}, provider_override="anthropic")
        assert provider.name == "anthropic"

    def test_common_config_excludes_provider_sections(self):
        provider = get_ai_provider({"ai": {"retry_attempts": 5, "openrouter": {"title": "x"}}})
        assert provider.max_attempts == 5
        assert "openrouter" not in provider.common
        assert provider.config == {"title": "x"}


class TestModelResolution:
    def test_openai_strips_vendor_prefix(self):
        provider = get_ai_provider({"ai": {"provider": "openai"}})
        assert provider.resolve_model("openai/gpt-4-turbo") == "gpt-4-turbo"

    def test_openai_maps_foreign_models_to_configured(self):
        provider = get_ai_provider({"ai": {"provider": "openai", "openai": {"model": "gpt-4o"}}})
        assert provider.resolve_model("google/gemini-pro-1.5") == "gpt-4o"

    def test_anthropic_alias(self):
        provider = get_ai_provider({"ai": {"provider": "anthropic"}})
        assert provider.resolve_model("anthropic/claude-3.5-sonnet") == "claude-3-5-sonnet-20241022"


class TestParseJsonObject:
    def test_plain_object(self):
        assert parse_json_object('{"securityScore": 80}') == {"securityScore": 80}

    def test_fenced_object(self):
        content = '```json\n{"vulnerabilities": []}\n```'
        assert parse_json_object(content) == {"vulnerabilities": []}

    def test_array_rejected(self):
        with pytest.raises(ValueError, match="JSON object"):
            parse_json_object("[1, 2]")

    def test_prose_rejected(self):
        with pytest.raises(ValueError):
            parse_json_object("Here is my analysis: {}")

    def test_none_rejected(self):
        with pytest.raises(ValueError):
            parse_json_object(None)


def _provider(attempts: int = 3, delay: float = 1) -> BaseProvider:
    return BaseProvider(
        provider_config={},
        common_config={
            "retry_attempts": attempts,
            "retry_delay_seconds": delay,
            "pricing": {"anthropic/claude-3.5-sonnet": 0.000015},
        },
    )


class TestCallJson:
    @pytest.mark.asyncio
    async def test_success_on_first_try(self):
        provider = _provider()
        provider.complete = AsyncMock(
            return_value=CompletionResult(success=True, content='{"securityScore": 90}', tokens_used=1000)
        )

        response = await provider.call_json("prompt", "anthropic/claude-3.5-sonnet")

        assert response.parsed_json == {"securityScore": 90}
        assert response.tokens_used == 1000
        assert response.cost == pytest.approx(0.015)
        provider.complete.assert_awaited_once_with(JSON_SYSTEM_PROMPT, "prompt", "anthropic/claude-3.5-sonnet")

    @pytest.mark.asyncio
    async def test_default_price_for_unknown_model(self):
        provider = _provider()
        provider.complete = AsyncMock(
            return_value=CompletionResult(success=True, content="{}", tokens_used=100)
        )
        response = await provider.call_json("prompt", "mystery/model")
        assert response.cost == pytest.approx(0.001)

    @pytest.mark.asyncio
    async def test_retries_with_linear_backoff(self):
        provider = _provider(attempts=3, delay=1)
        provider.complete = AsyncMock(side_effect=[
            CompletionResult(success=False, error="500 Internal Server Error"),
            CompletionResult(success=True, content="not json"),
            CompletionResult(success=True, content='{"gasScore": 70}'),
        ])

        with patch("solaudit.providers.base.asyncio.sleep", new_callable=AsyncMock) as sleep:
            response = await provider.call_json("prompt", "openai/gpt-4-turbo")

        assert response.parsed_json == {"gasScore": 70}
        assert provider.complete.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_raises_after_max_attempts(self):
        provider = _provider(attempts=2, delay=0)
        provider.complete = AsyncMock(
            return_value=CompletionResult(success=False, error="401 Unauthorized")
        )

        with pytest.raises(ModelCallFailed) as exc_info:
            await provider.call_json("prompt", "openai/gpt-4-turbo")

        assert exc_info.value.model_id == "openai/gpt-4-turbo"
        assert "401" in exc_info.value.last_error
        assert provider.complete.await_count == 2

    @pytest.mark.asyncio
    async def test_max_retries_argument_overrides_config(self):
        provider = _provider(attempts=5, delay=0)
        provider.complete = AsyncMock(return_value=CompletionResult(success=True, content="[]"))

        with pytest.raises(ModelCallFailed, match="JSON object"):
            await provider.call_json("prompt", "m", max_retries=1)
        assert provider.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_last_error_is_sanitized(self):
        provider = _provider(attempts=1)
        provider.complete = AsyncMock(
            return_value=CompletionResult(success=False, error="denied for sk-or-v1-abcdef123456")
        )
        with pytest.raises(ModelCallFailed) as exc_info:
            await provider.call_json("prompt", "m")
        assert "abcdef" not in str(exc_info.value)


class TestOpenRouterProvider:
    @pytest.mark.asyncio
    async def test_posts_chat_completion(self, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-v1-testkey")
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["title"] = request.headers["X-Title"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "choices": [{"message": {"content": '{"securityScore": 88}'}}],
                "usage": {"total_tokens": 321},
            })

        provider = OpenRouterProvider(
            {"base_url": "https://openrouter.test/api/v1", "title": "solaudit"},
            {"max_tokens": 4000, "temperature": 0.1},
            transport=httpx.MockTransport(handler),
        )
        result = await provider.complete("system", "user", "anthropic/claude-3.5-sonnet")

        assert result.success
        assert result.content == '{"securityScore": 88}'
        assert result.tokens_used == 321
        assert seen["url"] == "https://openrouter.test/api/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-or-v1-testkey"
        assert seen["title"] == "solaudit"
        assert seen["body"]["model"] == "anthropic/claude-3.5-sonnet"
        assert seen["body"]["messages"][1] == {"role": "user", "content": "user"}

    @pytest.mark.asyncio
    async def test_http_error_is_result_not_exception(self, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-v1-testkey")
        transport = httpx.MockTransport(lambda request: httpx.Response(429, text="rate limited"))
        provider = OpenRouterProvider({}, {}, transport=transport)

        result = await provider.complete("system", "user", "openai/gpt-4-turbo")

        assert not result.success
        assert "429" in result.error

    @pytest.mark.asyncio
    async def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        provider = OpenRouterProvider({}, {})
        result = await provider.complete("system", "user", "openai/gpt-4-turbo")
        assert not result.success
        assert "OPENROUTER_API_KEY" in result.error


class TestDryRunProvider:
    @pytest.mark.asyncio
    async def test_returns_security_payload(self):
        provider = get_ai_provider({"ai": {}}, dry_run=True)
        response = await provider.call_json('{"securityScore": 85}', "any/model")
        assert "vulnerabilities" in response.parsed_json
        assert response.cost == 0

    @pytest.mark.asyncio
    async def test_picks_payload_by_shape(self):
        provider = get_ai_provider({"ai": {}}, dry_run=True)
        gas = await provider.call_json('{"gasScore": 75}', "any/model")
        tokenomics = await provider.call_json('{"tokenomicsScore": 75}', "any/model")
        assert "optimizations" in gas.parsed_json
        assert "tokenomicsFindings" in tokenomics.parsed_json


class TestOpenAIEmbedder:
    @pytest.mark.asyncio
    async def test_returns_vector(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]})
        )
        embedder = OpenAIEmbedder(transport=transport)
        assert await embedder.embed("reentrancy") == [0.1, 0.2, 0.3]

    @pytest.mark.asyncio
    async def test_missing_key_degrades(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(KnowledgeRetrievalDegraded):
            await OpenAIEmbedder().embed("reentrancy")

    @pytest.mark.asyncio
    async def test_http_error_degrades(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        with pytest.raises(KnowledgeRetrievalDegraded, match="500"):
            await OpenAIEmbedder(transport=transport).embed("reentrancy")


class TestSanitizeError:
    def test_redacts_openrouter_key(self):
        assert "[REDACTED_KEY]" in sanitize_error("key sk-or-v1-abc123def456")

    def test_redacts_bearer(self):
        assert "secret" not in sanitize_error("Authorization: Bearer secret")

    def test_empty_passthrough(self):
        assert sanitize_error("") == ""

    def test_redacts_private_key(self):
        key = "0x" + "ab" * 32
        assert sanitize_error(f"signer {key} rejected") == "signer [REDACTED_PRIVATE_KEY] rejected"

    def test_redacts_rpc_project_id(self):
        message = sanitize_error("connect https://mainnet.infura.io/v3/0123456789abcdef0123 failed")
        assert message == "connect https://mainnet.infura.io/v3/[REDACTED] failed"

    def test_redacts_api_key_header_any_case(self):
        assert "hunter2" not in sanitize_error("X-Api-Key: hunter2")
