"""Tests for core/agents.py."""

from __future__ import annotations

import pytest

from solaudit.core.agents import (
    GasOptimizerAgent,
    SecurityAgent,
    TokenomicsAgent,
    average_score,
    build_agents,
    calculate_risk_level,
    load_agent_instructions,
)
from solaudit.core.errors import NoValidAnalysis
from solaudit.models.agent import AgentKind, AgentOptions, AgentResult
from solaudit.models.finding import Finding, FindingKind, Severity


def _override_field(provider, model, findings_key, field, value):
    """Make one model's reply carry `value` in every finding's `field`."""
    original = provider.call_json

    async def call_json(prompt, model_id, max_retries=None):
        response = await original(prompt, model_id, max_retries)
        if model_id == model:
            for entry in response.parsed_json[findings_key]:
                entry[field] = value
        return response

    provider.call_json = call_json
    return provider


class TestAverageScore:
    def test_default_without_numbers(self):
        assert average_score([]) == 50
        assert average_score([None, "80", True]) == 50

    def test_mean_rounded_half_up(self):
        assert average_score([45, 78]) == 62
        assert average_score([62.5]) == 63

    def test_clamped(self):
        assert average_score([150]) == 100
        assert average_score([-5]) == 0

    def test_ignores_non_numeric(self):
        assert average_score(["80", True, None, 60]) == 60
        assert average_score([float("nan"), 70]) == 70


class TestCalculateRiskLevel:
    def _finding(self, severity):
        return Finding(kind=FindingKind.VULNERABILITY, category="x", severity=severity)

    def test_by_score(self):
        assert calculate_risk_level([], 80) == "low"
        assert calculate_risk_level([], 65) == "medium"
        assert calculate_risk_level([], 45) == "high"
        assert calculate_risk_level([], 25) == "critical"

    def test_by_findings(self):
        assert calculate_risk_level([self._finding(Severity.CRITICAL)], 95) == "critical"
        assert calculate_risk_level([self._finding(Severity.HIGH)] * 3, 95) == "high"
        assert calculate_risk_level([self._finding(Severity.HIGH)], 95) == "medium"


class TestLoadAgentInstructions:
    @pytest.mark.parametrize("kind", list(AgentKind))
    def test_bundled_rubrics(self, kind):
        assert load_agent_instructions(kind).strip()


class TestSecurityAgent:
    @pytest.mark.asyncio
    async def test_merges_models(self, fake_provider, vulnerable_bank):
        agent = SecurityAgent(fake_provider, ["m1", "m2"])
        result = await agent.analyze(vulnerable_bank)

        assert result.agent == AgentKind.SECURITY
        assert result.name == "SecurityAgent"
        assert [f.category for f in result.findings] == ["reentrancy", "accessControl"]
        assert result.findings[0].reported_by == ["security:m1", "security:m2"]
        assert result.score == 45
        assert result.risk_level == "critical"
        assert result.models_used == ["m1", "m2"]
        assert result.tokens_used == 200
        assert result.summary.critical == 1
        assert result.extras["vulnerability_count"] == 2
        assert result.extras["static_findings"] == len(result.static_analysis.findings)
        assert result.static_analysis.findings

    @pytest.mark.asyncio
    async def test_partial_model_failure_tolerated(self, provider_factory, vulnerable_bank):
        provider = provider_factory(failing_models=("m2",))
        result = await SecurityAgent(provider, ["m1", "m2"]).analyze(vulnerable_bank)

        assert result.models_used == ["m1"]
        assert result.findings[0].reported_by == ["security:m1"]

    @pytest.mark.asyncio
    async def test_non_finite_confidence_from_one_model(self, fake_provider, vulnerable_bank):
        provider = _override_field(fake_provider, "m2", "vulnerabilities", "confidence", float("nan"))
        result = await SecurityAgent(provider, ["m1", "m2"]).analyze(vulnerable_bank)

        assert result.models_used == ["m1", "m2"]
        assert result.findings[0].confidence == 0.9
        assert result.findings[0].reported_by == ["security:m1", "security:m2"]

    @pytest.mark.asyncio
    async def test_all_models_failing(self, provider_factory, vulnerable_bank):
        provider = provider_factory(failing_models=("m1", "m2"))
        with pytest.raises(NoValidAnalysis) as exc_info:
            await SecurityAgent(provider, ["m1", "m2"]).analyze(vulnerable_bank)
        assert exc_info.value.agent == "security"
        assert len(exc_info.value.errors) == 2

    @pytest.mark.asyncio
    async def test_every_model_called(self, fake_provider, vulnerable_bank):
        await SecurityAgent(fake_provider, ["m1", "m2", "m3"]).analyze(vulnerable_bank)
        assert sorted(model for _, model in fake_provider.calls) == ["m1", "m2", "m3"]

    @pytest.mark.asyncio
    async def test_prompt_shape(self, fake_provider, vulnerable_bank):
        await SecurityAgent(fake_provider, ["m1"]).analyze(vulnerable_bank)
        [prompt] = fake_provider.prompts

        assert "CONTRACT CODE" in prompt
        assert "STATIC ANALYSIS FINDINGS" in prompt
        assert "RESPOND ONLY WITH VALID JSON" in prompt
        assert '"securityScore"' in prompt
        assert "gasScore" not in prompt
        assert "tokenomicsScore" not in prompt
        assert "PREVIOUS AGENT RESULTS" not in prompt

    @pytest.mark.asyncio
    async def test_unparseable_score_defaults(self, provider_factory, vulnerable_bank):
        provider = provider_factory(responses={"security": {"vulnerabilities": [], "securityScore": "n/a"}})
        result = await SecurityAgent(provider, ["m1"]).analyze(vulnerable_bank)
        assert result.score == 50
        assert result.findings == []


class TestGasOptimizerAgent:
    @pytest.mark.asyncio
    async def test_total_savings(self, fake_provider, governed_token):
        result = await GasOptimizerAgent(fake_provider, ["m1"]).analyze(governed_token)

        assert result.score == 78
        assert result.extras["total_savings"] == 2400
        assert [f.gas_savings for f in result.findings] == [2100, 300]
        assert "total_potential_savings" in result.static_analysis.estimates

    @pytest.mark.asyncio
    async def test_infinite_savings_from_one_model(self, fake_provider, governed_token):
        provider = _override_field(fake_provider, "m2", "optimizations", "gasSavings", float("inf"))
        result = await GasOptimizerAgent(provider, ["m1", "m2"]).analyze(governed_token)

        assert result.models_used == ["m1", "m2"]
        assert result.extras["total_savings"] == 2400


class TestTokenomicsAgent:
    @pytest.mark.asyncio
    async def test_overall_risk(self, fake_provider, governed_token):
        result = await TokenomicsAgent(fake_provider, ["m1"]).analyze(governed_token)
        assert result.score == 65
        assert result.extras["overall_risk"] == "medium"
        assert result.findings[0].kind == FindingKind.TOKENOMICS

    @pytest.mark.asyncio
    async def test_previous_results_in_prompt(self, fake_provider, governed_token):
        previous = AgentResult(agent=AgentKind.SECURITY, name="SecurityAgent", score=45, risk_level="critical")
        await TokenomicsAgent(fake_provider, ["m1"]).analyze(
            governed_token, AgentOptions(previous_results=[previous])
        )
        [prompt] = fake_provider.prompts
        assert "PREVIOUS AGENT RESULTS" in prompt
        assert "SecurityAgent: score 45" in prompt


class TestBuildAgents:
    def test_models_from_config(self, test_config, fake_provider):
        agents = build_agents(test_config, fake_provider)

        assert set(agents) == set(AgentKind)
        assert len(agents[AgentKind.SECURITY].models) == 3
        assert agents[AgentKind.GAS_OPTIMIZER].models == [
            "anthropic/claude-3.5-sonnet", "openai/gpt-4-turbo",
        ]
        assert agents[AgentKind.TOKENOMICS].max_retries == 3
