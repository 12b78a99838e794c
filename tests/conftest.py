"""Shared fixtures for solaudit tests."""

from __future__ import annotations

import asyncio
import copy
from typing import Optional

import pytest

from solaudit.core.agents import MOCK_RESPONSES
from solaudit.core.config import DEFAULT_CONFIG
from solaudit.core.errors import ModelCallFailed
from solaudit.models.provider import ModelResponse

VULNERABLE_BANK = """// SPDX-License-Identifier: MIT
pragma solidity ^0.8.0;

contract VulnerableBank {
    mapping(address => uint256) public balances;

    function deposit() external payable {
        balances[msg.sender] += msg.value;
    }

    function withdraw(uint256 amount) external {
        require(balances[msg.sender] >= amount, "insufficient");
        (bool ok, ) = msg.sender.call{value: amount}("");
        require(ok, "transfer failed");
        balances[msg.sender] -= amount;
    }
}
"""

GOVERNED_TOKEN = """pragma solidity ^0.8.0;

contract GovernedToken {
    struct Proposal {
        uint256 id;
        bool executed;
        bool canceled;
        address proposer;
        uint64 eta;
    }

    address public owner;
    uint256[] public holders;

    event Voted(address voter, uint256 proposal, bool support, uint256 weight, uint256 at);

    function mint(address to, uint256 amount) external {
        require(msg.sender == owner);
    }

    function propose(uint256 id) external {
        emit Voted(msg.sender, id, true, 1, block.number);
    }

    function total() public returns (uint256 sum) {
        for (uint256 i = 0; i < holders.length; i++) {
            sum += holders[i];
        }
    }
}
"""


class FakeProvider:
    """AIProvider stand-in that answers per agent from canned payloads.

    The agent is recognized from its score field in the prompt's JSON shape.
    """

    name = "fake"

    def __init__(
        self,
        responses: Optional[dict] = None,
        failing_models: tuple[str, ...] = (),
        failing_agents: tuple[str, ...] = (),
        delays: Optional[dict[str, float]] = None,
    ):
        self.responses = responses or copy.deepcopy(MOCK_RESPONSES)
        self.failing_models = set(failing_models)
        self.failing_agents = set(failing_agents)
        self.delays = delays or {}
        self.calls: list[tuple[str, str]] = []
        self.prompts: list[str] = []

    @staticmethod
    def agent_for(prompt: str) -> str:
        if "tokenomicsScore" in prompt:
            return "tokenomics"
        if "gasScore" in prompt:
            return "gasOptimizer"
        return "security"

    async def complete(self, system_prompt, user_prompt, model):
        raise AssertionError("FakeProvider.complete should not be called")

    async def call_json(self, prompt, model_id, max_retries=None):
        agent = self.agent_for(prompt)
        self.calls.append((agent, model_id))
        self.prompts.append(prompt)
        if agent in self.delays:
            await asyncio.sleep(self.delays[agent])
        if model_id in self.failing_models or agent in self.failing_agents:
            raise ModelCallFailed(model_id, "simulated outage")
        return ModelResponse(
            model_id=model_id,
            parsed_json=copy.deepcopy(self.responses[agent]),
            tokens_used=100,
            cost=0.001,
        )


@pytest.fixture
def vulnerable_bank() -> str:
    return VULNERABLE_BANK


@pytest.fixture
def governed_token() -> str:
    return GOVERNED_TOKEN


@pytest.fixture
def test_config(tmp_path) -> dict:
    """Default config with zero retry delay and a temp archive dir."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["ai"]["retry_delay_seconds"] = 0
    config["persistence"]["archive_dir"] = str(tmp_path / "audits")
    return config


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def provider_factory():
    """Build a FakeProvider with custom failures or delays."""
    return FakeProvider
