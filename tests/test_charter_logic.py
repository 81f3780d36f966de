"""Tests for the LiteLLM-backed charter logic."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import litellm
import pytest

from governance_heartbeat.charters.base import CharterContext, CharterLogicError, LLMCharterLogic
from governance_heartbeat.charters.registry import FOUNDING_CHARTERS
from governance_heartbeat.governance.budget import BudgetExceeded, RunBudget
from governance_heartbeat.protocol.schema import ResourceLimits

LIMITS = ResourceLimits(
    max_tokens_per_charter_run=1000,
    max_tool_calls_per_charter_run=5,
    max_brain_spawns_per_hour=2,
)


def _completion(content: str, total_tokens: int = 120):
    return SimpleNamespace(
        usage=SimpleNamespace(total_tokens=total_tokens),
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
    )


class TestLLMCharterLogic:

    def setup_method(self):
        self.logic = LLMCharterLogic(FOUNDING_CHARTERS["SUSTAINABILITY"], model="test/model")
        self.context = CharterContext(
            charter=self.logic.definition, limits=LIMITS, budget=RunBudget(LIMITS)
        )

    def _patch(self, monkeypatch, response):
        calls = []

        async def fake_acompletion(**kwargs):
            calls.append(kwargs)
            return response

        monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
        return calls

    def test_parses_fenced_json(self, monkeypatch):
        payload = {
            "summary": "spend is trending up",
            "decision": "ran",
            "alternatives_considered": ["cut model tier", "keep current tier"],
            "chosen": "cut model tier",
            "rationale": "tokens near ceiling",
        }
        calls = self._patch(monkeypatch, _completion(f"```json\n{json.dumps(payload)}\n```"))

        result = asyncio.run(self.logic.decide(self.context))
        assert result.made_real_choice
        assert result.chosen == "cut model tier"
        assert result.usage.tokens == 120
        assert result.usage.brain_spawns == 1
        assert calls[0]["model"] == "test/model"
        assert "SUSTAINABILITY" in calls[0]["messages"][0]["content"]

    def test_unusable_output(self, monkeypatch):
        self._patch(monkeypatch, _completion("I think we should cut costs."))
        with pytest.raises(CharterLogicError):
            asyncio.run(self.logic.decide(self.context))

    def test_tokens_charged_against_ceiling(self, monkeypatch):
        self._patch(monkeypatch, _completion('{"summary": "x"}', total_tokens=5000))
        with pytest.raises(BudgetExceeded):
            asyncio.run(self.logic.decide(self.context))

    def test_choice_outside_alternatives_is_unusable(self, monkeypatch):
        payload = {"summary": "x", "alternatives_considered": ["a", "b"], "chosen": "c"}
        self._patch(monkeypatch, _completion(json.dumps(payload)))
        with pytest.raises(CharterLogicError):
            asyncio.run(self.logic.decide(self.context))
