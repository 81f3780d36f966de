"""
Charter Logic — the decision-making collaborator a heartbeat runner invokes.

A charter's judgment is opaque to the protocol. The runner hands it a
CharterContext (gate ceilings, a RunBudget meter, prior heartbeats) and
receives a structured CharterResult. Whether a real choice was made is
part of that structure: two or more `alternatives_considered` means an
EDO is recorded, anything less means the run was mechanical.

LLMCharterLogic implements the contract with LiteLLM. It asks the model for
a JSON object matching CharterResult and charges every completion's token
usage to the run budget.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import litellm
from pydantic import ValidationError

from governance_heartbeat.governance.budget import RunBudget
from governance_heartbeat.protocol.schema import (
    CharterDefinition,
    CharterResult,
    Heartbeat,
    ResourceLimits,
)

logger = logging.getLogger(__name__)


class CharterLogicError(Exception):
    """Raised when charter logic cannot produce a usable result."""
    pass


@dataclass
class CharterContext:
    """Everything a charter's decision logic receives for one run."""

    charter: CharterDefinition
    limits: ResourceLimits
    budget: RunBudget
    history: list[Heartbeat] = field(default_factory=list)

    @property
    def charter_id(self) -> str:
        return self.charter.id


class CharterLogic(ABC):
    """Base class for every charter's decision logic."""

    def __init__(self, definition: CharterDefinition) -> None:
        self.definition = definition

    @property
    def charter_id(self) -> str:
        return self.definition.id

    @abstractmethod
    async def decide(self, context: CharterContext) -> CharterResult:
        """
        Run the charter's judgment for one cycle.

        Implementations must charge their resource use to `context.budget`
        and let BudgetExceeded propagate. The call may be slow; the runner
        enforces the cycle timeout around it.
        """
        ...


RESULT_CONTRACT = """Respond with a single JSON object and nothing else:
{
  "summary": "<one paragraph of evidence for this cycle>",
  "decision": "ran" | "no-op",
  "alternatives_considered": ["<option>", ...],
  "chosen": "<the option taken, or null>",
  "rationale": "<why the chosen option won>"
}
List alternatives only when you genuinely weighed two or more options.
For routine work (e.g. "run the monitor") return an empty list."""


class LLMCharterLogic(CharterLogic):
    """Charter logic backed by a LiteLLM completion model."""

    def __init__(
        self,
        definition: CharterDefinition,
        model: str,
        temperature: float = 0.2,
    ) -> None:
        super().__init__(definition)
        self.model = model
        self.temperature = temperature

    def _build_messages(self, context: CharterContext) -> list[dict[str, str]]:
        limits = context.limits
        history = [
            {
                "timestamp": hb.timestamp.isoformat(),
                "decision": hb.decision.value,
                "outcome": hb.outcome.value,
                "summary": hb.summary,
            }
            for hb in context.history
        ]
        system = f"""You are the {self.definition.title} charter ({self.definition.id}).

{self.definition.description}

RESOURCE CEILINGS FOR THIS RUN:
  - tokens: {limits.max_tokens_per_charter_run}
  - tool calls: {limits.max_tool_calls_per_charter_run}
  - brain spawns per hour: {limits.max_brain_spawns_per_hour}

{self.definition.prompt}

{RESULT_CONTRACT}"""
        return [
            {"role": "system", "content": system},
            {
                "role": "system",
                "content": f"Prior heartbeats:\n{json.dumps(history, indent=2)}",
            },
            {"role": "user", "content": self.definition.entrypoint or "Run your heartbeat."},
        ]

    async def decide(self, context: CharterContext) -> CharterResult:
        context.budget.record_spawn()
        response = await litellm.acompletion(
            model=self.model,
            messages=self._build_messages(context),
            temperature=self.temperature,
            max_tokens=max(1, context.limits.max_tokens_per_charter_run),
        )
        usage = getattr(response, "usage", None)
        context.budget.charge_tokens(getattr(usage, "total_tokens", 0) or 0)

        content = response.choices[0].message.content or ""
        return self._parse(content, context)

    @staticmethod
    def _parse(content: str, context: CharterContext) -> CharterResult:
        text = content.strip()
        if text.startswith("```"):
            text = text.strip("`")
            text = text.split("\n", 1)[1] if "\n" in text else text
        try:
            payload: dict[str, Any] = json.loads(text)
            payload["usage"] = context.budget.usage.model_dump()
            return CharterResult.model_validate(payload)
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.warning("Charter %s returned an unusable result: %s", context.charter_id, e)
            raise CharterLogicError(f"Unusable charter result: {e}") from e
