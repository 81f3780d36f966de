"""
Charter Registry — the founding charter definitions and their roles.

GOVERN holds the gate-owner role: it is the only charter that writes the
budget gate. Every other charter reads the gate and reports its own
heartbeat.
"""

from __future__ import annotations

from typing import Iterable

from governance_heartbeat.protocol.schema import CharterDefinition, CharterRole

FOUNDING_CHARTERS: dict[str, CharterDefinition] = {
    "GOVERN": CharterDefinition(
        id="GOVERN",
        title="Governance Coordinator",
        role=CharterRole.GATE_OWNER,
        description=(
            "Coordinates all charters. Owns the budget gate: at the start of each "
            "cycle it reviews every charter's most recent heartbeat, sets the "
            "resource ceilings and decides whether runs are allowed."
        ),
        prompt=(
            "Review the other charters' recent outcomes and decide what, if "
            "anything, governance should act on this cycle."
        ),
        cron="0 * * * *",
        entrypoint="Run the GOVERN heartbeat.",
    ),
    "SUSTAINABILITY": CharterDefinition(
        id="SUSTAINABILITY",
        title="Sustainability Steward",
        role=CharterRole.CHARTER,
        description=(
            "Watches spend and burn rate. Reads the budget gate and recommends "
            "cost adjustments; never writes the gate itself."
        ),
        prompt=(
            "Check resource consumption trends and recommend whether any "
            "spending should change."
        ),
        cron="30 * * * *",
        entrypoint="Run the SUSTAINABILITY heartbeat.",
    ),
}


def governance_schedule_id(charter_id: str) -> str:
    """Stable external scheduler id for a charter: `governance:<charter>`."""
    return f"governance:{charter_id.lower()}"


class CharterRegistry:
    """The set of charters taking part in the protocol."""

    def __init__(self, definitions: Iterable[CharterDefinition]) -> None:
        self.definitions: dict[str, CharterDefinition] = {}
        folded: dict[str, str] = {}
        for d in definitions:
            # heartbeat paths and schedule ids are lowercased
            key = d.id.lower()
            if key in folded:
                raise ValueError(f"Charter id {d.id!r} collides with {folded[key]!r}")
            folded[key] = d.id
            self.definitions[d.id] = d
        owners = [d.id for d in self.definitions.values() if d.role == CharterRole.GATE_OWNER]
        if len(owners) != 1:
            raise ValueError(
                f"Exactly one charter must hold the gate-owner role, found {owners}"
            )
        self.gate_owner = owners[0]

    @classmethod
    def from_ids(cls, charter_ids: Iterable[str], gate_owner: str) -> CharterRegistry:
        """
        Build a registry for the configured charter ids.

        Founding definitions are reused where they exist; the configured gate
        owner gets the gate-owner role and every other charter is demoted to
        a plain charter.
        """
        definitions = []
        for cid in charter_ids:
            base = FOUNDING_CHARTERS.get(cid) or CharterDefinition(id=cid, title=cid.title())
            role = CharterRole.GATE_OWNER if cid == gate_owner else CharterRole.CHARTER
            definitions.append(base.model_copy(update={"role": role}))
        return cls(definitions)

    def get(self, charter_id: str) -> CharterDefinition | None:
        return self.definitions.get(charter_id)

    def ids(self) -> list[str]:
        return list(self.definitions)

    def non_owners(self) -> list[str]:
        return [cid for cid in self.definitions if cid != self.gate_owner]

    def schedules(self) -> dict[str, dict[str, str]]:
        """Schedule entries for the external scheduler, keyed by schedule id."""
        return {
            governance_schedule_id(d.id): {
                "charter": d.id,
                "cron": d.cron,
                "timezone": d.timezone,
                "entrypoint": d.entrypoint,
            }
            for d in self.definitions.values()
        }
