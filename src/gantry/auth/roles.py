"""Role directory used by the approval gate and lock overrides."""

from __future__ import annotations

from typing import Mapping, Sequence


class RoleDirectory:
    """Static identity → roles mapping loaded from bootstrap config."""

    def __init__(self, assignments: Mapping[str, Sequence[str]] | None = None) -> None:
        self._assignments = {
            identity: frozenset(roles) for identity, roles in (assignments or {}).items()
        }

    def roles_for(self, identity: str) -> frozenset[str]:
        return self._assignments.get(identity, frozenset())

    def has_role(self, identity: str, role: str) -> bool:
        return role in self.roles_for(identity)
