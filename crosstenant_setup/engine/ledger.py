"""
Rollback ledger — ordered stack of compensating actions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger("crosstenant_setup.ledger")


class CompensationKind(str, Enum):
    B2B_CONFIG = "B2BConfig"
    SITE_CREATION = "SiteCreation"
    GUEST_INVITATION = "GuestInvitation"


# Parameters each kind needs; forward audit events must carry the same keys.
REQUIRED_PARAMETERS = {
    CompensationKind.B2B_CONFIG: ("tenant_id",),
    CompensationKind.SITE_CREATION: ("site_url",),
    CompensationKind.GUEST_INVITATION: ("user_email", "site_url"),
}


@dataclass(frozen=True)
class CompensatingAction:
    """A serializable undo step: kind plus the parameters it runs with."""
    kind: CompensationKind
    parameters: dict[str, Any]
    description: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        missing = [p for p in REQUIRED_PARAMETERS[self.kind] if not self.parameters.get(p)]
        if missing:
            raise ValueError(f"{self.kind.value} compensation missing parameter(s): {', '.join(missing)}")

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "parameters": dict(self.parameters),
            "description": self.description,
            "created_at": self.created_at.isoformat(),
        }


class RollbackLedger:
    """
    Compensations in forward-success order; consumed in reverse.

    A disabled ledger ignores pushes so runs without rollback never
    accumulate state.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._actions: list[CompensatingAction] = []

    def push(self, action: CompensatingAction) -> None:
        if not self.enabled:
            return
        self._actions.append(action)
        logger.debug(f"Registered compensation #{len(self._actions)}: {action.description}")

    def pop(self) -> Optional[CompensatingAction]:
        """Remove and return the most recent action, or None when empty."""
        if not self._actions:
            return None
        return self._actions.pop()

    def snapshot(self) -> list[CompensatingAction]:
        """Actions in insertion order, without consuming them."""
        return list(self._actions)

    def __len__(self) -> int:
        return len(self._actions)

    def __bool__(self) -> bool:
        return bool(self._actions)
