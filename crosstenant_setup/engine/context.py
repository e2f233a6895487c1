"""
Execution context — the immutable identity of one pipeline run.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ExecutionMode(str, Enum):
    APPLY = "Apply"
    SIMULATE = "Simulate"


def new_execution_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ExecutionContext:
    """Created once per invocation; referenced by phases and audit events."""
    host_tenant_domain: str
    guest_tenant_domain: str
    admin_principal: str
    mode: ExecutionMode = ExecutionMode.APPLY
    rollback_enabled: bool = False
    execution_id: str = field(default_factory=new_execution_id)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_simulation(self) -> bool:
        return self.mode is ExecutionMode.SIMULATE

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "started_at": self.started_at.isoformat(),
            "host_tenant_domain": self.host_tenant_domain,
            "guest_tenant_domain": self.guest_tenant_domain,
            "admin_principal": self.admin_principal,
            "mode": self.mode.value,
            "rollback_enabled": self.rollback_enabled,
        }
