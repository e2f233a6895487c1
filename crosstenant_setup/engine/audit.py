"""
Audit trail — append-only structured event log keyed by execution id.

Events are kept in memory for the run and, when a log directory is given,
appended to a per-day JSON-lines partition. Several runs may share a
partition; records are told apart by execution_id. The partition is the
only input to a detached (manual) rollback.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger("crosstenant_setup.audit")

PARTITION_PREFIX = "crosstenant_audit_"


class OperationKind(str, Enum):
    B2B_CONFIGURATION = "B2BConfiguration"
    SITE_CREATION = "SiteCreation"
    FOLDER_CREATION = "FolderCreation"
    GUEST_INVITATION = "GuestInvitation"
    HOST_USER_ADDED = "HostUserAdded"
    ROLLBACK_INITIATED = "RollbackInitiated"
    ROLLBACK_ACTION = "RollbackAction"
    ROLLBACK_COMPLETED = "RollbackCompleted"
    SCRIPT_COMPLETION = "ScriptCompletion"


class AuditStatus(str, Enum):
    COMPLETED = "Completed"
    FAILED = "Failed"
    WHAT_IF = "WhatIf"


@dataclass(frozen=True)
class AuditEvent:
    """One fact about something that happened during a run."""
    execution_id: str
    operation: OperationKind
    details: str
    status: AuditStatus = AuditStatus.COMPLETED
    attributes: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "timestamp": self.timestamp.isoformat(),
            "operation": self.operation.value,
            "details": self.details,
            "status": self.status.value,
            "attributes": self.attributes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuditEvent":
        return cls(
            execution_id=data["execution_id"],
            operation=OperationKind(data["operation"]),
            details=data.get("details", ""),
            status=AuditStatus(data.get("status", AuditStatus.COMPLETED.value)),
            attributes=dict(data.get("attributes") or {}),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


def partition_path(log_dir, day: datetime) -> Path:
    """Path of the JSON-lines partition holding events of a given UTC day."""
    return Path(log_dir) / f"{PARTITION_PREFIX}{day.astimezone(timezone.utc):%Y%m%d}.jsonl"


class AuditTrail:
    """
    Single-writer event sink for one execution id.
    Never shared between runs.

    With `partition`, every event goes to that file instead of the
    partition of its own day.
    """

    def __init__(self, execution_id: str, log_dir: Optional[Path] = None, partition: Optional[Path] = None):
        self.execution_id = execution_id
        self.partition = Path(partition) if partition else None
        if self.partition is not None:
            log_dir = self.partition.parent
        self.log_dir = Path(log_dir) if log_dir else None
        self._events: list[AuditEvent] = []
        if self.log_dir:
            self.log_dir.mkdir(parents=True, exist_ok=True)

    def record(
        self,
        operation: OperationKind,
        details: str,
        status: AuditStatus = AuditStatus.COMPLETED,
        **attributes: Any,
    ) -> AuditEvent:
        """Append an event and persist it to the day's partition."""
        event = AuditEvent(
            execution_id=self.execution_id,
            operation=operation,
            details=details,
            status=status,
            attributes=attributes,
        )
        self._events.append(event)
        if self.log_dir:
            path = self.partition or partition_path(self.log_dir, event.timestamp)
            with open(path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(event.to_dict(), default=str, ensure_ascii=False) + "\n")

        log = logger.warning if status is AuditStatus.FAILED else logger.debug
        log(f"[{operation.value}] {status.value}: {details}")
        return event

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)

    def of_kind(self, operation: OperationKind) -> list[AuditEvent]:
        return [e for e in self._events if e.operation is operation]

    def __len__(self) -> int:
        return len(self._events)


def load_partition(path) -> list[AuditEvent]:
    """
    Read every event from a persisted partition, in file order.
    Unparseable lines are skipped with a warning.
    """
    path = Path(path)
    events = []
    with open(path, "r", encoding="utf-8") as fh:
        for line_number, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                events.append(AuditEvent.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed audit record {path.name}:{line_number}: {e}")
    return events
