"""
Provisioning pipeline — runs the phases in order and owns the run's
context, audit trail and rollback ledger.

State machine:
    NOT_STARTED → B2B → SITE → FOLDERS → USERS → COMPLETED
    any phase   → ROLLING_BACK → ROLLED_BACK   (fatal fault, rollback enabled)
    any phase   → FAILED                       (fatal fault, rollback disabled)
    SITE        → ABORTED                      (operator declined site reuse)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from ..config import ProvisioningConfig
from ..gateway.base import CollaborationGateway
from .audit import AuditStatus, AuditTrail, OperationKind
from .context import ExecutionContext, ExecutionMode
from .ledger import RollbackLedger
from .phases import B2BPhase, Decision, FolderPhase, RunState, SitePhase, UserPhase
from .rollback import RollbackExecutor, RollbackReport
from .statistics import ProvisioningStatistics, ResourceInventory

logger = logging.getLogger("crosstenant_setup.pipeline")


class PipelineState(str, Enum):
    NOT_STARTED = "NotStarted"
    B2B = "B2B"
    SITE = "Site"
    FOLDERS = "Folders"
    USERS = "Users"
    COMPLETED = "Completed"
    ROLLING_BACK = "RollingBack"
    ROLLED_BACK = "RolledBack"
    FAILED = "Failed"
    ABORTED = "Aborted"


TERMINAL_STATES = {
    PipelineState.COMPLETED,
    PipelineState.ROLLED_BACK,
    PipelineState.FAILED,
    PipelineState.ABORTED,
}

PHASE_ORDER = [
    (PipelineState.B2B, B2BPhase),
    (PipelineState.SITE, SitePhase),
    (PipelineState.FOLDERS, FolderPhase),
    (PipelineState.USERS, UserPhase),
]


@dataclass
class PipelineOutcome:
    """What a run returns to reporting collaborators."""
    context: ExecutionContext
    state: PipelineState
    statistics: ProvisioningStatistics
    inventory: ResourceInventory
    decisions: list[Decision] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    fault: Optional[BaseException] = None
    rollback_report: Optional[RollbackReport] = None
    abort_reason: str = ""

    @property
    def failed(self) -> bool:
        return self.fault is not None

    @property
    def exit_code(self) -> int:
        """0 unless a fatal fault was left (partly) un-rolled-back."""
        if self.state is PipelineState.FAILED:
            return 1
        if self.rollback_report is not None and not self.rollback_report.clean:
            return 1
        return 0

    def to_dict(self) -> dict:
        return {
            "context": self.context.to_dict(),
            "state": self.state.value,
            "statistics": self.statistics.to_dict(),
            "inventory": self.inventory.to_dict(),
            "decisions": [d.to_dict() for d in self.decisions],
            "warnings": list(self.warnings),
            "fault": f"{type(self.fault).__name__}: {self.fault}" if self.fault else None,
            "rollback": self.rollback_report.to_dict() if self.rollback_report else None,
            "abort_reason": self.abort_reason,
        }


class ProvisioningPipeline:
    """
    One instance per run.

    Construction validates the configuration (ConfigurationError, before
    any remote call) and creates the ExecutionContext. run() executes the
    phases strictly one after another.
    """

    def __init__(
        self,
        config: ProvisioningConfig,
        mode: ExecutionMode,
        gateway: CollaborationGateway,
        audit_dir: Optional[Path] = None,
        confirm: Optional[Callable[[str], bool]] = None,
        on_transition: Optional[Callable[[PipelineState], None]] = None,
    ):
        config.validate()
        self.config = config
        self.gateway = gateway
        self.on_transition = on_transition
        self.context = ExecutionContext(
            host_tenant_domain=config.host_tenant_domain,
            guest_tenant_domain=config.guest_tenant_domain,
            admin_principal=config.admin_upn,
            mode=mode,
            rollback_enabled=config.enable_rollback,
        )
        self.audit = AuditTrail(self.context.execution_id, audit_dir)
        self.ledger = RollbackLedger(enabled=config.enable_rollback and mode is ExecutionMode.APPLY)
        self.run_state = RunState(self.context, config, gateway, self.audit, self.ledger, confirm)
        self.state = PipelineState.NOT_STARTED
        self.history: list[PipelineState] = [self.state]

    @property
    def statistics(self) -> ProvisioningStatistics:
        return self.run_state.statistics

    @property
    def inventory(self) -> ResourceInventory:
        return self.run_state.inventory

    @property
    def decisions(self) -> list[Decision]:
        return list(self.run_state.decisions)

    def _transition(self, state: PipelineState):
        self.state = state
        self.history.append(state)
        logger.debug(f"[{self.context.execution_id}] → {state.value}")
        if self.on_transition:
            self.on_transition(state)

    async def run(self) -> PipelineOutcome:
        if self.state is not PipelineState.NOT_STARTED:
            raise RuntimeError("A pipeline instance can only run once")

        logger.info(
            f"Execution {self.context.execution_id} started "
            f"(mode={self.context.mode.value}, rollback={'on' if self.context.rollback_enabled else 'off'})"
        )
        try:
            for state, phase_cls in PHASE_ORDER:
                if self.run_state.aborted:
                    break
                self._transition(state)
                await phase_cls(self.run_state).execute()
        except Exception as e:
            return await self._handle_fault(e)

        self._transition(PipelineState.ABORTED if self.run_state.aborted else PipelineState.COMPLETED)
        self._record_completion(AuditStatus.COMPLETED)
        return self._outcome()

    async def _handle_fault(self, fault: Exception) -> PipelineOutcome:
        failed_in = self.state.value
        logger.error(f"Fatal fault during {failed_in} phase: {type(fault).__name__}: {fault}")

        if not self.context.rollback_enabled:
            self._transition(PipelineState.FAILED)
            logger.error(f"Rollback disabled; resources left in place: {self.inventory.to_dict()}")
            self._record_completion(AuditStatus.FAILED, fault=fault)
            raise fault

        self._transition(PipelineState.ROLLING_BACK)
        executor = RollbackExecutor(self.gateway, self.audit)
        report = await executor.execute_all(
            self.ledger,
            reason=f"{failed_in} phase failed: {type(fault).__name__}: {fault}",
        )
        self._transition(PipelineState.ROLLED_BACK)
        self._record_completion(AuditStatus.FAILED, fault=fault, report=report)
        return self._outcome(fault=fault, report=report)

    def _record_completion(
        self,
        status: AuditStatus,
        fault: Optional[BaseException] = None,
        report: Optional[RollbackReport] = None,
    ):
        attributes = {"final_state": self.state.value, "mode": self.context.mode.value}
        attributes.update(self.statistics.to_dict())
        if fault is not None:
            attributes["error"] = f"{type(fault).__name__}: {fault}"
        if report is not None:
            attributes["rollback_succeeded"] = report.succeeded
            attributes["rollback_failed"] = report.failed
        self.audit.record(
            OperationKind.SCRIPT_COMPLETION,
            f"Run finished in state {self.state.value}",
            status,
            **attributes,
        )

    def _outcome(
        self,
        fault: Optional[BaseException] = None,
        report: Optional[RollbackReport] = None,
    ) -> PipelineOutcome:
        return PipelineOutcome(
            context=self.context,
            state=self.state,
            statistics=self.statistics,
            inventory=self.inventory,
            decisions=self.decisions,
            warnings=list(self.run_state.warnings),
            fault=fault,
            rollback_report=report,
            abort_reason=self.run_state.abort_reason,
        )
