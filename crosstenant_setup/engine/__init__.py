"""Engine package — provisioning pipeline, rollback ledger, and audit trail."""

from .context import ExecutionContext, ExecutionMode
from .audit import AuditEvent, AuditStatus, AuditTrail, OperationKind, load_partition, partition_path
from .ledger import CompensatingAction, CompensationKind, RollbackLedger
from .rollback import (
    ReconstructionError,
    RollbackExecutor,
    RollbackFault,
    RollbackReport,
    reconstruct_ledger,
)
from .statistics import ProvisioningStatistics, ResourceInventory
from .phases import Decision
from .pipeline import PipelineOutcome, PipelineState, ProvisioningPipeline

__all__ = [
    "ExecutionContext",
    "ExecutionMode",
    "AuditEvent",
    "AuditStatus",
    "AuditTrail",
    "OperationKind",
    "load_partition",
    "partition_path",
    "CompensatingAction",
    "CompensationKind",
    "RollbackLedger",
    "ReconstructionError",
    "RollbackExecutor",
    "RollbackFault",
    "RollbackReport",
    "reconstruct_ledger",
    "ProvisioningStatistics",
    "ResourceInventory",
    "Decision",
    "PipelineOutcome",
    "PipelineState",
    "ProvisioningPipeline",
]
