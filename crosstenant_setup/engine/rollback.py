"""
Rollback executor — drains a RollbackLedger in reverse order.

Compensations are best-effort: a failing compensation is recorded and the
remaining ones still run. A ledger comes either from a live run or is
reconstructed from a persisted audit partition, in which case the
compensations are rebuilt from the attributes of the forward events.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from ..gateway.base import CollaborationGateway, ResourceNotFound
from .audit import AuditEvent, AuditStatus, AuditTrail, OperationKind
from .ledger import CompensatingAction, CompensationKind, RollbackLedger

logger = logging.getLogger("crosstenant_setup.rollback")


class RollbackFault(Exception):
    """A compensation itself failed."""

    def __init__(self, action: CompensatingAction, cause: Exception):
        self.action = action
        self.cause = cause
        super().__init__(f"Compensation '{action.description}' failed: {type(cause).__name__}: {cause}")


class ReconstructionError(Exception):
    """The audit partition holds nothing to roll back for the execution id."""
    pass


# ─── Compensation dispatch table ─────────────────────────────────────────────

async def _remove_b2b_config(gateway: CollaborationGateway, tenant_id: str, **_) -> None:
    try:
        await gateway.delete_cross_tenant_policy(tenant_id)
    except ResourceNotFound:
        logger.info(f"B2B configuration for {tenant_id} already removed")


async def _delete_site(gateway: CollaborationGateway, site_url: str, **_) -> None:
    try:
        await gateway.delete_site(site_url)
    except ResourceNotFound:
        logger.info(f"Site {site_url} already deleted")


async def _remove_guest(gateway: CollaborationGateway, user_email: str, site_url: str, **_) -> None:
    try:
        await gateway.remove_user(site_url, user_email)
    except ResourceNotFound:
        logger.info(f"{user_email} no longer has access to {site_url}")


COMPENSATIONS: dict[CompensationKind, Callable[..., Awaitable[None]]] = {
    CompensationKind.B2B_CONFIG: _remove_b2b_config,
    CompensationKind.SITE_CREATION: _delete_site,
    CompensationKind.GUEST_INVITATION: _remove_guest,
}


# ─── Executor ────────────────────────────────────────────────────────────────

@dataclass
class RollbackReport:
    """Outcome of draining one ledger."""
    reason: str = ""
    succeeded: int = 0
    failed: int = 0
    attempted: list[CompensatingAction] = field(default_factory=list)
    errors: list[RollbackFault] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    @property
    def clean(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict:
        return {
            "reason": self.reason,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "attempted": [a.to_dict() for a in self.attempted],
            "errors": [str(e) for e in self.errors],
        }


class RollbackExecutor:
    """Executes compensations against the gateway, auditing every attempt."""

    def __init__(self, gateway: CollaborationGateway, audit: AuditTrail):
        self.gateway = gateway
        self.audit = audit

    async def execute_all(self, ledger: RollbackLedger, reason: str) -> RollbackReport:
        report = RollbackReport(reason=reason)
        total = len(ledger)
        logger.warning(f"Rolling back {total} action(s): {reason}")
        self.audit.record(
            OperationKind.ROLLBACK_INITIATED,
            f"Rollback initiated: {reason}",
            action_count=total,
            reason=reason,
        )

        while True:
            action = ledger.pop()
            if action is None:
                break
            report.attempted.append(action)
            try:
                await COMPENSATIONS[action.kind](self.gateway, **action.parameters)
            except Exception as e:
                fault = RollbackFault(action, e)
                report.failed += 1
                report.errors.append(fault)
                logger.error(str(fault))
                self.audit.record(
                    OperationKind.ROLLBACK_ACTION,
                    action.description,
                    AuditStatus.FAILED,
                    kind=action.kind.value,
                    error=str(e),
                    **action.parameters,
                )
                continue

            report.succeeded += 1
            logger.info(f"Rolled back: {action.description}")
            self.audit.record(
                OperationKind.ROLLBACK_ACTION,
                action.description,
                kind=action.kind.value,
                **action.parameters,
            )

        self.audit.record(
            OperationKind.ROLLBACK_COMPLETED,
            f"Rollback completed: {report.succeeded} succeeded, {report.failed} failed",
            AuditStatus.COMPLETED if report.clean else AuditStatus.FAILED,
            action_count=total,
            succeeded=report.succeeded,
            failed=report.failed,
        )
        return report


# ─── Reconstruction from a persisted partition ──────────────────────────────

_FORWARD_KINDS = {
    OperationKind.B2B_CONFIGURATION: CompensationKind.B2B_CONFIG,
    OperationKind.SITE_CREATION: CompensationKind.SITE_CREATION,
    OperationKind.GUEST_INVITATION: CompensationKind.GUEST_INVITATION,
}


@dataclass
class ReconstructedRun:
    """Compensable resources found for one execution id, grouped for display."""
    execution_id: str
    sites: list[AuditEvent] = field(default_factory=list)
    users: list[AuditEvent] = field(default_factory=list)
    b2b_configs: list[AuditEvent] = field(default_factory=list)
    ledger: RollbackLedger = field(default_factory=RollbackLedger)

    def summary(self) -> dict:
        return {
            "sites": [e.attributes.get("site_url") for e in self.sites],
            "users": [e.attributes.get("user_email") for e in self.users],
            "b2b_configs": [e.attributes.get("tenant_id") for e in self.b2b_configs],
        }


def _action_from_event(event: AuditEvent) -> CompensatingAction:
    kind = _FORWARD_KINDS[event.operation]
    a = event.attributes
    if kind is CompensationKind.B2B_CONFIG:
        params = {"tenant_id": a.get("tenant_id")}
        description = f"Remove B2B configuration for tenant {params['tenant_id']}"
    elif kind is CompensationKind.SITE_CREATION:
        params = {"site_url": a.get("site_url")}
        description = f"Delete site {params['site_url']}"
    else:
        params = {"user_email": a.get("user_email"), "site_url": a.get("site_url")}
        description = f"Remove guest {params['user_email']} from {params['site_url']}"
    return CompensatingAction(kind=kind, parameters=params, description=description,
                              created_at=event.timestamp)


def reconstruct_ledger(events: list[AuditEvent], execution_id: str) -> ReconstructedRun:
    """
    Rebuild the rollback ledger of a past run from its forward audit events.

    Only Completed events of compensable kinds count; what-if and failed
    events never produced anything to undo.
    """
    own = [e for e in events if e.execution_id == execution_id]
    if not own:
        raise ReconstructionError(f"No audit events found for execution id {execution_id}")

    run = ReconstructedRun(execution_id=execution_id)
    groups = {
        OperationKind.SITE_CREATION: run.sites,
        OperationKind.GUEST_INVITATION: run.users,
        OperationKind.B2B_CONFIGURATION: run.b2b_configs,
    }
    for event in sorted(own, key=lambda e: e.timestamp):
        if event.operation not in _FORWARD_KINDS or event.status is not AuditStatus.COMPLETED:
            continue
        if event.attributes.get("change") == "updated":
            # Pre-existing resource changed in place; the run did not create it
            continue
        try:
            action = _action_from_event(event)
        except ValueError as e:
            logger.warning(f"Cannot compensate {event.operation.value} event: {e}")
            continue
        groups[event.operation].append(event)
        run.ledger.push(action)

    if not run.ledger:
        raise ReconstructionError(
            f"Execution {execution_id} has no completed compensable operations to roll back"
        )
    logger.info(
        f"Reconstructed {len(run.ledger)} compensation(s) for {execution_id}: "
        f"{len(run.b2b_configs)} B2B, {len(run.sites)} site(s), {len(run.users)} guest(s)"
    )
    return run
