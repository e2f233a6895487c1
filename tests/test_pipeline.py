import pytest

from conftest import FakeGateway, failing_for
from crosstenant_setup.config import ConfigurationError, UserEntry
from crosstenant_setup.engine import (
    AuditStatus,
    ExecutionMode,
    OperationKind,
    PipelineState,
    ProvisioningPipeline,
    load_partition,
)
from crosstenant_setup.gateway.base import AccessLevel, GatewayFault

SITE = "https://contoso.sharepoint.com/sites/fabrikam-collab"


def _pipeline(config, gateway, audit_dir=None, mode=ExecutionMode.APPLY, **kwargs):
    return ProvisioningPipeline(config, mode, gateway, audit_dir=audit_dir, **kwargs)


@pytest.mark.asyncio
async def test_skip_b2b_full_run(provisioning, gateway, audit_dir):
    provisioning.skip_b2b = True
    provisioning.client_folders = ["Acme"]
    pipeline = _pipeline(provisioning, gateway, audit_dir)

    outcome = await pipeline.run()

    assert outcome.state is PipelineState.COMPLETED
    assert outcome.exit_code == 0
    assert outcome.statistics.to_dict() == {
        "sites_created": 1,
        "folders_created": 3,
        "guests_invited": 1,
        "host_users_processed": 1,
        "errors": 0,
        "warnings": 0,
    }

    audit = pipeline.audit
    assert audit.of_kind(OperationKind.B2B_CONFIGURATION) == []
    assert len(audit.of_kind(OperationKind.SITE_CREATION)) == 1
    folder_events = audit.of_kind(OperationKind.FOLDER_CREATION)
    assert len(folder_events) == 1
    assert folder_events[0].attributes["subfolders"] == ["Acme/Incoming", "Acme/Outgoing", "Acme/Archive"]
    guest = audit.of_kind(OperationKind.GUEST_INVITATION)
    assert len(guest) == 1
    assert guest[0].attributes["access_level"] == "Edit"
    host = audit.of_kind(OperationKind.HOST_USER_ADDED)
    assert len(host) == 1
    assert host[0].attributes["access_level"] == "FullControl"
    assert audit.events[-1].operation is OperationKind.SCRIPT_COMPLETION

    assert gateway.grants[(SITE, "guest@fabrikam.com")] is AccessLevel.EDIT
    assert gateway.grants[(SITE, "host@contoso.com")] is AccessLevel.FULL_CONTROL
    assert gateway.folders[0] == (SITE, "Acme")

    persisted = load_partition(next(audit_dir.glob("crosstenant_audit_*.jsonl")))
    assert [e.operation for e in persisted] == [e.operation for e in audit.events]


@pytest.mark.asyncio
async def test_state_history(provisioning, gateway):
    seen = []
    pipeline = _pipeline(provisioning, gateway, on_transition=seen.append)
    await pipeline.run()

    assert pipeline.history == [
        PipelineState.NOT_STARTED,
        PipelineState.B2B,
        PipelineState.SITE,
        PipelineState.FOLDERS,
        PipelineState.USERS,
        PipelineState.COMPLETED,
    ]
    assert seen == pipeline.history[1:]


@pytest.mark.asyncio
async def test_pipeline_runs_once(provisioning, gateway):
    pipeline = _pipeline(provisioning, gateway)
    await pipeline.run()
    with pytest.raises(RuntimeError):
        await pipeline.run()


@pytest.mark.asyncio
async def test_single_user_failure_is_isolated(provisioning, audit_dir):
    provisioning.users = [
        UserEntry.parse("one@fabrikam.com", "Guest", "Member"),
        UserEntry.parse("two@fabrikam.com", "Guest", "Visitor"),
        UserEntry.parse("three@fabrikam.com", "Guest", "Owner"),
    ]
    gateway = FakeGateway(
        tenant_ids={"fabrikam.com": "tid-fabrikam"},
        fail={"invite_guest": failing_for("two@fabrikam.com", GatewayFault("invite guest", "denied"))},
    )
    pipeline = _pipeline(provisioning, gateway, audit_dir)

    outcome = await pipeline.run()

    assert outcome.state is PipelineState.COMPLETED
    assert outcome.statistics.errors == 1
    assert outcome.statistics.guests_invited == 2
    invited = [c[2] for c in gateway.calls if c[0] == "invite_guest"]
    assert invited == ["one@fabrikam.com", "two@fabrikam.com", "three@fabrikam.com"]

    statuses = {
        e.attributes["user_email"]: e.status
        for e in pipeline.audit.of_kind(OperationKind.GUEST_INVITATION)
    }
    assert statuses == {
        "one@fabrikam.com": AuditStatus.COMPLETED,
        "two@fabrikam.com": AuditStatus.FAILED,
        "three@fabrikam.com": AuditStatus.COMPLETED,
    }


@pytest.mark.asyncio
async def test_site_fault_rolls_back_prior_b2b(provisioning, audit_dir):
    provisioning.enable_rollback = True
    gateway = FakeGateway(
        tenant_ids={"fabrikam.com": "tid-fabrikam"},
        fail={"create_site": GatewayFault("create site", "quota exceeded")},
    )
    pipeline = _pipeline(provisioning, gateway, audit_dir)

    outcome = await pipeline.run()

    assert outcome.state is PipelineState.ROLLED_BACK
    assert pipeline.history[-3:] == [PipelineState.SITE, PipelineState.ROLLING_BACK, PipelineState.ROLLED_BACK]
    assert isinstance(outcome.fault, GatewayFault)
    assert outcome.exit_code == 0
    assert gateway.names().count("delete_cross_tenant_policy") == 1
    assert "delete_site" not in gateway.names()
    assert gateway.policies == {}

    audit = pipeline.audit
    assert len(audit.of_kind(OperationKind.ROLLBACK_INITIATED)) == 1
    completed = audit.of_kind(OperationKind.ROLLBACK_COMPLETED)
    assert len(completed) == 1
    assert completed[0].attributes["succeeded"] == 1
    assert completed[0].attributes["failed"] == 0
    failed_site = [e for e in audit.of_kind(OperationKind.SITE_CREATION) if e.status is AuditStatus.FAILED]
    assert len(failed_site) == 1
    final = audit.events[-1]
    assert final.operation is OperationKind.SCRIPT_COMPLETION
    assert final.attributes["final_state"] == "RolledBack"


@pytest.mark.asyncio
async def test_failed_compensation_sets_exit_code(provisioning):
    provisioning.enable_rollback = True
    gateway = FakeGateway(
        tenant_ids={"fabrikam.com": "tid-fabrikam"},
        fail={
            "create_folder": GatewayFault("create folder", "library locked"),
            "delete_site": GatewayFault("delete site", "service unavailable"),
        },
    )
    outcome = await _pipeline(provisioning, gateway).run()

    assert outcome.state is PipelineState.ROLLED_BACK
    assert outcome.rollback_report.succeeded == 1
    assert outcome.rollback_report.failed == 1
    assert outcome.exit_code == 1


@pytest.mark.asyncio
async def test_rollback_disabled_fault_propagates(provisioning, audit_dir):
    gateway = FakeGateway(
        tenant_ids={"fabrikam.com": "tid-fabrikam"},
        fail={"create_folder": GatewayFault("create folder", "library locked")},
    )
    pipeline = _pipeline(provisioning, gateway, audit_dir)

    with pytest.raises(GatewayFault, match="library locked"):
        await pipeline.run()

    assert pipeline.state is PipelineState.FAILED
    assert len(pipeline.ledger) == 0
    assert "delete_site" not in gateway.names()
    assert "delete_cross_tenant_policy" not in gateway.names()
    final = pipeline.audit.events[-1]
    assert final.operation is OperationKind.SCRIPT_COMPLETION
    assert final.status is AuditStatus.FAILED


@pytest.mark.asyncio
async def test_ledger_stays_empty_without_rollback(provisioning, gateway):
    lengths = []
    pipeline = _pipeline(provisioning, gateway)
    pipeline.on_transition = lambda state: lengths.append(len(pipeline.ledger))

    await pipeline.run()

    assert pipeline.statistics.sites_created == 1
    assert lengths and set(lengths) == {0}


@pytest.mark.asyncio
async def test_ledger_records_compensable_steps_in_order(provisioning, gateway):
    provisioning.enable_rollback = True
    pipeline = _pipeline(provisioning, gateway)

    await pipeline.run()

    kinds = [a.kind.value for a in pipeline.ledger.snapshot()]
    assert kinds == ["B2BConfig", "SiteCreation", "GuestInvitation"]


@pytest.mark.asyncio
async def test_declined_reuse_aborts(provisioning):
    gateway = FakeGateway(tenant_ids={"fabrikam.com": "tid-fabrikam"}, existing_sites={SITE})
    provisioning.enable_rollback = True
    pipeline = _pipeline(provisioning, gateway, confirm=lambda question: False)

    outcome = await pipeline.run()

    assert outcome.state is PipelineState.ABORTED
    assert outcome.exit_code == 0
    assert "declined" in outcome.abort_reason
    assert PipelineState.FOLDERS not in pipeline.history
    assert "create_folder" not in gateway.names()
    assert "delete_cross_tenant_policy" not in gateway.names()


@pytest.mark.asyncio
async def test_confirmed_reuse_is_not_compensated(provisioning):
    gateway = FakeGateway(tenant_ids={"fabrikam.com": "tid-fabrikam"}, existing_sites={SITE})
    provisioning.enable_rollback = True
    pipeline = _pipeline(provisioning, gateway, confirm=lambda question: True)

    outcome = await pipeline.run()

    assert outcome.state is PipelineState.COMPLETED
    assert outcome.statistics.sites_created == 0
    assert outcome.statistics.warnings == 1
    assert "create_site" not in gateway.names()
    assert "SiteCreation" not in [a.kind.value for a in pipeline.ledger.snapshot()]
    assert outcome.inventory.sites[0]["status"] == "reused"


@pytest.mark.asyncio
async def test_tenant_lookup_falls_back_to_supplied_id(provisioning):
    provisioning.guest_tenant_id = "tid-fallback"
    gateway = FakeGateway()
    outcome = await _pipeline(provisioning, gateway).run()

    assert ("set_cross_tenant_policy", "tid-fallback") in gateway.calls
    assert outcome.statistics.warnings == 0


@pytest.mark.asyncio
async def test_tenant_lookup_without_fallback_skips_b2b(provisioning):
    gateway = FakeGateway()
    outcome = await _pipeline(provisioning, gateway).run()

    assert "set_cross_tenant_policy" not in gateway.names()
    assert outcome.statistics.warnings == 1
    assert outcome.state is PipelineState.COMPLETED
    assert outcome.statistics.sites_created == 1


@pytest.mark.asyncio
async def test_skip_site_creation_uses_configured_url(provisioning, gateway):
    provisioning.skip_site_creation = True
    provisioning.site_url = "https://contoso.sharepoint.com/sites/existing"
    outcome = await _pipeline(provisioning, gateway).run()

    assert "create_site" not in gateway.names()
    assert gateway.folders[0][0] == "https://contoso.sharepoint.com/sites/existing"
    assert outcome.statistics.guests_invited == 1


@pytest.mark.asyncio
async def test_skip_site_creation_without_url_skips_dependants(provisioning, gateway):
    provisioning.skip_site_creation = True
    outcome = await _pipeline(provisioning, gateway).run()

    assert outcome.state is PipelineState.COMPLETED
    assert "create_folder" not in gateway.names()
    assert "invite_guest" not in gateway.names()
    assert outcome.statistics.warnings == 2


def test_invalid_config_fails_before_any_call(provisioning, gateway):
    provisioning.admin_upn = ""
    with pytest.raises(ConfigurationError, match="admin_upn"):
        _pipeline(provisioning, gateway)
    assert gateway.calls == []


def test_execution_context_reflects_config(provisioning, gateway):
    provisioning.enable_rollback = True
    pipeline = _pipeline(provisioning, gateway, mode=ExecutionMode.SIMULATE)

    ctx = pipeline.context
    assert ctx.mode is ExecutionMode.SIMULATE
    assert ctx.rollback_enabled is True
    assert ctx.admin_principal == "admin@contoso.onmicrosoft.com"
    assert len(ctx.execution_id) == 32
    assert ctx.started_at.tzinfo is not None
    assert pipeline.ledger.enabled is False


@pytest.mark.asyncio
async def test_existing_partner_policy_survives_rollback(provisioning):
    provisioning.enable_rollback = True
    gateway = FakeGateway(
        tenant_ids={"fabrikam.com": "tid-fabrikam"},
        fail={"create_site": GatewayFault("create site", "quota exceeded")},
    )
    gateway.policies["tid-fabrikam"] = {"inboundTrust": {}}
    pipeline = _pipeline(provisioning, gateway)

    outcome = await pipeline.run()

    assert outcome.state is PipelineState.ROLLED_BACK
    assert outcome.rollback_report.total == 0
    assert "delete_cross_tenant_policy" not in gateway.names()
    assert "tid-fabrikam" in gateway.policies
    b2b = pipeline.audit.of_kind(OperationKind.B2B_CONFIGURATION)[0]
    assert b2b.attributes["change"] == "updated"
