"""
Cross-Tenant Setup — Command-line entry point

Usage:
    python -m crosstenant_setup run --config setup.json
    python -m crosstenant_setup run --host-domain contoso.onmicrosoft.com \\
        --guest-domain fabrikam.com --admin-upn admin@contoso.onmicrosoft.com \\
        --site-title "Fabrikam Collaboration" --site-alias fabrikam-collab \\
        --client-folders Acme Globex --users-csv users.csv --enable-rollback
    python -m crosstenant_setup run --config setup.json --what-if

Manual rollback from the audit log:
    python -m crosstenant_setup rollback --execution-id <ID> --audit-dir ./crosstenant_output/audit
    python -m crosstenant_setup rollback --execution-id <ID> --audit-file crosstenant_audit_20261019.jsonl
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from . import __version__
from .config import (
    CertificateAuth,
    ConfigurationError,
    DelegatedAuth,
    SetupConfig,
)
from .userlist import load_users_csv, parse_inline_users
from .auth.authenticator import Authenticator, AuthenticationError
from .graph.client import GraphClient
from .safety.guardian import MutationGuard
from .gateway.graph_gateway import GraphCollaborationGateway
from .engine import (
    AuditTrail,
    ExecutionMode,
    PipelineOutcome,
    ProvisioningPipeline,
    ReconstructionError,
    RollbackExecutor,
    load_partition,
    partition_path,
    reconstruct_ledger,
)
from .reporting import export_csv, export_html, export_json, send_run_report

logger = logging.getLogger("crosstenant_setup")


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _add_auth_arguments(parser: argparse.ArgumentParser):
    parser.add_argument("--tenant-id", help="Host tenant ID used for authentication")
    parser.add_argument("--client-id", help="App registration client ID")
    parser.add_argument("--cert-path", type=Path, help="Path to base64-encoded PFX certificate")
    parser.add_argument("--delegated", action="store_true",
                        help="Use delegated (device-code) authentication instead of certificate")
    parser.add_argument("--yes", "-y", action="store_true",
                        help="Answer yes to confirmation prompts")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="crosstenant_setup",
        description="Microsoft 365 cross-tenant collaboration setup with audited rollback",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # --- run ---
    run_p = subparsers.add_parser("run", help="Provision cross-tenant collaboration")
    run_p.add_argument("--config", "-c", type=Path, help="Path to JSON configuration file")
    run_p.add_argument("--host-domain", help="Host tenant domain (e.g. contoso.onmicrosoft.com)")
    run_p.add_argument("--guest-domain", help="Guest (partner) tenant domain")
    run_p.add_argument("--guest-tenant-id", help="Partner tenant ID to use if the domain lookup fails")
    run_p.add_argument("--admin-upn", help="Administrator running the setup")
    run_p.add_argument("--site-title", help="Title of the collaboration site")
    run_p.add_argument("--site-alias", help="URL alias of the collaboration site")
    run_p.add_argument("--site-url", help="Existing site to use with --skip-site-creation")
    run_p.add_argument("--client-folders", nargs="+", help="Client folder names to create")
    users = run_p.add_mutually_exclusive_group()
    users.add_argument("--users", nargs="+", help="Users as email:Guest|Host:Owner|Member|Visitor")
    users.add_argument("--users-csv", type=Path, help="CSV file with Email,UserType,Role columns")
    run_p.add_argument("--skip-b2b", action="store_true", help="Skip B2B partner configuration")
    run_p.add_argument("--skip-site-creation", action="store_true", help="Skip site creation")
    run_p.add_argument("--enable-rollback", action="store_true",
                       help="Undo completed changes automatically if a phase fails")
    run_p.add_argument("--what-if", action="store_true",
                       help="Show what would be done without changing the tenant")
    run_p.add_argument("--output-dir", "-o", type=Path, help="Directory for reports")
    run_p.add_argument("--audit-dir", type=Path, help="Directory for the audit log partitions")
    run_p.add_argument("--formats", nargs="+", choices=["json", "csv", "html"],
                       help="Report formats to generate")
    run_p.add_argument("--no-reports", action="store_true", help="Do not write report files")
    run_p.add_argument("--notify", nargs="+", metavar="EMAIL", help="Mail the run report to these recipients")
    run_p.add_argument("--mail-sender", help="Mailbox that sends the report")
    _add_auth_arguments(run_p)

    # --- rollback ---
    rb_p = subparsers.add_parser("rollback", help="Roll back a previous run from its audit log")
    rb_p.add_argument("--execution-id", required=True, help="Execution ID of the run to undo")
    source = rb_p.add_mutually_exclusive_group()
    source.add_argument("--audit-file", type=Path, help="Audit partition file to read")
    source.add_argument("--audit-dir", type=Path, help="Directory holding audit partitions")
    rb_p.add_argument("--date", help="Partition date YYYYMMDD (with --audit-dir, default today)")
    rb_p.add_argument("--config", "-c", type=Path, help="JSON configuration file (auth settings)")
    rb_p.add_argument("--what-if", action="store_true", help="List the compensations without running them")
    _add_auth_arguments(rb_p)

    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def build_config(args: argparse.Namespace) -> SetupConfig:
    """Build configuration from the JSON file, then apply CLI overrides."""
    config_path = getattr(args, "config", None)
    if config_path:
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        config = SetupConfig.from_file(config_path)
    else:
        config = SetupConfig()

    p = config.provisioning
    overrides = {
        "host_domain": "host_tenant_domain",
        "guest_domain": "guest_tenant_domain",
        "guest_tenant_id": "guest_tenant_id",
        "admin_upn": "admin_upn",
        "site_title": "site_title",
        "site_alias": "site_alias",
        "site_url": "site_url",
        "client_folders": "client_folders",
    }
    for arg_name, field_name in overrides.items():
        value = getattr(args, arg_name, None)
        if value:
            setattr(p, field_name, value)

    if getattr(args, "users", None):
        p.users = parse_inline_users(args.users)
    elif getattr(args, "users_csv", None):
        p.users = load_users_csv(args.users_csv)

    for flag in ("skip_b2b", "skip_site_creation", "enable_rollback"):
        if getattr(args, flag, False):
            setattr(p, flag, True)

    if getattr(args, "output_dir", None):
        config.output.base_dir = str(args.output_dir)
        if not getattr(args, "audit_dir", None):
            config.output.audit_dir = str(args.output_dir / "audit")
    if getattr(args, "audit_dir", None):
        config.output.audit_dir = str(args.audit_dir)
    if getattr(args, "formats", None):
        config.output.formats = args.formats
    if getattr(args, "no_reports", False):
        config.output.formats = []
    if getattr(args, "notify", None):
        config.output.notify = args.notify
    if getattr(args, "mail_sender", None):
        config.mail_sender = args.mail_sender
    if getattr(args, "verbose", False):
        config.verbose = True

    # --- Authentication ---
    if getattr(args, "delegated", False):
        config.auth.mode = "delegated"
    tenant_id = getattr(args, "tenant_id", None)
    client_id = getattr(args, "client_id", None)
    if config.auth.mode == "delegated":
        if tenant_id and client_id:
            config.auth.delegated = DelegatedAuth(tenant_id=tenant_id, client_id=client_id)
    elif tenant_id and client_id:
        config.auth.certificate = CertificateAuth(
            tenant_id=tenant_id,
            client_id=client_id,
            certificate_path=str(args.cert_path) if args.cert_path else "./base64.txt",
        )
    elif config.auth.certificate and getattr(args, "cert_path", None):
        config.auth.certificate.certificate_path = str(args.cert_path)

    return config


def _require_auth(config: SetupConfig):
    if config.auth.mode == "delegated" and not config.auth.delegated:
        raise ConfigurationError("Delegated auth needs --tenant-id and --client-id (or a config file)")
    if config.auth.mode == "certificate" and not config.auth.certificate:
        raise ConfigurationError(
            "No credentials: use --tenant-id X --client-id Y [--cert-path P], "
            "--delegated, or --config config.json"
        )


def make_confirm(assume_yes: bool) -> Callable[[str], bool]:
    def confirm(question: str) -> bool:
        if assume_yes:
            print(f"  {question} [y/N] y (--yes)")
            return True
        try:
            answer = input(f"  {question} [y/N] ")
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")
    return confirm


def _print_header(title: str):
    print("\n" + "=" * 70)
    print(f" {title}")
    print("=" * 70)


# ---------------------------------------------------------------------------
# Gateway lifecycle
# ---------------------------------------------------------------------------

@asynccontextmanager
async def open_gateway(config: SetupConfig, what_if: bool):
    """Authenticate and yield a Graph gateway plus its mutation guard."""
    _require_auth(config)
    print("\n🔐 Authenticating...")
    token = await Authenticator(config.auth).acquire_token()
    print("✅ Authentication successful.")

    guard = MutationGuard(allow_writes=not what_if)
    async with GraphClient(access_token=token, guard=guard) as client:
        yield GraphCollaborationGateway(client, mail_sender=config.mail_sender), guard


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _print_outcome(outcome: PipelineOutcome):
    _print_header("RUN SUMMARY")
    stats = outcome.statistics
    print(f"\n  Execution ID:        {outcome.context.execution_id}")
    print(f"  Mode:                {outcome.context.mode.value}")
    print(f"  Final state:         {outcome.state.value}")
    print(f"  Sites created:       {stats.sites_created}")
    print(f"  Folders created:     {stats.folders_created}")
    print(f"  Guests invited:      {stats.guests_invited}")
    print(f"  Host users:          {stats.host_users_processed}")
    print(f"  Errors:              {stats.errors}")
    print(f"  Warnings:            {stats.warnings}")
    for w in outcome.warnings:
        print(f"      ⚠  {w}")
    if outcome.fault is not None:
        print(f"\n  ❌ Fatal fault: {outcome.fault}")
    if outcome.rollback_report is not None:
        r = outcome.rollback_report
        print(f"  ↩  Rollback: {r.succeeded} succeeded, {r.failed} failed")
        for err in r.errors:
            print(f"      ❌ {err}")


async def run_command(args: argparse.Namespace) -> int:
    config = build_config(args)
    mode = ExecutionMode.SIMULATE if args.what_if else ExecutionMode.APPLY
    config.provisioning.validate()

    MutationGuard.print_banner(what_if=args.what_if)
    print("=" * 70)
    print(f" Cross-Tenant Setup v{__version__}")
    print(f" Mode: {'WHAT-IF — no tenant modifications' if args.what_if else 'APPLY'}")
    print("=" * 70)

    async with open_gateway(config, what_if=args.what_if) as (gateway, guard):
        pipeline = ProvisioningPipeline(
            config.provisioning,
            mode,
            gateway,
            audit_dir=config.output.audit_path,
            confirm=make_confirm(args.yes),
            on_transition=lambda state: print(f"\n  ▶ {state.value}"),
        )
        print(f"\n📋 Execution ID: {pipeline.context.execution_id}")
        print(f"📂 Audit log:    {config.output.audit_path.resolve()}")

        try:
            outcome = await pipeline.run()
        except Exception as e:
            print(f"\n❌ Run failed in state {pipeline.history[-2].value}: {type(e).__name__}: {e}")
            print("   Rollback was not enabled. Undo later with:")
            print(f"   python -m crosstenant_setup rollback --execution-id {pipeline.context.execution_id} "
                  f"--audit-dir {config.output.audit_path}")
            return 1

        _print_outcome(outcome)

        created = []
        out_dir = config.output.report_dir
        if "json" in config.output.formats:
            created.append(export_json(outcome, out_dir, guard.get_audit_record()))
        if "csv" in config.output.formats:
            created.extend(export_csv(outcome, out_dir))
        if "html" in config.output.formats:
            created.append(export_html(outcome, out_dir))
        for path in created:
            print(f"  📄 {path}")

        if config.output.notify:
            if args.what_if:
                print("  ✉  Notification skipped in what-if mode")
            else:
                json_report = next((p for p in created if p.suffix == ".json"), None)
                sent = await send_run_report(gateway, outcome, config.output.notify, json_report)
                print(f"  ✉  Report sent to {sent}/{len(config.output.notify)} recipient(s)")

    return outcome.exit_code


def _resolve_partitions(args: argparse.Namespace) -> list[Path]:
    """
    Partitions to read, primary first. A run that crossed midnight UTC
    continues in the next day's partition, which is read when present.
    """
    if args.audit_file:
        return [args.audit_file]
    audit_dir = args.audit_dir or Path("./crosstenant_output/audit")
    if args.date:
        try:
            day = datetime.strptime(args.date, "%Y%m%d").replace(tzinfo=timezone.utc)
        except ValueError:
            raise ConfigurationError(f"Invalid --date '{args.date}' (expected YYYYMMDD)")
    else:
        day = datetime.now(timezone.utc)
    following = partition_path(audit_dir, day + timedelta(days=1))
    return [partition_path(audit_dir, day)] + ([following] if following.exists() else [])


async def rollback_command(args: argparse.Namespace) -> int:
    config = build_config(args)
    partitions = _resolve_partitions(args)
    primary = partitions[0]
    if not primary.exists():
        print(f"❌ Audit partition not found: {primary}")
        return 1

    events = [event for path in partitions for event in load_partition(path)]
    try:
        run = reconstruct_ledger(events, args.execution_id)
    except ReconstructionError as e:
        print(f"❌ {e}")
        return 1

    _print_header(f"ROLLBACK PLAN — {args.execution_id}")
    for action in reversed(run.ledger.snapshot()):
        print(f"  ↩  {action.description}")

    if args.what_if:
        print("\n  WHAT-IF: no compensations were executed.")
        return 0
    if not make_confirm(args.yes)(f"Execute {len(run.ledger)} compensation(s)?"):
        print("  Rollback cancelled.")
        return 0

    async with open_gateway(config, what_if=False) as (gateway, _guard):
        # Rollback events join the run they undo
        audit = AuditTrail(args.execution_id, partition=primary)
        report = await RollbackExecutor(gateway, audit).execute_all(
            run.ledger, reason="Manual rollback from audit log"
        )

    print(f"\n  Rollback: {report.succeeded} succeeded, {report.failed} failed")
    for err in report.errors:
        print(f"      ❌ {err}")
    return 0 if report.clean else 1


async def main_async(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    if not args.command:
        print("Usage: python -m crosstenant_setup {run|rollback} --help")
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    try:
        if args.command == "run":
            return await run_command(args)
        return await rollback_command(args)
    except ConfigurationError as e:
        print(f"\n❌ Configuration error: {e}")
        return 2
    except AuthenticationError as e:
        print(f"\n❌ Authentication failed: {e}")
        return 1


def main():
    """Synchronous entry point for `python -m crosstenant_setup`."""
    sys.exit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
