"""
Provisioning phases — B2B policy, site, folder structure, users.

Each phase first records the Decision it takes, then hands every mutating
gateway call to BasePhase.mutate(), which is the only place Apply and
Simulate differ: the call is either performed or logged as what-if.
Read-only lookups run in both modes.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..config import ProvisioningConfig, UserEntry, UserRole, UserType
from ..gateway.base import AccessLevel, CollaborationGateway, GatewayFault
from .audit import AuditStatus, AuditTrail, OperationKind
from .context import ExecutionContext
from .ledger import CompensatingAction, CompensationKind, RollbackLedger
from .statistics import ProvisioningStatistics, ResourceInventory

logger = logging.getLogger("crosstenant_setup.phases")

GUEST_ACCESS = {
    UserRole.OWNER: AccessLevel.EDIT,
    UserRole.MEMBER: AccessLevel.EDIT,
    UserRole.VISITOR: AccessLevel.READ,
}

HOST_ACCESS = {
    UserRole.OWNER: AccessLevel.FULL_CONTROL,
    UserRole.MEMBER: AccessLevel.EDIT,
    UserRole.VISITOR: AccessLevel.READ,
}


@dataclass(frozen=True)
class Decision:
    """One routing decision; the trace of these must match across modes."""
    phase: str
    action: str
    target: str = ""
    detail: str = ""
    count: int = 0

    def to_dict(self) -> dict:
        return {
            "phase": self.phase,
            "action": self.action,
            "target": self.target,
            "detail": self.detail,
            "count": self.count,
        }


class RunState:
    """Mutable state of a single run, shared by its phases."""

    def __init__(
        self,
        context: ExecutionContext,
        config: ProvisioningConfig,
        gateway: CollaborationGateway,
        audit: AuditTrail,
        ledger: RollbackLedger,
        confirm: Optional[Callable[[str], bool]] = None,
    ):
        self.context = context
        self.config = config
        self.gateway = gateway
        self.audit = audit
        self.ledger = ledger
        self.confirm = confirm
        self.statistics = ProvisioningStatistics()
        self.inventory = ResourceInventory()
        self.decisions: list[Decision] = []
        self.warnings: list[str] = []
        self.site_url: Optional[str] = None
        self.abort_reason: str = ""

    @property
    def aborted(self) -> bool:
        return bool(self.abort_reason)

    def decide(self, phase: str, action: str, target: str = "", detail: str = "", count: int = 0) -> Decision:
        decision = Decision(phase, action, target, detail, count)
        self.decisions.append(decision)
        return decision

    def warn(self, message: str):
        self.statistics.warnings += 1
        self.warnings.append(message)
        logger.warning(message)

    def abort(self, reason: str):
        self.abort_reason = reason
        self.warn(reason)


class BasePhase(ABC):
    """
    Abstract base class for all phases.

    Subclasses implement run(). The base class provides:
      - Timing and logging
      - Failure auditing before the fault propagates
      - The single apply/simulate branch point (mutate)
      - Mode-aware audit records and compensation registration
    """

    name: str = "base"
    operation: OperationKind = OperationKind.SCRIPT_COMPLETION

    def __init__(self, state: RunState):
        self.state = state

    @property
    def gateway(self) -> CollaborationGateway:
        return self.state.gateway

    @property
    def config(self) -> ProvisioningConfig:
        return self.state.config

    async def execute(self):
        started = time.monotonic()
        logger.info(f"[{self.name}] Starting...")
        try:
            await self.run()
        except Exception as e:
            self.state.audit.record(
                self.operation,
                f"{self.name} phase failed: {e}",
                AuditStatus.FAILED,
                error=f"{type(e).__name__}: {e}",
            )
            logger.error(f"[{self.name}] Phase failed: {type(e).__name__}: {e}")
            raise
        logger.info(f"[{self.name}] Completed in {time.monotonic() - started:.2f}s")

    @abstractmethod
    async def run(self):
        raise NotImplementedError

    async def mutate(self, description: str, call: Callable[..., Awaitable[Any]], *args) -> Any:
        """Perform a remote mutation, or only log it in simulate mode."""
        if self.state.context.is_simulation:
            logger.info(f"[WHAT-IF] {description}")
            return None
        logger.info(description)
        return await call(*args)

    def record(self, details: str, operation: Optional[OperationKind] = None, **attributes):
        status = AuditStatus.WHAT_IF if self.state.context.is_simulation else AuditStatus.COMPLETED
        self.state.audit.record(operation or self.operation, details, status, **attributes)

    def compensate(self, kind: CompensationKind, description: str, **parameters):
        if self.state.context.is_simulation:
            return
        self.state.ledger.push(CompensatingAction(kind=kind, parameters=parameters, description=description))


# ─── Phase 1: B2B configuration ─────────────────────────────────────────────

class B2BPhase(BasePhase):
    name = "b2b"
    operation = OperationKind.B2B_CONFIGURATION

    async def run(self):
        if self.config.skip_b2b:
            self.state.decide(self.name, "skipped", detail="skip flag")
            logger.info("[b2b] Skipped by configuration")
            return

        domain = self.config.guest_tenant_domain
        tenant_id = await self._resolve_tenant_id(domain)
        if not tenant_id:
            self.state.decide(self.name, "skipped", domain, detail="tenant id unavailable")
            self.state.warn(
                f"Could not resolve tenant ID for {domain} and no fallback was supplied; "
                f"B2B configuration skipped"
            )
            return

        self.state.decide(self.name, "configure", tenant_id, detail=domain)
        created = await self.mutate(
            f"Configuring B2B partner policy for {domain} ({tenant_id})",
            self.gateway.set_cross_tenant_policy,
            tenant_id,
            self.config.b2b_policy,
        )
        # An existing partner configuration is updated in place and must survive a rollback
        change = "updated" if created is False else "created"
        self.record(
            f"B2B collaboration {change} for {domain}",
            tenant_id=tenant_id,
            guest_domain=domain,
            change=change,
        )
        self.state.inventory.b2b_configs.append({"tenant_id": tenant_id, "domain": domain, "change": change})
        if change == "created":
            self.compensate(
                CompensationKind.B2B_CONFIG,
                f"Remove B2B configuration for tenant {tenant_id}",
                tenant_id=tenant_id,
            )
        else:
            logger.info(f"[b2b] Partner configuration for {tenant_id} existed; not registered for rollback")

    async def _resolve_tenant_id(self, domain: str) -> str:
        try:
            return await self.gateway.resolve_tenant_id(domain)
        except GatewayFault as e:
            fallback = self.config.guest_tenant_id
            if fallback:
                logger.warning(f"[b2b] Tenant lookup for {domain} failed ({e}); using supplied ID {fallback}")
            else:
                logger.warning(f"[b2b] Tenant lookup for {domain} failed: {e}")
            return fallback


# ─── Phase 2: Site creation ─────────────────────────────────────────────────

class SitePhase(BasePhase):
    name = "site"
    operation = OperationKind.SITE_CREATION

    async def run(self):
        if self.config.skip_site_creation:
            if self.config.site_url:
                self.state.decide(self.name, "use-configured", self.config.site_url)
                self.state.site_url = self.config.site_url
            else:
                self.state.decide(self.name, "skipped", detail="skip flag")
            logger.info("[site] Site creation skipped by configuration")
            return

        url = self.config.computed_site_url
        if await self.gateway.site_exists(url):
            await self._existing_site(url)
            return

        self.state.decide(self.name, "create", url, detail=self.config.site_title)
        created = await self.mutate(
            f"Creating site '{self.config.site_title}' at {url}",
            self.gateway.create_site,
            self.config.site_title,
            self.config.site_alias,
        )
        site_url = created or url
        self.state.statistics.sites_created += 1
        self.record(
            f"Site '{self.config.site_title}' created",
            site_url=site_url,
            title=self.config.site_title,
            alias=self.config.site_alias,
        )
        self.state.inventory.sites.append(
            {"url": site_url, "title": self.config.site_title, "status": "created"}
        )
        self.compensate(CompensationKind.SITE_CREATION, f"Delete site {site_url}", site_url=site_url)
        self.state.site_url = site_url

    async def _existing_site(self, url: str):
        # Simulate never prompts: there is no real state to decide on.
        if self.state.context.is_simulation:
            self.state.decide(self.name, "exists", url, detail="reuse would be confirmed")
            self.state.warn(f"[WHAT-IF] Site {url} already exists; operator would be asked to reuse it")
            self.state.site_url = url
            return

        confirm = self.state.confirm
        if confirm is not None and confirm(f"Site {url} already exists. Reuse it?"):
            self.state.decide(self.name, "reuse", url)
            self.state.warn(f"Reusing existing site {url}")
            self.state.inventory.sites.append({"url": url, "title": self.config.site_title, "status": "reused"})
            self.state.site_url = url
            return

        self.state.decide(self.name, "declined", url)
        self.state.abort(f"Reuse of existing site {url} declined; remaining phases cancelled")


# ─── Phase 3: Folder structure ──────────────────────────────────────────────

class FolderPhase(BasePhase):
    name = "folders"
    operation = OperationKind.FOLDER_CREATION

    async def run(self):
        site_url = self.state.site_url
        if not site_url:
            self.state.decide(self.name, "skipped", detail="no site")
            self.state.warn("No site available; folder structure skipped")
            return

        for client in self.config.client_folders:
            subpaths = [f"{client}/{sub}" for sub in self.config.subfolders]
            self.state.decide(self.name, "create", client, count=len(subpaths))

            await self.mutate(f"Creating folder {client}", self.gateway.create_folder, site_url, client)
            for path in subpaths:
                await self.mutate(f"Creating folder {path}", self.gateway.create_folder, site_url, path)

            self.state.statistics.folders_created += len(subpaths)
            self.record(
                f"Folder '{client}' created with {len(subpaths)} subfolders",
                site_url=site_url,
                folder=client,
                subfolders=subpaths,
            )
            for path in [client] + subpaths:
                self.state.inventory.folders.append({"site_url": site_url, "path": path})


# ─── Phase 4: User provisioning ─────────────────────────────────────────────

class UserPhase(BasePhase):
    """Users are processed one at a time; a failing user never stops the phase."""

    name = "users"
    operation = OperationKind.GUEST_INVITATION

    async def run(self):
        site_url = self.state.site_url
        if not site_url:
            self.state.decide(self.name, "skipped", detail="no site")
            if self.config.users:
                self.state.warn("No site available; user provisioning skipped")
            return

        guests = [u for u in self.config.users if u.user_type is UserType.GUEST]
        hosts = [u for u in self.config.users if u.user_type is UserType.HOST]
        self.state.decide(self.name, "partition", detail="guest", count=len(guests))
        self.state.decide(self.name, "partition", detail="host", count=len(hosts))

        for user in guests:
            await self._process_guest(site_url, user)
        for user in hosts:
            await self._process_host(site_url, user)

    async def _process_guest(self, site_url: str, user: UserEntry):
        access = GUEST_ACCESS[user.role]
        self.state.decide(self.name, "invite-guest", user.email, detail=access.value)
        try:
            await self.mutate(
                f"Inviting guest {user.email} to {site_url} ({access.value})",
                self.gateway.invite_guest, site_url, user.email, access,
            )
        except Exception as e:
            self._user_failed(OperationKind.GUEST_INVITATION, site_url, user, e)
            return

        self.state.statistics.guests_invited += 1
        self.record(
            f"Guest {user.email} invited with {access.value} access",
            OperationKind.GUEST_INVITATION,
            user_email=user.email,
            site_url=site_url,
            access_level=access.value,
            role=user.role.value,
        )
        self.state.inventory.users.append({
            "email": user.email, "user_type": user.user_type.value,
            "role": user.role.value, "access_level": access.value, "site_url": site_url,
        })
        self.compensate(
            CompensationKind.GUEST_INVITATION,
            f"Remove guest {user.email} from {site_url}",
            user_email=user.email,
            site_url=site_url,
        )

    async def _process_host(self, site_url: str, user: UserEntry):
        access = HOST_ACCESS[user.role]
        self.state.decide(self.name, "grant-host", user.email, detail=access.value)
        try:
            await self.mutate(
                f"Granting {access.value} on {site_url} to {user.email}",
                self.gateway.grant_host_access, site_url, user.email, access,
            )
        except Exception as e:
            self._user_failed(OperationKind.HOST_USER_ADDED, site_url, user, e)
            return

        self.state.statistics.host_users_processed += 1
        self.record(
            f"Host user {user.email} granted {access.value}",
            OperationKind.HOST_USER_ADDED,
            user_email=user.email,
            site_url=site_url,
            access_level=access.value,
            role=user.role.value,
        )
        self.state.inventory.users.append({
            "email": user.email, "user_type": user.user_type.value,
            "role": user.role.value, "access_level": access.value, "site_url": site_url,
        })

    def _user_failed(self, operation: OperationKind, site_url: str, user: UserEntry, error: Exception):
        self.state.statistics.errors += 1
        logger.error(f"[users] {user.email}: {type(error).__name__}: {error}")
        self.state.audit.record(
            operation,
            f"Provisioning {user.email} failed",
            AuditStatus.FAILED,
            user_email=user.email,
            site_url=site_url,
            error=f"{type(error).__name__}: {error}",
        )
