"""
Collaboration gateway — Abstract interface over the remote systems the
engine touches: tenant directory, site hosting, and mail delivery.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Optional


class GatewayFault(Exception):
    """Raised when a remote call fails (lookup, creation, invitation, policy)."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation} failed: {message}")


class ResourceNotFound(GatewayFault):
    """The target of a call does not exist (deleted, never created, unknown domain)."""
    pass


class AccessLevel(str, Enum):
    READ = "Read"
    EDIT = "Edit"
    FULL_CONTROL = "FullControl"


class CollaborationGateway(ABC):
    """
    Contract consumed by the provisioning engine.

    Every method is awaited one at a time by the engine; implementations
    own timeouts and retries. Methods raise ResourceNotFound when the target
    is missing and GatewayFault for any other failure.
    """

    # ── Identity / tenant directory ─────────────────────────────────────────

    @abstractmethod
    async def resolve_tenant_id(self, domain: str) -> str:
        raise NotImplementedError

    @abstractmethod
    async def set_cross_tenant_policy(self, tenant_id: str, policy: dict) -> bool:
        """Apply the partner policy. True if it was created, False if an existing one was updated."""
        raise NotImplementedError

    @abstractmethod
    async def delete_cross_tenant_policy(self, tenant_id: str) -> None:
        raise NotImplementedError

    # ── Site hosting ────────────────────────────────────────────────────────

    @abstractmethod
    async def site_exists(self, url: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def create_site(self, title: str, alias: str) -> str:
        """Create the site and return its URL."""
        raise NotImplementedError

    @abstractmethod
    async def delete_site(self, url: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def create_folder(self, site_url: str, path: str) -> None:
        """Create a folder in the site's default library. No delete counterpart."""
        raise NotImplementedError

    @abstractmethod
    async def invite_guest(self, site_url: str, email: str, access: AccessLevel) -> None:
        raise NotImplementedError

    @abstractmethod
    async def remove_user(self, site_url: str, email: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def grant_host_access(self, site_url: str, email: str, access: AccessLevel) -> None:
        """Grant a host-tenant user access. No revoke counterpart."""
        raise NotImplementedError

    # ── Notification ────────────────────────────────────────────────────────

    @abstractmethod
    async def send_mail(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        attachment: Optional[Path] = None,
    ) -> None:
        raise NotImplementedError
