from __future__ import annotations

from typing import Optional

import pytest

from crosstenant_setup.config import ProvisioningConfig, UserEntry
from crosstenant_setup.gateway.base import (
    AccessLevel,
    CollaborationGateway,
    ResourceNotFound,
)

MUTATING_CALLS = {
    "set_cross_tenant_policy",
    "delete_cross_tenant_policy",
    "create_site",
    "delete_site",
    "create_folder",
    "invite_guest",
    "remove_user",
    "grant_host_access",
    "send_mail",
}


class FakeGateway(CollaborationGateway):
    """
    In-memory gateway that records every call in order.

    `fail` maps a method name to an exception raised on each call, or to a
    callable(*args) returning an exception (or None to let the call pass).
    """

    def __init__(
        self,
        tenant_ids: Optional[dict] = None,
        existing_sites: Optional[set] = None,
        fail: Optional[dict] = None,
    ):
        self.tenant_ids = dict(tenant_ids or {})
        self.existing_sites = set(existing_sites or ())
        self.fail = dict(fail or {})
        self.calls: list[tuple] = []
        self.policies: dict[str, dict] = {}
        self.sites: set[str] = set()
        self.folders: list[tuple[str, str]] = []
        self.grants: dict[tuple[str, str], AccessLevel] = {}
        self.mails: list[tuple] = []

    def _enter(self, name: str, *args):
        self.calls.append((name, *args))
        failure = self.fail.get(name)
        if failure is None:
            return
        if isinstance(failure, BaseException):
            raise failure
        error = failure(*args)
        if error is not None:
            raise error

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]

    def mutating_calls(self) -> list[tuple]:
        return [c for c in self.calls if c[0] in MUTATING_CALLS]

    async def resolve_tenant_id(self, domain):
        self._enter("resolve_tenant_id", domain)
        if domain not in self.tenant_ids:
            raise ResourceNotFound("resolve tenant", f"no tenant found for {domain}")
        return self.tenant_ids[domain]

    async def set_cross_tenant_policy(self, tenant_id, policy):
        self._enter("set_cross_tenant_policy", tenant_id)
        created = tenant_id not in self.policies
        self.policies[tenant_id] = policy
        return created

    async def delete_cross_tenant_policy(self, tenant_id):
        self._enter("delete_cross_tenant_policy", tenant_id)
        if self.policies.pop(tenant_id, None) is None:
            raise ResourceNotFound("delete cross-tenant policy", tenant_id)

    async def site_exists(self, url):
        self._enter("site_exists", url)
        return url in self.existing_sites or url in self.sites

    async def create_site(self, title, alias):
        self._enter("create_site", title, alias)
        url = f"https://contoso.sharepoint.com/sites/{alias}"
        self.sites.add(url)
        return url

    async def delete_site(self, url):
        self._enter("delete_site", url)
        if url not in self.sites:
            raise ResourceNotFound("delete site", url)
        self.sites.discard(url)

    async def create_folder(self, site_url, path):
        self._enter("create_folder", site_url, path)
        self.folders.append((site_url, path))

    async def invite_guest(self, site_url, email, access):
        self._enter("invite_guest", site_url, email, access)
        self.grants[(site_url, email)] = access

    async def remove_user(self, site_url, email):
        self._enter("remove_user", site_url, email)
        if self.grants.pop((site_url, email), None) is None:
            raise ResourceNotFound("remove user", email)

    async def grant_host_access(self, site_url, email, access):
        self._enter("grant_host_access", site_url, email, access)
        self.grants[(site_url, email)] = access

    async def send_mail(self, recipient, subject, html_body, attachment=None):
        self._enter("send_mail", recipient, subject)
        self.mails.append((recipient, subject, html_body, attachment))


def failing_for(value, error: Exception):
    """Fail a call only when `value` is one of its arguments."""
    def check(*args):
        return error if value in args else None
    return check


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway(tenant_ids={"fabrikam.com": "tid-fabrikam"})


@pytest.fixture
def provisioning() -> ProvisioningConfig:
    return ProvisioningConfig(
        host_tenant_domain="contoso.onmicrosoft.com",
        guest_tenant_domain="fabrikam.com",
        admin_upn="admin@contoso.onmicrosoft.com",
        site_title="Fabrikam Collaboration",
        site_alias="fabrikam-collab",
        client_folders=["ClientA"],
        users=[
            UserEntry.parse("guest@fabrikam.com", "Guest", "Member"),
            UserEntry.parse("host@contoso.com", "Host", "Owner"),
        ],
    )


@pytest.fixture
def audit_dir(tmp_path):
    return tmp_path / "audit"


