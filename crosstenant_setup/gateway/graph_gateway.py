"""
Microsoft Graph implementation of the collaboration gateway.

Sites are Microsoft 365 group-backed team sites; folders and sharing live on
the site's default document library.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlparse

import httpx

from ..config import DEFAULT_PAGE_SIZE, SITE_PROVISION_MAX_POLLS, SITE_PROVISION_POLL_SECONDS
from ..graph.client import GraphAPIError, GraphClient
from .base import AccessLevel, CollaborationGateway, GatewayFault, ResourceNotFound

logger = logging.getLogger("crosstenant_setup.gateway.graph")

# driveItem invite roles
DRIVE_ROLES = {
    AccessLevel.READ: "read",
    AccessLevel.EDIT: "write",
    AccessLevel.FULL_CONTROL: "owner",
}

PARTNERS_ENDPOINT = "policies/crossTenantAccessPolicy/partners"


def _split_site_url(url: str) -> tuple[str, str]:
    """https://contoso.sharepoint.com/sites/acme → ("contoso.sharepoint.com", "acme")"""
    parsed = urlparse(url)
    alias = parsed.path.rstrip("/").rsplit("/", 1)[-1]
    if not parsed.netloc or not alias:
        raise GatewayFault("parse site url", f"not a site URL: {url}")
    return parsed.netloc, alias


def _odata_quote(value: str) -> str:
    return value.replace("'", "''")


class GraphCollaborationGateway(CollaborationGateway):
    """
    Gateway over an open GraphClient.

    Site and drive ids are resolved once per site URL and cached for the
    lifetime of the gateway.
    """

    def __init__(self, client: GraphClient, mail_sender: str = ""):
        self.client = client
        self.mail_sender = mail_sender
        self._drive_ids: dict[str, str] = {}

    async def _call(self, operation: str, coro):
        """Await a Graph call, mapping errors onto the gateway taxonomy."""
        try:
            return await coro
        except GraphAPIError as e:
            if e.status_code == 404:
                raise ResourceNotFound(operation, str(e)) from e
            raise GatewayFault(operation, str(e)) from e
        except httpx.HTTPError as e:
            raise GatewayFault(operation, f"{type(e).__name__}: {e}") from e

    async def _create(self, operation: str, coro) -> bool:
        """Like _call for a create request; False when the target already exists (409)."""
        try:
            await self._call(operation, coro)
        except GatewayFault as e:
            cause = e.__cause__
            if isinstance(cause, GraphAPIError) and cause.status_code == 409:
                return False
            raise
        return True

    # ── Identity / tenant directory ─────────────────────────────────────────

    async def resolve_tenant_id(self, domain: str) -> str:
        endpoint = (
            "tenantRelationships/findTenantInformationByDomainName"
            f"(domainName='{_odata_quote(domain)}')"
        )
        data = await self._call("resolve tenant", self.client.get(endpoint))
        tenant_id = data.get("tenantId")
        if not tenant_id:
            raise ResourceNotFound("resolve tenant", f"no tenant found for {domain}")
        return tenant_id

    async def set_cross_tenant_policy(self, tenant_id: str, policy: dict) -> bool:
        body = {"tenantId": tenant_id, **policy}
        if await self._create("set cross-tenant policy", self.client.post(PARTNERS_ENDPOINT, body)):
            return True
        logger.info(f"Partner configuration for {tenant_id} exists; updating it")
        await self._call(
            "update cross-tenant policy",
            self.client.patch(f"{PARTNERS_ENDPOINT}/{tenant_id}", policy),
        )
        return False

    async def delete_cross_tenant_policy(self, tenant_id: str) -> None:
        await self._call(
            "delete cross-tenant policy",
            self.client.delete(f"{PARTNERS_ENDPOINT}/{tenant_id}"),
        )

    # ── Sites ───────────────────────────────────────────────────────────────

    async def site_exists(self, url: str) -> bool:
        host, alias = _split_site_url(url)
        try:
            await self._call("lookup site", self.client.get(f"sites/{host}:/sites/{alias}"))
        except ResourceNotFound:
            return False
        return True

    async def create_site(self, title: str, alias: str) -> str:
        group = await self._call("create site", self.client.post("groups", {
            "displayName": title,
            "mailNickname": alias,
            "description": f"Cross-tenant collaboration site: {title}",
            "groupTypes": ["Unified"],
            "mailEnabled": True,
            "securityEnabled": False,
            "visibility": "Private",
        }))
        group_id = group.get("id")
        if not group_id:
            raise GatewayFault("create site", "group creation returned no id")

        try:
            return await self._wait_for_site(group_id)
        except GatewayFault as fault:
            # No URL reached the caller, so no compensation can remove the group later
            await self._discard_group(group_id, fault)
            raise

    async def _wait_for_site(self, group_id: str) -> str:
        """The group's site is provisioned asynchronously."""
        for attempt in range(SITE_PROVISION_MAX_POLLS):
            try:
                site = await self._call("create site", self.client.get(f"groups/{group_id}/sites/root"))
            except ResourceNotFound:
                logger.debug(f"Site for group {group_id} not ready (poll {attempt + 1})")
                await asyncio.sleep(SITE_PROVISION_POLL_SECONDS)
                continue
            if site.get("webUrl"):
                return site["webUrl"]
            await asyncio.sleep(SITE_PROVISION_POLL_SECONDS)
        raise GatewayFault("create site", f"site for group {group_id} was not provisioned in time")

    async def _discard_group(self, group_id: str, fault: GatewayFault):
        logger.warning(f"Deleting group {group_id} after failed site creation: {fault}")
        try:
            await self._call("create site", self.client.delete(f"groups/{group_id}"))
        except GatewayFault as e:
            raise GatewayFault(
                "create site",
                f"{fault}; group {group_id} could not be deleted ({e}), remove it manually",
            ) from e

    async def delete_site(self, url: str) -> None:
        _, alias = _split_site_url(url)
        groups = await self._call("delete site", self.client.get(
            "groups",
            params={"$filter": f"mailNickname eq '{_odata_quote(alias)}'", "$select": "id"},
        ))
        matches = groups.get("value", [])
        if not matches:
            raise ResourceNotFound("delete site", f"no group owns {url}")
        for group in matches:
            await self._call("delete site", self.client.delete(f"groups/{group['id']}"))
        self._drive_ids.pop(url, None)

    async def _drive_id(self, site_url: str) -> str:
        if site_url not in self._drive_ids:
            host, alias = _split_site_url(site_url)
            drive = await self._call("lookup library", self.client.get(f"sites/{host}:/sites/{alias}:/drive"))
            self._drive_ids[site_url] = drive["id"]
        return self._drive_ids[site_url]

    async def create_folder(self, site_url: str, path: str) -> None:
        drive_id = await self._drive_id(site_url)
        parent, _, name = path.strip("/").rpartition("/")
        endpoint = (
            f"drives/{drive_id}/root:/{quote(parent)}:/children" if parent
            else f"drives/{drive_id}/root/children"
        )
        created = await self._create("create folder", self.client.post(endpoint, {
            "name": name,
            "folder": {},
            "@microsoft.graph.conflictBehavior": "fail",
        }))
        if not created:
            logger.info(f"Folder {path} already exists on {site_url}")

    # ── Sharing ─────────────────────────────────────────────────────────────

    async def _invite(self, operation: str, site_url: str, email: str, access: AccessLevel, notify: bool):
        drive_id = await self._drive_id(site_url)
        await self._call(operation, self.client.post(f"drives/{drive_id}/root/invite", {
            "recipients": [{"email": email}],
            "roles": [DRIVE_ROLES[access]],
            "requireSignIn": True,
            "sendInvitation": notify,
            "message": "You have been given access to a shared collaboration site.",
        }))

    async def invite_guest(self, site_url: str, email: str, access: AccessLevel) -> None:
        await self._invite("invite guest", site_url, email, access, notify=True)

    async def grant_host_access(self, site_url: str, email: str, access: AccessLevel) -> None:
        await self._invite("grant host access", site_url, email, access, notify=False)

    async def remove_user(self, site_url: str, email: str) -> None:
        drive_id = await self._drive_id(site_url)
        permissions = await self._call("remove user", self.client.get_all_pages(
            f"drives/{drive_id}/root/permissions", params={"$top": str(DEFAULT_PAGE_SIZE)}
        ))

        matching = [p for p in permissions if email.lower() in _permission_emails(p)]
        if not matching:
            raise ResourceNotFound("remove user", f"{email} has no permission on {site_url}")
        for permission in matching:
            await self._call(
                "remove user",
                self.client.delete(f"drives/{drive_id}/root/permissions/{permission['id']}"),
            )

    # ── Notification ────────────────────────────────────────────────────────

    async def send_mail(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        attachment: Optional[Path] = None,
    ) -> None:
        if not self.mail_sender:
            raise GatewayFault("send mail", "no sender mailbox configured")
        message = {
            "subject": subject,
            "body": {"contentType": "HTML", "content": html_body},
            "toRecipients": [{"emailAddress": {"address": recipient}}],
        }
        if attachment is not None:
            message["attachments"] = [{
                "@odata.type": "#microsoft.graph.fileAttachment",
                "name": attachment.name,
                "contentBytes": base64.b64encode(attachment.read_bytes()).decode("ascii"),
            }]
        await self._call(
            "send mail",
            self.client.post(f"users/{self.mail_sender}/sendMail", {"message": message, "saveToSentItems": True}),
        )


def _permission_emails(permission: dict) -> set[str]:
    """Every e-mail address a driveItem permission is granted to."""
    emails = set()
    identities = [permission.get("grantedToV2") or {}] + list(permission.get("grantedToIdentitiesV2") or [])
    for identity in identities:
        for key in ("user", "siteUser"):
            who = identity.get(key) or {}
            for field in ("email", "loginName"):
                value = who.get(field)
                if value:
                    emails.add(value.lower())
    invitation = permission.get("invitation") or {}
    if invitation.get("email"):
        emails.add(invitation["email"].lower())
    return emails
