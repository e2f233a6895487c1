"""
Configuration module for the Cross-Tenant Setup tool.
Defines tenant/site/user inputs, API endpoints, and operational settings.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional
from datetime import datetime, timezone


class ConfigurationError(Exception):
    """Raised when required input is missing or invalid. Nothing is undone."""
    pass


# ─── Tenant Authentication ───────────────────────────────────────────────────

@dataclass
class CertificateAuth:
    """Certificate-based app-only authentication configuration."""
    tenant_id: str
    client_id: str
    certificate_path: str          # Path to base64-encoded PFX
    certificate_password: str = "" # Will be prompted if empty

@dataclass
class DelegatedAuth:
    """Delegated (device code) authentication configuration."""
    tenant_id: str
    client_id: str
    scopes: list[str] = field(default_factory=lambda: [
        "Policy.ReadWrite.CrossTenantAccess",
        "Group.ReadWrite.All",
        "Sites.FullControl.All",
        "Mail.Send",
    ])

@dataclass
class AuthConfig:
    """Authentication configuration — certificate or delegated."""
    mode: str = "certificate"  # "certificate" or "delegated"
    certificate: Optional[CertificateAuth] = None
    delegated: Optional[DelegatedAuth] = None


# ─── Graph API Settings ─────────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"

MAX_RETRIES = 5                   # Retry count for throttled requests
INITIAL_BACKOFF_SECONDS = 2.0     # First retry delay
MAX_BACKOFF_SECONDS = 120.0       # Cap on exponential backoff
BACKOFF_MULTIPLIER = 2.0          # Exponential factor
DEFAULT_PAGE_SIZE = 200           # $top for permission listings
MAX_PAGES_PER_ENDPOINT = 100

# A new group-backed site takes a while before /sites/root resolves
SITE_PROVISION_POLL_SECONDS = 10.0
SITE_PROVISION_MAX_POLLS = 30


# ─── Provisioning Defaults ──────────────────────────────────────────────────

DEFAULT_SUBFOLDERS = ["Incoming", "Outgoing", "Archive"]

# Partner-level overrides applied to the guest tenant
DEFAULT_B2B_POLICY = {
    "b2bCollaborationInbound": {
        "usersAndGroups": {
            "accessType": "allowed",
            "targets": [{"target": "AllUsers", "targetType": "user"}],
        },
        "applications": {
            "accessType": "allowed",
            "targets": [{"target": "AllApplications", "targetType": "application"}],
        },
    },
    "inboundTrust": {
        "isMfaAccepted": True,
        "isCompliantDeviceAccepted": False,
        "isHybridAzureADJoinedDeviceAccepted": False,
    },
}


class UserType(str, Enum):
    GUEST = "Guest"
    HOST = "Host"


class UserRole(str, Enum):
    OWNER = "Owner"
    MEMBER = "Member"
    VISITOR = "Visitor"


def _parse_enum(enum_cls, value: str, what: str):
    for member in enum_cls:
        if member.value.lower() == str(value).strip().lower():
            return member
    allowed = ", ".join(m.value for m in enum_cls)
    raise ConfigurationError(f"Invalid {what} '{value}' (expected one of: {allowed})")


@dataclass(frozen=True)
class UserEntry:
    """One user to provision on the collaboration site."""
    email: str
    user_type: UserType
    role: UserRole

    @classmethod
    def parse(cls, email: str, user_type: str, role: str) -> "UserEntry":
        email = (email or "").strip()
        if "@" not in email:
            raise ConfigurationError(f"Invalid user email '{email}'")
        return cls(
            email=email,
            user_type=_parse_enum(UserType, user_type, "user type"),
            role=_parse_enum(UserRole, role, "role"),
        )

    def to_dict(self) -> dict:
        return {"email": self.email, "user_type": self.user_type.value, "role": self.role.value}


# ─── Provisioning Inputs ────────────────────────────────────────────────────

@dataclass
class ProvisioningConfig:
    """Everything the pipeline needs to know about one cross-tenant setup."""
    host_tenant_domain: str = ""
    guest_tenant_domain: str = ""
    guest_tenant_id: str = ""             # Operator fallback when lookup fails
    admin_upn: str = ""
    site_title: str = ""
    site_alias: str = ""
    site_url: str = ""                    # Existing site when creation is skipped
    sharepoint_host: str = ""             # e.g. contoso.sharepoint.com
    client_folders: list[str] = field(default_factory=list)
    subfolders: list[str] = field(default_factory=lambda: list(DEFAULT_SUBFOLDERS))
    users: list[UserEntry] = field(default_factory=list)
    skip_b2b: bool = False
    skip_site_creation: bool = False
    enable_rollback: bool = False
    b2b_policy: dict = field(default_factory=lambda: json.loads(json.dumps(DEFAULT_B2B_POLICY)))

    @property
    def resolved_sharepoint_host(self) -> str:
        if self.sharepoint_host:
            return self.sharepoint_host
        prefix = self.host_tenant_domain.split(".", 1)[0]
        return f"{prefix}.sharepoint.com"

    @property
    def computed_site_url(self) -> str:
        return f"https://{self.resolved_sharepoint_host}/sites/{self.site_alias}"

    def validate(self):
        """Fail fast on missing or malformed input, before any remote call."""
        missing = []
        if not self.host_tenant_domain:
            missing.append("host_tenant_domain")
        if not self.admin_upn:
            missing.append("admin_upn")
        if not self.skip_b2b and not self.guest_tenant_domain:
            missing.append("guest_tenant_domain")
        if not self.skip_site_creation:
            if not self.site_title:
                missing.append("site_title")
            if not self.site_alias:
                missing.append("site_alias")
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

        if self.site_alias and not all(c.isalnum() or c in "-_" for c in self.site_alias):
            raise ConfigurationError(
                f"Site alias '{self.site_alias}' may only contain letters, digits, '-' and '_'"
            )
        if len(self.subfolders) != len(set(self.subfolders)):
            raise ConfigurationError("Duplicate subfolder names")
        for name in self.client_folders:
            if not name.strip() or "/" in name:
                raise ConfigurationError(f"Invalid client folder name '{name}'")
        seen = set()
        for user in self.users:
            if not isinstance(user, UserEntry):
                raise ConfigurationError(f"Invalid user entry: {user!r}")
            key = user.email.lower()
            if key in seen:
                raise ConfigurationError(f"Duplicate user '{user.email}'")
            seen.add(key)


# ─── Output Configuration ───────────────────────────────────────────────────

@dataclass
class OutputConfig:
    """Report, audit log and notification settings."""
    base_dir: str = ""
    audit_dir: str = ""
    timestamp: str = ""
    formats: list[str] = field(default_factory=lambda: ["json", "csv", "html"])
    notify: list[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        if not self.base_dir:
            self.base_dir = os.path.join(os.getcwd(), "crosstenant_output")
        if not self.audit_dir:
            self.audit_dir = os.path.join(self.base_dir, "audit")

    @property
    def report_dir(self) -> Path:
        return Path(self.base_dir)

    @property
    def audit_path(self) -> Path:
        return Path(self.audit_dir)


# ─── Master Configuration ───────────────────────────────────────────────────

@dataclass
class SetupConfig:
    """Top-level configuration for one invocation."""
    auth: AuthConfig = field(default_factory=AuthConfig)
    provisioning: ProvisioningConfig = field(default_factory=ProvisioningConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    mail_sender: str = ""         # Mailbox used for report notifications
    verbose: bool = False

    @classmethod
    def from_file(cls, path) -> "SetupConfig":
        """Load configuration from a JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"Config file {path} is not valid JSON: {e}")
        config = cls()
        if "auth" in data:
            auth_data = data["auth"]
            config.auth.mode = auth_data.get("mode", "certificate")
            if "certificate" in auth_data:
                c = auth_data["certificate"]
                config.auth.certificate = CertificateAuth(
                    tenant_id=c["tenant_id"],
                    client_id=c["client_id"],
                    certificate_path=c.get("certificate_path", "./base64.txt"),
                    certificate_password=c.get("certificate_password", ""),
                )
            if "delegated" in auth_data:
                d = auth_data["delegated"]
                config.auth.delegated = DelegatedAuth(
                    tenant_id=d["tenant_id"],
                    client_id=d["client_id"],
                )
        if "provisioning" in data:
            for k, v in data["provisioning"].items():
                if k == "users":
                    config.provisioning.users = [
                        UserEntry.parse(u.get("email", ""), u.get("user_type", ""), u.get("role", ""))
                        for u in v
                    ]
                elif hasattr(config.provisioning, k):
                    setattr(config.provisioning, k, v)
        if "output" in data:
            for k, v in data["output"].items():
                if hasattr(config.output, k):
                    setattr(config.output, k, v)
            if "audit_dir" not in data["output"]:
                config.output.audit_dir = os.path.join(config.output.base_dir, "audit")
        config.mail_sender = data.get("mail_sender", "")
        config.verbose = data.get("verbose", False)
        return config


# ─── Required Graph API Permissions (application) ──────────────────────────

REQUIRED_PERMISSIONS = {
    "Policy.Read.All": "Read the cross-tenant access policy",
    "Policy.ReadWrite.CrossTenantAccess": "Create and remove partner B2B configurations",
    "CrossTenantInformation.ReadBasic.All": "Resolve a partner tenant ID from its domain",
    "Group.ReadWrite.All": "Create and delete the Microsoft 365 group behind the site",
    "Sites.FullControl.All": "Create folders and manage sharing on the site library",
    "User.Read.All": "Resolve host users for access grants",
    "Mail.Send": "Send the run report notification",
}
