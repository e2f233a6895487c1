"""
Run statistics and resource inventory — structured types for reporting.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ProvisioningStatistics:
    """Monotonic counters, each owned by a single phase."""
    sites_created: int = 0
    folders_created: int = 0
    guests_invited: int = 0
    host_users_processed: int = 0
    errors: int = 0
    warnings: int = 0

    def to_dict(self) -> dict:
        return {
            "sites_created": self.sites_created,
            "folders_created": self.folders_created,
            "guests_invited": self.guests_invited,
            "host_users_processed": self.host_users_processed,
            "errors": self.errors,
            "warnings": self.warnings,
        }


@dataclass
class ResourceInventory:
    """What a run created (or would create). Not used by rollback."""
    sites: list[dict] = field(default_factory=list)
    users: list[dict] = field(default_factory=list)
    folders: list[dict] = field(default_factory=list)
    b2b_configs: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "sites": self.sites,
            "users": self.users,
            "folders": self.folders,
            "b2b_configs": self.b2b_configs,
        }

    def rows(self) -> list[dict]:
        """Flatten into one row per resource for tabular reports."""
        rows = []
        for b in self.b2b_configs:
            rows.append({"resource_type": "B2BConfig", "name": b.get("tenant_id", ""),
                         "site_url": "", "detail": b.get("domain", "")})
        for s in self.sites:
            rows.append({"resource_type": "Site", "name": s.get("title", ""),
                         "site_url": s.get("url", ""), "detail": s.get("status", "")})
        for f in self.folders:
            rows.append({"resource_type": "Folder", "name": f.get("path", ""),
                         "site_url": f.get("site_url", ""), "detail": ""})
        for u in self.users:
            rows.append({"resource_type": f"{u.get('user_type', '')}User", "name": u.get("email", ""),
                         "site_url": u.get("site_url", ""), "detail": u.get("access_level", "")})
        return rows
