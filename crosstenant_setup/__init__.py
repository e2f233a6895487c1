"""
Cross-Tenant Setup
==================
Provisions Microsoft 365 cross-tenant B2B collaboration: partner policy,
shared site, client folder structure, and guest/host user access.

Every change is audited and can be rolled back, automatically on failure
(--enable-rollback) or later from the audit log (`rollback` command).
Use --what-if to see what a run would do without changing the tenant.
"""

__version__ = "1.0.0"
