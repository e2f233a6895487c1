"""
Mutation Guard — Enforces the what-if contract at the HTTP layer.
In simulate mode every write request is blocked; in apply mode every write
is recorded so the run report can list the remote changes made.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger("crosstenant_setup.safety")

# ─── HTTP Methods ────────────────────────────────────────────────────────────

READ_METHODS = {"GET", "HEAD", "OPTIONS"}
WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


class SafetyViolation(Exception):
    """Raised when a write reaches the HTTP layer during a what-if run."""
    pass


class MutationGuard:
    """
    Validates every outbound Graph request against the run's mode.
    Keeps an audit record of writes performed and writes blocked.
    """

    def __init__(self, allow_writes: bool):
        self.allow_writes = allow_writes
        self.writes: list[dict] = []
        self.violations: list[dict] = []
        self.checks_performed: int = 0
        self.started_at: str = datetime.now(timezone.utc).isoformat()

    def validate_request(self, method: str, url: str, body: Optional[dict] = None) -> bool:
        """
        Return True if the request may be sent, raise SafetyViolation if not.
        """
        self.checks_performed += 1
        method_upper = method.upper()

        if method_upper in READ_METHODS:
            return True

        if method_upper not in WRITE_METHODS:
            self._record_violation(method_upper, url, "Unsupported HTTP method")
            raise SafetyViolation(f"Unsupported HTTP method: {method_upper} {url}")

        if not self.allow_writes:
            self._record_violation(method_upper, url, "Write blocked in what-if mode")
            raise SafetyViolation(f"WHAT-IF VIOLATION: write attempted: {method_upper} {url}")

        self.writes.append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "method": method_upper,
            "url": url,
        })
        return True

    def _record_violation(self, method: str, url: str, reason: str):
        self.violations.append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "method": method,
            "url": url,
            "reason": reason,
        })
        logger.critical(f"SAFETY VIOLATION: {reason} — {method} {url}")

    def get_audit_record(self) -> dict:
        return {
            "mutation_guard": {
                "mode": "APPLY" if self.allow_writes else "WHAT-IF",
                "started_at": self.started_at,
                "checks_performed": self.checks_performed,
                "writes_performed": len(self.writes),
                "writes": self.writes,
                "violations_detected": len(self.violations),
                "violations": self.violations,
            }
        }

    @staticmethod
    def print_banner(what_if: bool):
        """Print the run-mode banner."""
        enc = getattr(sys.stdout, "encoding", "") or ""
        unicode_ok = (
            sys.stdout.isatty()
            and enc.lower().replace("-", "") in ("utf8", "utf16", "utf32")
        )
        if what_if:
            lines = [
                "WHAT-IF RUN — NO CHANGES WILL BE MADE",
                "* Tenant lookups and site checks are read-only",
                "* Every intended change is logged, none is applied",
                "* The guard blocks any write at the HTTP layer",
            ]
        else:
            lines = [
                "APPLY RUN — THE TENANT WILL BE MODIFIED",
                "* B2B policy, site, folders and sharing may be created",
                "* Use --enable-rollback to undo changes on failure",
                "* Every change is written to the audit log",
            ]

        if unicode_ok:
            width = 73
            try:
                print("╔" + "═" * width + "╗")
                for line in lines:
                    print("║  " + line.ljust(width - 2) + "║")
                print("╚" + "═" * width + "╝")
                return
            except UnicodeEncodeError:
                pass  # fall through to ASCII banner

        print("=" * 75)
        for line in lines:
            print("  " + line.replace("—", "--"))
        print("=" * 75)
