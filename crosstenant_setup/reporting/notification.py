"""
Notification — mails the HTML run report to a list of recipients.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from ..gateway.base import CollaborationGateway, GatewayFault
from .html_report import render_html

logger = logging.getLogger("crosstenant_setup.reporting.notification")


def report_subject(outcome: Any) -> str:
    prefix = "[WHAT-IF] " if outcome.context.is_simulation else ""
    return (
        f"{prefix}Cross-tenant setup {outcome.state.value}: "
        f"{outcome.context.host_tenant_domain} / {outcome.context.guest_tenant_domain or 'n/a'}"
    )


async def send_run_report(
    gateway: CollaborationGateway,
    outcome: Any,
    recipients: list[str],
    attachment: Optional[Path] = None,
) -> int:
    """
    Send the report to each recipient, one at a time.
    A failed delivery is logged and does not stop the others.

    Returns:
        Number of recipients the mail was delivered to.
    """
    if not recipients:
        return 0
    subject = report_subject(outcome)
    body = render_html(outcome)
    delivered = 0
    for recipient in recipients:
        try:
            await gateway.send_mail(recipient, subject, body, attachment)
        except GatewayFault as e:
            logger.error(f"Report mail to {recipient} failed: {e}")
            continue
        delivered += 1
        logger.info(f"Report sent to {recipient}")
    return delivered
