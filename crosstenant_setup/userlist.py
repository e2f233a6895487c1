"""
User source parsing — inline `email:Type:Role` lists and CSV files.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path

from .config import ConfigurationError, UserEntry

logger = logging.getLogger("crosstenant_setup.userlist")

CSV_COLUMNS = ("email", "usertype", "role")


def parse_inline_users(values: list[str]) -> list[UserEntry]:
    """
    Parse `alice@partner.com:Guest:Member` style entries.
    Entries may also be comma-separated inside a single argument.
    """
    users = []
    for raw in values:
        for item in raw.split(","):
            item = item.strip()
            if not item:
                continue
            parts = item.split(":")
            if len(parts) != 3:
                raise ConfigurationError(
                    f"Invalid user entry '{item}' (expected email:Guest|Host:Owner|Member|Visitor)"
                )
            users.append(UserEntry.parse(*parts))
    return users


def load_users_csv(path) -> list[UserEntry]:
    """
    Load users from a CSV file with Email, UserType and Role columns.
    Header names are case-insensitive; a UTF-8 BOM is tolerated.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"User file not found: {path}")

    users = []
    with open(path, "r", newline="", encoding="utf-8-sig") as fh:
        reader = csv.DictReader(fh)
        headers = {(h or "").strip().lower(): h for h in (reader.fieldnames or [])}
        missing = [c for c in CSV_COLUMNS if c not in headers]
        if missing:
            raise ConfigurationError(
                f"User file {path.name} is missing column(s): {', '.join(missing)}"
            )
        # Row 1 is the header
        for row_number, row in enumerate(reader, start=2):
            values = {c: (row.get(headers[c]) or "").strip() for c in CSV_COLUMNS}
            if not any(values.values()):
                continue
            try:
                users.append(UserEntry.parse(values["email"], values["usertype"], values["role"]))
            except ConfigurationError as e:
                raise ConfigurationError(f"{path.name} row {row_number}: {e}")

    logger.info(f"Loaded {len(users)} users from {path}")
    return users
