"""Export expired, locked-out and never-expiring user accounts to dated CSV files."""
from __future__ import annotations

import csv
import logging
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from .ad_client import FILETIME_EPOCH, REPORT_KINDS

logger = logging.getLogger(__name__)

NEVER_LOGGED_ON = "Never"
REPORT_FILE_PREFIXES = {
    "expired": "expired_accounts",
    "locked": "locked_accounts",
    "never_expires": "never_expiring_accounts",
}


def format_last_logon(value: Any) -> str:
    """Render ``lastLogonTimestamp`` as ISO text, or the ``Never`` sentinel when unset."""

    if value in (None, "", 0, "0"):
        return NEVER_LOGGED_ON
    if isinstance(value, (list, tuple)):
        return format_last_logon(value[0] if value else None)
    if isinstance(value, int) or (isinstance(value, str) and value.isdigit()):
        value = FILETIME_EPOCH + timedelta(microseconds=int(value) // 10)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        if value <= FILETIME_EPOCH:
            return NEVER_LOGGED_ON
        return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    return str(value)


def _write_report(path: Path, accounts: Iterable[Dict[str, Any]]) -> int:
    count = 0
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle)
        writer.writerow(["Name", "LastLogon"])
        for account in accounts:
            writer.writerow(
                [account.get("sAMAccountName", ""), format_last_logon(account.get("lastLogonTimestamp"))]
            )
            count += 1
    return count


def export_account_reports(
    directory: Any,
    output_dir: Path,
    max_age_days: int = 90,
    today: Optional[date] = None,
) -> Dict[str, Path]:
    """Query the directory and write one CSV per report kind under ``output_dir/<date>/``.

    Returns a mapping of report kind to the file written.
    """

    stamp = (today or date.today()).isoformat()
    target_dir = Path(output_dir) / stamp
    target_dir.mkdir(parents=True, exist_ok=True)

    written: Dict[str, Path] = {}
    for kind in REPORT_KINDS:
        accounts = directory.search_accounts(kind, max_age_days)
        path = target_dir / f"{REPORT_FILE_PREFIXES[kind]}_{stamp}.csv"
        count = _write_report(path, accounts)
        logger.info("Wrote %s %s account(s) to %s", count, kind.replace("_", "-"), path)
        written[kind] = path
    return written


__all__ = ["NEVER_LOGGED_ON", "export_account_reports", "format_last_logon"]
