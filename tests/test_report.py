"""Tests for the account export report."""

import csv
from datetime import date, datetime, timezone

import pytest

from gmsa_provisioner.report import NEVER_LOGGED_ON, export_account_reports, format_last_logon


class ReportDirectory:
    def __init__(self):
        self.queries = []

    def search_accounts(self, kind, max_age_days):
        self.queries.append((kind, max_age_days))
        rows = {
            "expired": [{"sAMAccountName": "jdoe", "lastLogonTimestamp": datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)}],
            "locked": [{"sAMAccountName": "asmith", "lastLogonTimestamp": None}],
            "never_expires": [],
        }
        return rows[kind]


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, NEVER_LOGGED_ON),
        (0, NEVER_LOGGED_ON),
        ("0", NEVER_LOGGED_ON),
        (datetime(1601, 1, 1, tzinfo=timezone.utc), NEVER_LOGGED_ON),
        (datetime(2024, 3, 1, 9, 30), "2024-03-01 09:30:00"),
        (133_540_000_000_000_000, "2024-03-04 04:26:40"),
        ([], NEVER_LOGGED_ON),
    ],
)
def test_format_last_logon(value, expected):
    assert format_last_logon(value) == expected


def test_three_dated_exports(tmp_path):
    directory = ReportDirectory()
    written = export_account_reports(directory, tmp_path, max_age_days=60, today=date(2026, 10, 19))

    assert directory.queries == [("expired", 60), ("locked", 60), ("never_expires", 60)]
    assert written["expired"] == tmp_path / "2026-10-19" / "expired_accounts_2026-10-19.csv"
    assert written["locked"].name == "locked_accounts_2026-10-19.csv"
    assert written["never_expires"].name == "never_expiring_accounts_2026-10-19.csv"

    with written["expired"].open(encoding="utf-8", newline="") as handle:
        assert list(csv.reader(handle)) == [["Name", "LastLogon"], ["jdoe", "2024-03-01 09:30:00"]]
    with written["locked"].open(encoding="utf-8", newline="") as handle:
        assert list(csv.reader(handle))[1] == ["asmith", NEVER_LOGGED_ON]
    with written["never_expires"].open(encoding="utf-8", newline="") as handle:
        assert list(csv.reader(handle)) == [["Name", "LastLogon"]]
