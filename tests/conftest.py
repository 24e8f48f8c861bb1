"""Shared fixtures and fakes for the daily report tests.

The project root is added to sys.path so `import redmine_report` works
without an editable install.
"""

import sys
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import redmine_report as rr  # noqa: E402


def make_entry(entry_id=1, project=('X', 1), issue_id=None, hours='1.0',
               activity='Development', comments='', spent_on=date(2024, 1, 15)):
    name, project_id = project
    return rr.TimeEntry(
        id=entry_id,
        project=rr.NamedRef(name=name, id=project_id),
        activity=rr.NamedRef(name=activity, id=9) if activity else None,
        comments=comments,
        hours=Decimal(hours),
        spent_on=spent_on,
        issue_id=issue_id,
    )


def make_issue(issue_id=42, status='In Progress', done_ratio=0, subject='Fix login'):
    return rr.IssueDetail(
        id=issue_id,
        subject=subject,
        status=rr.NamedRef(name=status, id=2) if status else None,
        priority=rr.NamedRef(name='Normal', id=2),
        tracker=rr.NamedRef(name='Bug', id=1),
        author=rr.NamedRef(name='Alice Smith', id=5),
        assigned_to=rr.NamedRef(name='Bob Jones', id=6),
        done_ratio=done_ratio,
    )


def raw_config(**report_overrides):
    report = {
        "title": "Report",
        "signature": "<p>Regards,<br>Automated Redmine Report</p>",
    }
    report.update(report_overrides)
    return {
        "redmine": {
            "url": "https://redmine.example.com/",
            "api_key": "secret-key",
            "user_id": "17",
        },
        "report": report,
        "email": {
            "recipients": ["client@example.com"],
            "cc": ["pm@example.com"],
            "subject": "Daily Report",
            "sender_name": "Dev Team",
            "operator_email": "me@example.com",
            "smtp_server": "smtp.example.com",
            "smtp_user": "me@example.com",
            "smtp_password": "pw",
        },
    }


class FakeClient:
    """Stands in for RedmineClient; records issue lookups."""

    def __init__(self, entries=(), issues=None, entries_error=None, failing_issues=()):
        self.entries = list(entries)
        self.issues = dict(issues or {})
        self.entries_error = entries_error
        self.failing_issues = set(failing_issues)
        self.issue_calls = []

    def get_time_entries(self, spent_on, user_id=None):
        if self.entries_error is not None:
            raise self.entries_error
        return list(self.entries)

    def get_issue(self, issue_id):
        self.issue_calls.append(issue_id)
        if issue_id in self.failing_issues or issue_id not in self.issues:
            raise rr.IssueLookupError(f"Issue #{issue_id}: HTTP 404")
        return self.issues[issue_id]


class FakeNotifier:
    """Records which notification path fired."""

    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def _record(self, kind, *args):
        if self.fail:
            raise rr.NotificationError("SMTP down")
        self.sent.append((kind,) + args)

    def send_report(self, html, report_date):
        self._record('report', html, report_date)

    def send_validation_failure(self, result, report_date):
        self._record('validation', result, report_date)

    def send_error(self, error, report_date=None):
        self._record('error', error, report_date)


@pytest.fixture
def config():
    return rr.ReportConfig.from_dict(raw_config())


@pytest.fixture
def report_date():
    return date(2024, 1, 15)
