#!/usr/bin/env python3
"""
Redmine Daily Report
====================

Emails a daily HTML report of a user's Redmine time entries.

Features:
- Fetches the day's time entries from the Redmine REST API
- Optional project filter
- Enriches every entry with its issue details (status, priority, % done)
- Optional check that the day adds up to the expected hours
- HTML report to the client, error notices to the operator

Run it once a day from cron or Task Scheduler.

Version: 1.0.0
"""

import sys
import json
import logging
import argparse
import smtplib
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from email.utils import formataddr
from pathlib import Path
from typing import Dict, List, Literal, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests
from jinja2 import DictLoader, Environment
from markupsafe import Markup

# ============================================================================
# CONFIGURATION
# ============================================================================

# Script directory
SCRIPT_DIR = Path(__file__).parent


def _default_home(script_dir: Path = SCRIPT_DIR) -> Path:
    """Checkout directory when run from source, else the working directory."""
    if (script_dir / "pyproject.toml").exists():
        return script_dir
    return Path.cwd()


APP_DIR = _default_home()
CONFIG_FILE = APP_DIR / "config.json"
LOG_FILE = APP_DIR / "redmine_report.log"

DEFAULT_COMPLETED_STATUSES = ('Resolved', 'Closed', 'Deployed')
DEFAULT_EXPECTED_HOURS = Decimal('8')
HOURS_QUANTUM = Decimal('0.01')
PLACEHOLDER = '-'

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, log_file: Path = LOG_FILE):
    """Log to the report log file and to stdout."""
    handlers = [logging.StreamHandler(sys.stdout)]
    file_error = None
    try:
        handlers.insert(0, logging.FileHandler(log_file, encoding='utf-8'))
    except OSError as e:
        file_error = e
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
    if file_error is not None:
        logger.warning(f"Cannot write log file {log_file}: {file_error}")


# ============================================================================
# ERRORS
# ============================================================================

class ReportError(Exception):
    """Base class for daily report failures."""


class ConfigError(ReportError):
    pass


class RemoteApiError(ReportError):
    """The time entry list could not be fetched. Fatal for the run."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class IssueLookupError(ReportError):
    """A single issue could not be fetched. The entry renders without it."""


class MissingSignature(ReportError):
    pass


class NotificationError(ReportError):
    """The mail transport failed."""


# ============================================================================
# SETTINGS
# ============================================================================

def _as_tuple(value) -> Tuple[str, ...]:
    """Accept a list or a comma-separated string, drop blanks."""
    if value is None:
        return ()
    if isinstance(value, (str, int)):
        value = str(value).split(',')
    return tuple(str(v).strip() for v in value if str(v).strip())


def _as_bool(value, key: str) -> bool:
    """JSON booleans, or the strings true/false/yes/no/on/off/1/0."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {'1', 'true', 'yes', 'on'}:
        return True
    if text in {'0', 'false', 'no', 'off'}:
        return False
    raise ConfigError(f"{key} must be true or false, got {value!r}")


def _require(section: Dict, key: str, prefix: str):
    value = section.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ConfigError(f"Missing required setting: {prefix}.{key}")
    return value


@dataclass(frozen=True)
class RedmineSettings:
    url: str
    api_key: str
    user_id: str = 'me'
    timeout_seconds: float = 30
    page_size: int = 100


@dataclass(frozen=True)
class ReportSettings:
    title: str = 'Report'
    customer_name: str = ''
    project_filter: Tuple[str, ...] = ()
    validate_hours: bool = False
    expected_hours: Decimal = DEFAULT_EXPECTED_HOURS
    completed_statuses: Tuple[str, ...] = DEFAULT_COMPLETED_STATUSES
    signature: str = ''
    signature_file: str = ''
    timezone: str = ''
    enrich_workers: int = 1


@dataclass(frozen=True)
class EmailSettings:
    recipients: Tuple[str, ...]
    cc: Tuple[str, ...] = ()
    subject: str = 'Daily Report'
    subject_date_format: str = '%d.%m.%Y'
    sender_name: str = ''
    operator_email: str = ''
    smtp_server: str = 'localhost'
    smtp_port: int = 587
    smtp_user: str = ''
    smtp_password: str = ''
    use_tls: bool = True

    @property
    def operator_address(self) -> str:
        return self.operator_email or self.smtp_user


@dataclass(frozen=True)
class ReportConfig:
    """Immutable settings for one report run."""

    redmine: RedmineSettings
    report: ReportSettings
    email: EmailSettings
    base_dir: Path = SCRIPT_DIR

    @classmethod
    def from_dict(cls, raw: Dict, base_dir: Path = SCRIPT_DIR) -> 'ReportConfig':
        """
        Build settings from the parsed config.json mapping.

        Raises:
            ConfigError: when a required key is missing or a value is invalid
        """
        if not isinstance(raw, dict):
            raise ConfigError("Config root must be a JSON object")

        redmine_raw = raw.get('redmine') or {}
        report_raw = raw.get('report') or {}
        email_raw = raw.get('email') or {}

        try:
            redmine = RedmineSettings(
                url=str(_require(redmine_raw, 'url', 'redmine')).rstrip('/'),
                api_key=str(_require(redmine_raw, 'api_key', 'redmine')),
                user_id=str(redmine_raw.get('user_id') or 'me'),
                timeout_seconds=float(redmine_raw.get('timeout_seconds', 30)),
                page_size=int(redmine_raw.get('page_size', 100))
            )

            statuses = _as_tuple(report_raw.get('completed_statuses'))
            report = ReportSettings(
                title=str(report_raw.get('title') or 'Report'),
                customer_name=str(report_raw.get('customer_name') or ''),
                project_filter=_as_tuple(report_raw.get('project_filter')),
                validate_hours=_as_bool(report_raw.get('validate_hours', False),
                                        'report.validate_hours'),
                expected_hours=Decimal(
                    str(report_raw.get('expected_hours', DEFAULT_EXPECTED_HOURS))
                ),
                completed_statuses=statuses or DEFAULT_COMPLETED_STATUSES,
                signature=str(report_raw.get('signature') or ''),
                signature_file=str(report_raw.get('signature_file') or ''),
                timezone=str(report_raw.get('timezone') or ''),
                enrich_workers=max(1, int(report_raw.get('enrich_workers', 1)))
            )

            recipients = _as_tuple(_require(email_raw, 'recipients', 'email'))
            if not recipients:
                raise ConfigError("Missing required setting: email.recipients")
            email = EmailSettings(
                recipients=recipients,
                cc=_as_tuple(email_raw.get('cc')),
                subject=str(email_raw.get('subject') or 'Daily Report'),
                subject_date_format=str(
                    email_raw.get('subject_date_format') or '%d.%m.%Y'
                ),
                sender_name=str(email_raw.get('sender_name') or ''),
                operator_email=str(email_raw.get('operator_email') or ''),
                smtp_server=str(email_raw.get('smtp_server') or 'localhost'),
                smtp_port=int(email_raw.get('smtp_port', 587)),
                smtp_user=str(email_raw.get('smtp_user') or ''),
                smtp_password=str(email_raw.get('smtp_password') or ''),
                use_tls=_as_bool(email_raw.get('use_tls', True), 'email.use_tls')
            )
        except (TypeError, ValueError, InvalidOperation) as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e

        if report.timezone:
            try:
                ZoneInfo(report.timezone)
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ConfigError(
                    f"Unknown timezone: {report.timezone}"
                ) from e

        return cls(redmine=redmine, report=report, email=email,
                   base_dir=base_dir)


class ConfigManager:
    """Loads config.json and turns it into a ReportConfig."""

    def __init__(self, config_path: Path = CONFIG_FILE,
                 force_setup: bool = False):
        self.config_path = Path(config_path)
        if force_setup:
            self.config = self.setup_wizard()
        else:
            self.config = self.load_config()

    def load_config(self) -> Dict:
        """Load configuration from file or create new one."""
        if not self.config_path.exists():
            if not sys.stdin or not sys.stdin.isatty():
                raise ConfigError(f"Config not found: {self.config_path}")
            logger.info("No configuration found. Starting setup wizard...")
            return self.setup_wizard()

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                config = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Error loading configuration: {e}")
            raise ConfigError(f"Cannot read {self.config_path}: {e}") from e
        logger.info("Configuration loaded successfully")
        return config

    def get_report_config(self) -> ReportConfig:
        return ReportConfig.from_dict(
            self.config, base_dir=self.config_path.parent
        )

    def setup_wizard(self) -> Dict:
        """Interactive setup wizard for first-time configuration."""
        print("\n" + "="*60)
        print("REDMINE DAILY REPORT - FIRST TIME SETUP")
        print("="*60)
        print("\nThis wizard writes a config.json you can edit later.\n")

        print("--- REDMINE ---")
        redmine_url = input("Redmine URL (e.g. https://redmine.example.com): ").strip()
        print("\n[INFO] Your API key is under My account -> API access key")
        api_key = input("Redmine API key: ").strip()
        user_id = input("Redmine user ID (default: me): ").strip() or "me"

        print("\n--- REPORT ---")
        customer_name = input("Greeting name, e.g. the client's name (optional): ").strip()
        projects = input(
            "Only include these projects, comma-separated ids or names "
            "(Enter for all): "
        ).strip()
        validate = input(
            "Skip the report unless the day totals 8 hours? (yes/no, default: no): "
        ).strip().lower() in ['yes', 'y']
        signature = input("Signature (HTML allowed): ").strip()

        print("\n--- EMAIL ---")
        recipients = input("Report recipients, comma-separated: ").strip()
        cc = input("CC recipients, comma-separated (optional): ").strip()
        subject = input("Subject label (default: Daily Report): ").strip() or "Daily Report"
        sender_name = input("Sender display name (optional): ").strip()
        smtp_server = input("SMTP server (default: smtp.gmail.com): ").strip() or "smtp.gmail.com"
        smtp_port = int(input("SMTP port (default: 587): ").strip() or "587")
        smtp_user = input("SMTP login / sender address: ").strip()
        smtp_password = input("SMTP password or app password: ").strip()
        operator_email = input(
            f"Send error notices to (default: {smtp_user}): "
        ).strip() or smtp_user

        config = {
            "redmine": {
                "url": redmine_url,
                "api_key": api_key,
                "user_id": user_id
            },
            "report": {
                "title": "Report",
                "customer_name": customer_name,
                "project_filter": list(_as_tuple(projects)),
                "validate_hours": validate,
                "expected_hours": 8,
                "completed_statuses": list(DEFAULT_COMPLETED_STATUSES),
                "signature": signature
            },
            "email": {
                "recipients": list(_as_tuple(recipients)),
                "cc": list(_as_tuple(cc)),
                "subject": subject,
                "subject_date_format": "%d.%m.%Y",
                "sender_name": sender_name,
                "operator_email": operator_email,
                "smtp_server": smtp_server,
                "smtp_port": smtp_port,
                "smtp_user": smtp_user,
                "smtp_password": smtp_password,
                "use_tls": True
            }
        }

        self.save_config(config)

        print("\n" + "="*60)
        print("[OK] SETUP COMPLETE!")
        print("="*60)
        print(f"\nConfiguration saved to: {self.config_path}\n")

        return config

    def save_config(self, config: Dict):
        """Save configuration to file."""
        try:
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(config, f, indent=2)
        except OSError as e:
            logger.error(f"Error saving configuration: {e}")
            raise ConfigError(f"Cannot write {self.config_path}: {e}") from e
        logger.info("Configuration saved successfully")


# ============================================================================
# DATA MODEL
# ============================================================================

def parse_hours(value) -> Decimal:
    """Convert a JSON hours value to Decimal without float noise."""
    if value is None or isinstance(value, bool):
        raise ValueError(f"invalid hours value: {value!r}")
    try:
        hours = Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"invalid hours value: {value!r}") from e
    if not hours.is_finite() or hours < 0:
        raise ValueError(f"invalid hours value: {value!r}")
    return hours


def round_hours(hours: Decimal) -> Decimal:
    return hours.quantize(HOURS_QUANTUM, rounding=ROUND_HALF_UP)


def format_hours(hours: Decimal) -> str:
    """8 -> '8.0', 7.50 -> '7.5', 1.25 -> '1.25', 8/3 -> '2.67'."""
    text = format(round_hours(hours).normalize(), 'f')
    if '.' not in text:
        text += '.0'
    return text


def total_hours(entries) -> Decimal:
    """Sum at full precision, then round once to 0.01h.

    Redmine stores 2:40 as 2.6666666666666665, so three such entries must
    come out as 8.00 and not 7.9999999999999995 or 8.01.
    """
    return round_hours(sum((e.hours for e in entries), Decimal('0')))


@dataclass(frozen=True)
class NamedRef:
    """An {id, name} reference as Redmine embeds it."""

    name: str
    id: Optional[int] = None

    @classmethod
    def from_json(cls, data) -> Optional['NamedRef']:
        if not data:
            return None
        ref_id = data.get('id')
        return cls(name=str(data.get('name') or ''),
                   id=int(ref_id) if ref_id is not None else None)


@dataclass(frozen=True)
class TimeEntry:
    id: int
    project: NamedRef
    activity: Optional[NamedRef]
    comments: str
    hours: Decimal
    spent_on: date
    issue_id: Optional[int] = None
    user: Optional[NamedRef] = None

    @classmethod
    def from_json(cls, data: Dict) -> 'TimeEntry':
        """
        Parse one item of the time_entries.json list.

        Raises:
            KeyError, TypeError, ValueError: on a malformed item
        """
        project = NamedRef.from_json(data['project'])
        if project is None:
            raise ValueError(f"time entry {data.get('id')} has no project")
        issue = data.get('issue')
        return cls(
            id=int(data['id']),
            project=project,
            activity=NamedRef.from_json(data.get('activity')),
            comments=str(data.get('comments') or ''),
            hours=parse_hours(data['hours']),
            spent_on=date.fromisoformat(data['spent_on']),
            issue_id=int(issue['id']) if issue else None,
            user=NamedRef.from_json(data.get('user'))
        )


@dataclass(frozen=True)
class IssueDetail:
    id: int
    subject: str = ''
    status: Optional[NamedRef] = None
    priority: Optional[NamedRef] = None
    tracker: Optional[NamedRef] = None
    author: Optional[NamedRef] = None
    assigned_to: Optional[NamedRef] = None
    done_ratio: int = 0

    @classmethod
    def from_json(cls, payload: Dict) -> 'IssueDetail':
        """Parse the body of issues/{id}.json."""
        issue = payload['issue']
        return cls(
            id=int(issue['id']),
            subject=str(issue.get('subject') or ''),
            status=NamedRef.from_json(issue.get('status')),
            priority=NamedRef.from_json(issue.get('priority')),
            tracker=NamedRef.from_json(issue.get('tracker')),
            author=NamedRef.from_json(issue.get('author')),
            assigned_to=NamedRef.from_json(issue.get('assigned_to')),
            done_ratio=int(issue.get('done_ratio') or 0)
        )


@dataclass(frozen=True)
class EnrichedEntry:
    entry: TimeEntry
    issue: Optional[IssueDetail] = None

    @property
    def hours(self) -> Decimal:
        return self.entry.hours


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    total_hours: Decimal
    expected_hours: Decimal
    message: Optional[str] = None


@dataclass(frozen=True)
class ReportRow:
    """Display values for one table row. Plain text, escaped at render time."""

    project: str
    issue: str
    activity: str
    comments: str
    author: str
    tracker: str
    status: str
    priority: str
    assignee: str
    subject: str
    hours: Decimal
    done_ratio: int
    style: str

    @property
    def hours_text(self) -> str:
        return format_hours(self.hours)


@dataclass(frozen=True)
class Report:
    report_date: date
    rows: Tuple[ReportRow, ...]
    total_hours: Decimal

    @property
    def total_text(self) -> str:
        return format_hours(self.total_hours)


RunOutcome = Literal['no_entries', 'report_sent', 'validation_failed', 'error']


# ============================================================================
# REDMINE API CLIENT
# ============================================================================

class RedmineClient:
    """Handles Redmine REST API interactions."""

    def __init__(self, settings: RedmineSettings,
                 session: Optional[requests.Session] = None):
        self.base_url = settings.url.rstrip('/')
        self.user_id = settings.user_id
        self.timeout = settings.timeout_seconds
        self.page_size = settings.page_size
        self.session = session or requests.Session()
        self.session.headers.update({
            'X-Redmine-API-Key': settings.api_key,
            'Content-Type': 'application/json'
        })

    def _get(self, path: str, params: Optional[Dict] = None) -> requests.Response:
        url = f"{self.base_url}/{path}"
        return self.session.get(url, params=params, timeout=self.timeout)

    def get_time_entries(self, spent_on: date,
                         user_id: Optional[str] = None) -> List[TimeEntry]:
        """
        Fetch all time entries the user logged on a date.

        Args:
            spent_on: The day to report
            user_id: Redmine user id, defaults to the configured one

        Returns:
            Entries in the order Redmine returns them

        Raises:
            RemoteApiError: on any non-200 response, transport error or
                malformed body
        """
        params = {
            'user_id': user_id or self.user_id,
            'spent_on': spent_on.isoformat(),
            'limit': self.page_size,
            'offset': 0
        }
        entries: List[TimeEntry] = []

        while True:
            try:
                response = self._get('time_entries.json', params=dict(params))
            except requests.exceptions.RequestException as e:
                raise RemoteApiError(f"Redmine request failed: {e}") from e

            if response.status_code != 200:
                raise RemoteApiError(
                    f"Redmine API error: {response.status_code}",
                    status_code=response.status_code
                )

            try:
                data = response.json()
                batch = data.get('time_entries') or []
                entries.extend(TimeEntry.from_json(item) for item in batch)
                total_count = data.get('total_count')
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                raise RemoteApiError(
                    f"Malformed time entries response: {e}"
                ) from e

            params['offset'] += len(batch)
            if not batch or total_count is None or params['offset'] >= int(total_count):
                break

        logger.info(
            f"Fetched {len(entries)} time entries for {spent_on.isoformat()}"
        )
        return entries

    def get_issue(self, issue_id: int) -> IssueDetail:
        """
        Fetch one issue's details.

        Raises:
            IssueLookupError: on any failure, the caller decides whether
                it matters
        """
        try:
            response = self._get(f"issues/{issue_id}.json")
        except requests.exceptions.RequestException as e:
            raise IssueLookupError(f"Issue #{issue_id}: {e}") from e

        if response.status_code != 200:
            raise IssueLookupError(
                f"Issue #{issue_id}: HTTP {response.status_code}"
            )

        try:
            return IssueDetail.from_json(response.json())
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise IssueLookupError(
                f"Issue #{issue_id}: malformed response ({e})"
            ) from e


def filter_by_project(entries: Sequence[TimeEntry],
                      terms: Sequence[str]) -> List[TimeEntry]:
    """Keep entries whose project id or name equals one of the terms."""
    wanted = {str(t).strip() for t in terms if str(t).strip()}
    if not wanted:
        return list(entries)

    kept = []
    for entry in entries:
        project_id = str(entry.project.id) if entry.project.id is not None else None
        if project_id in wanted or entry.project.name in wanted:
            kept.append(entry)
    logger.info(f"Project filter kept {len(kept)} of {len(entries)} entries")
    return kept


# ============================================================================
# ISSUE ENRICHMENT
# ============================================================================

class IssueEnricher:
    """Joins time entries with their issue details."""

    def __init__(self, client: RedmineClient, max_workers: int = 1):
        self.client = client
        self.max_workers = max(1, int(max_workers))

    def enrich(self, entries: Sequence[TimeEntry]) -> List[EnrichedEntry]:
        # Each issue is looked up once per run
        issue_ids = list(dict.fromkeys(
            e.issue_id for e in entries if e.issue_id is not None
        ))
        details = self._lookup_all(issue_ids)

        enriched = [
            EnrichedEntry(
                entry=e,
                issue=details.get(e.issue_id) if e.issue_id is not None else None
            )
            for e in entries
        ]
        missing = sum(1 for e in enriched
                      if e.entry.issue_id is not None and e.issue is None)
        logger.info(
            f"Enriched {len(enriched)} entries "
            f"({len(issue_ids)} issues, {missing} lookups failed)"
        )
        return enriched

    def _lookup(self, issue_id: int) -> Optional[IssueDetail]:
        try:
            return self.client.get_issue(issue_id)
        except IssueLookupError as e:
            logger.warning(f"Issue lookup failed, rendering blanks: {e}")
            return None

    def _lookup_all(self, issue_ids: List[int]) -> Dict[int, Optional[IssueDetail]]:
        if self.max_workers == 1 or len(issue_ids) < 2:
            return {iid: self._lookup(iid) for iid in issue_ids}

        details: Dict[int, Optional[IssueDetail]] = {}
        workers = min(self.max_workers, len(issue_ids))
        with ThreadPoolExecutor(max_workers=workers) as ex:
            future_to_id = {ex.submit(self._lookup, iid): iid for iid in issue_ids}
            for fut in as_completed(future_to_id):
                details[future_to_id[fut]] = fut.result()
        return details


# ============================================================================
# VALIDATION
# ============================================================================

def validate_hours(entries, expected: Decimal = DEFAULT_EXPECTED_HOURS) -> ValidationResult:
    """
    Check that the day's hours add up to exactly the expected total.

    Sums are Decimal, so 80 entries of 0.1h make exactly 8.0.
    """
    total = total_hours(entries)
    if total == expected:
        return ValidationResult(True, total, expected)

    if total < expected:
        message = (
            f"Logged {format_hours(total)}h, which is less than the "
            f"expected {format_hours(expected)}h "
            f"(missing {format_hours(expected - total)}h)"
        )
    else:
        message = (
            f"Logged {format_hours(total)}h, which is more than the "
            f"expected {format_hours(expected)}h "
            f"(extra {format_hours(total - expected)}h)"
        )
    return ValidationResult(False, total, expected, message)


# ============================================================================
# REPORT RENDERING
# ============================================================================

CELL_STYLE = "border: 1px solid #ddd; padding: 8px;"
ROW_COLORS = {
    'completed': '#e8f5e9',
    'even': '#ffffff',
    'odd': '#f7f7f7',
}
COLUMNS = (
    'Project', 'Issue', 'Activity', 'Comment', 'Author', 'Tracker',
    'Status', 'Priority', 'Assignee', 'Subject', 'Time', 'Done'
)

REPORT_TEMPLATE = """\
<html>
  <body style="font-family: Arial, sans-serif;">
{% if customer_name %}
    <p>Hello, {{ customer_name }}!</p>
{% endif %}
    <h2>{{ title }} for {{ date_text }}</h2>
    <table style="border-collapse: collapse; width: 100%; margin: 20px 0;">
      <thead>
        <tr style="background-color: #f2f2f2;">
{% for column in columns %}
          <th style="{{ cell }} text-align: left;">{{ column }}</th>
{% endfor %}
        </tr>
      </thead>
      <tbody>
{% for row in rows %}
        <tr style="background-color: {{ colors[row.style] }};">
          <td style="{{ cell }}">{{ row.project }}</td>
          <td style="{{ cell }}">{{ row.issue }}</td>
          <td style="{{ cell }}">{{ row.activity }}</td>
          <td style="{{ cell }}">{{ row.comments }}</td>
          <td style="{{ cell }}">{{ row.author }}</td>
          <td style="{{ cell }}">{{ row.tracker }}</td>
          <td style="{{ cell }}">{{ row.status }}</td>
          <td style="{{ cell }}">{{ row.priority }}</td>
          <td style="{{ cell }}">{{ row.assignee }}</td>
          <td style="{{ cell }}">{{ row.subject }}</td>
          <td style="{{ cell }} text-align: right;">{{ row.hours_text }} h</td>
          <td style="{{ cell }}">
            <div style="background-color: #e0e0e0; width: 100px; height: 10px;">
              <div style="background-color: #4caf50; width: {{ row.done_ratio }}%; height: 10px;"></div>
            </div>
            <span style="font-size: 0.85em;">{{ row.done_ratio }}%</span>
          </td>
        </tr>
{% endfor %}
      </tbody>
      <tfoot>
        <tr style="background-color: #f9f9f9; font-weight: bold;">
          <td colspan="{{ columns|length - 2 }}" style="{{ cell }} text-align: right;">Total:</td>
          <td style="{{ cell }} text-align: right;">{{ total_text }} h</td>
          <td style="{{ cell }}"></td>
        </tr>
      </tfoot>
    </table>
    <div style="margin-top: 30px; color: #666;">
{{ signature }}
    </div>
  </body>
</html>
"""

_templates = Environment(
    loader=DictLoader({'report.html': REPORT_TEMPLATE}),
    autoescape=True,
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True
)


def _name(ref: Optional[NamedRef]) -> str:
    if ref is None or not ref.name:
        return PLACEHOLDER
    return ref.name


class ReportRenderer:
    """Turns enriched entries into the HTML report."""

    def __init__(self, title: str = 'Report', customer_name: str = '',
                 completed_statuses: Sequence[str] = DEFAULT_COMPLETED_STATUSES,
                 date_format: str = '%d.%m.%Y'):
        self.title = title
        self.customer_name = customer_name
        self.completed_statuses = {s.strip().lower() for s in completed_statuses}
        self.date_format = date_format

    def _row_style(self, index: int, status: Optional[NamedRef]) -> str:
        if status is not None and status.name.strip().lower() in self.completed_statuses:
            return 'completed'
        return 'even' if index % 2 == 0 else 'odd'

    def build_row(self, index: int, item: EnrichedEntry) -> ReportRow:
        entry, issue = item.entry, item.issue
        return ReportRow(
            project=entry.project.name or PLACEHOLDER,
            issue=f"#{entry.issue_id}" if entry.issue_id is not None else PLACEHOLDER,
            activity=_name(entry.activity),
            comments=entry.comments or PLACEHOLDER,
            author=_name(issue.author) if issue else PLACEHOLDER,
            tracker=_name(issue.tracker) if issue else PLACEHOLDER,
            status=_name(issue.status) if issue else PLACEHOLDER,
            priority=_name(issue.priority) if issue else PLACEHOLDER,
            assignee=_name(issue.assigned_to) if issue else PLACEHOLDER,
            subject=(issue.subject or PLACEHOLDER) if issue else PLACEHOLDER,
            hours=entry.hours,
            done_ratio=min(100, max(0, issue.done_ratio)) if issue else 0,
            style=self._row_style(index, issue.status if issue else None)
        )

    def build_report(self, entries: Sequence[EnrichedEntry],
                     report_date: date) -> Report:
        """Rows in fetch order plus the running total."""
        rows = tuple(self.build_row(index, item)
                     for index, item in enumerate(entries))
        return Report(report_date=report_date, rows=rows,
                      total_hours=total_hours(rows))

    def render_report(self, report: Report, signature: str) -> str:
        if not signature or not signature.strip():
            raise MissingSignature("Cannot render a report without a signature")
        template = _templates.get_template('report.html')
        return template.render(
            title=self.title,
            customer_name=self.customer_name,
            date_text=report.report_date.strftime(self.date_format),
            columns=COLUMNS,
            cell=CELL_STYLE,
            colors=ROW_COLORS,
            rows=report.rows,
            total_text=report.total_text,
            # Signature is operator-supplied markup
            signature=Markup(signature)
        )

    def render(self, entries: Sequence[EnrichedEntry], report_date: date,
               signature: str) -> str:
        return self.render_report(self.build_report(entries, report_date),
                                  signature)


# ============================================================================
# SIGNATURE
# ============================================================================

class SignatureProvider:
    """Supplies the closing signature markup, or None when there is none."""

    def __init__(self, inline: str = '', path: Optional[Path] = None):
        self.inline = inline
        self.path = path

    @classmethod
    def from_config(cls, config: ReportConfig) -> 'SignatureProvider':
        path = None
        if config.report.signature_file:
            path = Path(config.report.signature_file)
            if not path.is_absolute():
                path = config.base_dir / path
        return cls(inline=config.report.signature, path=path)

    def get(self) -> Optional[str]:
        if self.path is not None:
            try:
                text = self.path.read_text(encoding='utf-8')
            except OSError as e:
                logger.warning(f"Cannot read signature file {self.path}: {e}")
                return None
        else:
            text = self.inline
        return text.strip() or None


# ============================================================================
# NOTIFICATION MANAGER
# ============================================================================

class NotificationManager:
    """Handles email notifications."""

    def __init__(self, settings: EmailSettings, smtp_factory=smtplib.SMTP,
                 dry_run: bool = False):
        self.settings = settings
        self.smtp_factory = smtp_factory
        self.dry_run = dry_run

    def send_report(self, html: str, report_date: date):
        """Send the report to the recipients and CC list."""
        subject = (
            f"{self.settings.subject} - "
            f"{report_date.strftime(self.settings.subject_date_format)}"
        )
        self._send_email(list(self.settings.recipients), subject, html,
                         subtype='html', cc=list(self.settings.cc))

    def send_validation_failure(self, result: ValidationResult,
                                report_date: date):
        """Tell the operator the day does not add up. Never goes to clients."""
        subject = f"Daily report not sent: hours mismatch on {report_date.isoformat()}"
        body = (
            f"The daily report for {report_date.isoformat()} was not sent.\n\n"
            f"{result.message}\n\n"
            f"Total hours: {format_hours(result.total_hours)}\n"
            f"Expected hours: {format_hours(result.expected_hours)}\n"
        )
        self._send_email([self._operator()], subject, body)

    def send_error(self, error: BaseException,
                   report_date: Optional[date] = None):
        """Send the operator an error notice with a timestamp."""
        subject = 'Error in Redmine daily report'
        when = f" for {report_date.isoformat()}" if report_date else ""
        body = (
            f"An error occurred while generating the daily report{when}:\n\n"
            f"{type(error).__name__}: {error}\n\n"
            f"Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n"
        )
        self._send_email([self._operator()], subject, body)

    def _operator(self) -> str:
        address = self.settings.operator_address
        if not address:
            raise NotificationError("No operator email configured")
        return address

    def _build_message(self, recipients: List[str], subject: str, body: str,
                       subtype: str, cc: List[str]):
        if subtype == 'html':
            msg = MIMEMultipart('alternative')
            msg.attach(MIMEText(body, 'html', 'utf-8'))
        else:
            msg = MIMEText(body, 'plain', 'utf-8')
        msg['Subject'] = subject
        msg['From'] = formataddr((self.settings.sender_name, self.settings.smtp_user))
        msg['To'] = ', '.join(recipients)
        if cc:
            msg['Cc'] = ', '.join(cc)
        return msg

    def _send_email(self, recipients: List[str], subject: str, body: str,
                    subtype: str = 'plain', cc: Optional[List[str]] = None):
        """
        Send email via SMTP.

        Raises:
            NotificationError: when the message could not be handed over
        """
        cc = cc or []
        msg = self._build_message(recipients, subject, body, subtype, cc)

        if self.dry_run:
            print(f"\n[DRY RUN] To: {msg['To']}" + (f" | Cc: {msg['Cc']}" if cc else ""))
            print(f"[DRY RUN] Subject: {subject}\n")
            print(body)
            logger.info(f"Dry run, email not sent: {subject}")
            return

        try:
            with self.smtp_factory(self.settings.smtp_server,
                                   self.settings.smtp_port,
                                   timeout=30) as server:
                if self.settings.use_tls:
                    server.starttls()
                if self.settings.smtp_user and self.settings.smtp_password:
                    server.login(self.settings.smtp_user,
                                 self.settings.smtp_password)
                server.sendmail(self.settings.smtp_user,
                                recipients + cc, msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"Could not send '{subject}': {e}") from e

        logger.info(
            f"Email sent: {subject} -> {', '.join(recipients)}"
            + (f" (CC: {', '.join(cc)})" if cc else "")
        )


# ============================================================================
# REPORT PIPELINE
# ============================================================================

def today_in(timezone: str = '') -> date:
    if timezone:
        return datetime.now(ZoneInfo(timezone)).date()
    return date.today()


class DailyReport:
    """Fetch, enrich, validate, render and send one day's report."""

    def __init__(self, config: ReportConfig,
                 client: Optional[RedmineClient] = None,
                 notifier: Optional[NotificationManager] = None,
                 signatures: Optional[SignatureProvider] = None,
                 dry_run: bool = False,
                 output: Optional[Path] = None):
        self.config = config
        self.client = client or RedmineClient(config.redmine)
        self.notifier = notifier or NotificationManager(config.email,
                                                        dry_run=dry_run)
        self.signatures = signatures or SignatureProvider.from_config(config)
        self.enricher = IssueEnricher(self.client,
                                      max_workers=config.report.enrich_workers)
        self.renderer = ReportRenderer(
            title=config.report.title,
            customer_name=config.report.customer_name,
            completed_statuses=config.report.completed_statuses,
            date_format=config.email.subject_date_format
        )
        self.output = output

    def run(self, target_date: Optional[date] = None) -> RunOutcome:
        """
        Run the pipeline once. Exactly one email goes out, or none when
        there is nothing to report.

        Args:
            target_date: Day to report, defaults to today

        Returns:
            What happened, see RunOutcome
        """
        if target_date is None:
            target_date = today_in(self.config.report.timezone)

        logger.info(f"Starting daily report for {target_date.isoformat()}")
        now_ts = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        print(f"\n{'='*60}")
        print(f"REDMINE DAILY REPORT - {target_date.isoformat()} (started {now_ts})")
        print(f"{'='*60}\n")

        try:
            outcome = self._run(target_date)
        except NotificationError as e:
            logger.error(f"Notification failed: {e}")
            print(f"[FAIL] {e}")
            return 'error'

        logger.info(f"Daily report finished: {outcome}")
        return outcome

    def _collect_entries(self, target_date: date) -> List[TimeEntry]:
        entries = self.client.get_time_entries(target_date)
        if self.config.report.project_filter:
            entries = filter_by_project(entries, self.config.report.project_filter)
        return entries

    def _run(self, target_date: date) -> RunOutcome:
        try:
            entries = self._collect_entries(target_date)
            if not entries:
                logger.info(f"No time entries for {target_date.isoformat()}")
                print("[SKIP] No time entries, nothing to send")
                return 'no_entries'

            signature = self.signatures.get()
            if signature is None:
                raise MissingSignature(
                    "No signature configured (report.signature or "
                    "report.signature_file)"
                )

            enriched = self.enricher.enrich(entries)

            if self.config.report.validate_hours:
                result = validate_hours(enriched, self.config.report.expected_hours)
                if not result.is_valid:
                    logger.warning(f"Validation failed: {result.message}")
                    print(f"[!] {result.message}")
                    self.notifier.send_validation_failure(result, target_date)
                    return 'validation_failed'
                print(f"[OK] Hours check passed ({format_hours(result.total_hours)}h)")

            report = self.renderer.build_report(enriched, target_date)
            html = self.renderer.render_report(report, signature)

            if self.output is not None:
                self.output.write_text(html, encoding='utf-8')
                logger.info(f"Report saved to {self.output}")
        except NotificationError:
            raise
        except Exception as e:
            logger.error(f"Daily report failed: {e}", exc_info=True)
            print(f"[ERROR] {e}")
            self.notifier.send_error(e, target_date)
            return 'error'

        self.notifier.send_report(html, target_date)
        print(f"[OK] Report sent: {len(report.rows)} entries, "
              f"{report.total_text}h total")
        return 'report_sent'


# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"invalid date '{value}', expected YYYY-MM-DD"
        )


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Redmine Daily Report',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python redmine_report.py                      # Report today's entries
  python redmine_report.py --date 2024-01-15    # Report a specific date
  python redmine_report.py --dry-run            # Print emails instead of sending
  python redmine_report.py --output report.html # Also save the HTML report
  python redmine_report.py --setup              # Run setup wizard again
        """
    )
    parser.add_argument(
        '--date', type=_parse_date,
        help='Target date (YYYY-MM-DD), defaults to today'
    )
    parser.add_argument(
        '--config', type=Path, default=CONFIG_FILE,
        help=f'Config file (default: {CONFIG_FILE}). The log file is written '
             f'next to it'
    )
    parser.add_argument(
        '--setup', action='store_true',
        help='Run setup wizard'
    )
    parser.add_argument(
        '--dry-run', action='store_true',
        help='Print emails to stdout instead of sending them'
    )
    parser.add_argument(
        '--output', type=Path,
        help='Also write the rendered HTML report to this file'
    )
    parser.add_argument(
        '--verbose', action='store_true',
        help='Debug logging'
    )

    args = parser.parse_args(argv)
    log_file = args.config.parent / LOG_FILE.name
    setup_logging(verbose=args.verbose, log_file=log_file)

    try:
        if args.setup:
            ConfigManager(args.config, force_setup=True)
            return 0

        config = ConfigManager(args.config).get_report_config()
        report = DailyReport(config, dry_run=args.dry_run, output=args.output)
        outcome = report.run(args.date)

    except KeyboardInterrupt:
        print("\n\nOperation cancelled by user.")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"\n[ERROR] {e}")
        print(f"See {log_file} for details")
        return 1

    return 0 if outcome in ('report_sent', 'no_entries') else 1


if __name__ == "__main__":
    sys.exit(main())
