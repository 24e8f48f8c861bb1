import re
from decimal import Decimal

import pytest

import redmine_report as rr
from conftest import FakeClient, FakeNotifier, make_entry, make_issue, raw_config

SIGNATURE = "<p>Regards,<br>Automated Redmine Report</p>"


def build(raw=None, client=None, notifier=None, signature=SIGNATURE, **kwargs):
    config = rr.ReportConfig.from_dict(raw or raw_config())
    client = client or FakeClient()
    notifier = notifier or FakeNotifier()
    report = rr.DailyReport(
        config,
        client=client,
        notifier=notifier,
        signatures=rr.SignatureProvider(inline=signature),
        **kwargs
    )
    return report, client, notifier


def test_end_to_end_report(report_date):
    client = FakeClient(
        entries=[make_entry(1, project=("X", 1), issue_id=42, activity="Dev", hours="8.0")],
        issues={42: make_issue(42, status="Resolved", done_ratio=100)},
    )
    report, _, notifier = build(raw_config(validate_hours=True), client=client)

    outcome = report.run(report_date)

    assert outcome == "report_sent"
    assert len(notifier.sent) == 1
    kind, html, sent_date = notifier.sent[0]
    assert kind == "report"
    assert sent_date == report_date
    assert "#42" in html
    assert "Resolved" in html
    assert "width: 100%; height: 10px;" in html
    tfoot = re.search(r"<tfoot>(.*)</tfoot>", html, re.S).group(1)
    assert "8.0 h" in tfoot
    assert SIGNATURE in html


def test_no_entries_sends_nothing(report_date):
    report, _, notifier = build()
    assert report.run(report_date) == "no_entries"
    assert notifier.sent == []


def test_filter_leaving_nothing_sends_nothing(report_date):
    client = FakeClient(entries=[make_entry(1, project=("B", 2))])
    report, _, notifier = build(raw_config(project_filter=["A"]), client=client)
    assert report.run(report_date) == "no_entries"
    assert notifier.sent == []


def test_project_filter_applies_to_report_and_validation(report_date):
    client = FakeClient(entries=[
        make_entry(1, project=("A", 1), hours="4"),
        make_entry(2, project=("B", 2), hours="3"),
        make_entry(3, project=("C", 3), hours="4"),
    ])
    report, _, notifier = build(
        raw_config(project_filter=["A", "C"], validate_hours=True), client=client
    )

    assert report.run(report_date) == "report_sent"
    html = notifier.sent[0][1]
    assert ">A<" in html and ">C<" in html
    assert ">B<" not in html


def test_remote_error_sends_one_error_notice(report_date):
    client = FakeClient(entries_error=rr.RemoteApiError("Redmine API error: 500", 500))
    report, _, notifier = build(client=client)

    assert report.run(report_date) == "error"
    assert [s[0] for s in notifier.sent] == ["error"]
    assert isinstance(notifier.sent[0][1], rr.RemoteApiError)


def test_missing_signature_sends_one_error_notice(report_date):
    client = FakeClient(entries=[make_entry(1, hours="7")])
    report, _, notifier = build(raw_config(validate_hours=True), client=client, signature="")

    assert report.run(report_date) == "error"
    assert [s[0] for s in notifier.sent] == ["error"]
    assert isinstance(notifier.sent[0][1], rr.MissingSignature)


@pytest.mark.parametrize("hours,phrase", [("7.5", "less than"), ("8.5", "more than")])
def test_validation_failure_sends_notice_not_report(report_date, hours, phrase):
    client = FakeClient(entries=[make_entry(1, hours=hours)])
    report, _, notifier = build(raw_config(validate_hours=True), client=client)

    assert report.run(report_date) == "validation_failed"
    assert len(notifier.sent) == 1
    kind, result, _ = notifier.sent[0]
    assert kind == "validation"
    assert result.total_hours == Decimal(hours)
    assert phrase in result.message


def test_validation_disabled_sends_short_day(report_date):
    client = FakeClient(entries=[make_entry(1, hours="2")])
    report, _, notifier = build(client=client)
    assert report.run(report_date) == "report_sent"
    assert notifier.sent[0][0] == "report"


def test_failed_enrichment_still_sends_report(report_date):
    client = FakeClient(entries=[make_entry(1, issue_id=42, hours="8")], failing_issues={42})
    report, _, notifier = build(client=client)

    assert report.run(report_date) == "report_sent"
    assert "width: 0%" in notifier.sent[0][1]


def test_notification_failure_is_logged_not_raised(report_date, caplog):
    client = FakeClient(entries=[make_entry(1, hours="8")])
    report, _, _ = build(client=client, notifier=FakeNotifier(fail=True))

    assert report.run(report_date) == "error"
    assert "Notification failed" in caplog.text


def test_output_file_written(report_date, tmp_path):
    client = FakeClient(entries=[make_entry(1, hours="8")])
    out = tmp_path / "report.html"
    report, _, notifier = build(client=client, output=out)

    report.run(report_date)

    assert out.read_text(encoding="utf-8") == notifier.sent[0][1]


def test_signature_from_file(tmp_path):
    (tmp_path / "sig.html").write_text("<p>Cheers</p>\n", encoding="utf-8")
    config = rr.ReportConfig.from_dict(raw_config(signature="", signature_file="sig.html"),
                                       base_dir=tmp_path)
    assert rr.SignatureProvider.from_config(config).get() == "<p>Cheers</p>"


def test_unreadable_signature_file_is_absent(tmp_path):
    provider = rr.SignatureProvider(path=tmp_path / "nope.html")
    assert provider.get() is None
