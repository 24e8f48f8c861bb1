import json
from datetime import date

import pytest

import redmine_report as rr
from conftest import raw_config


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.setattr(rr, "setup_logging", lambda **kwargs: None)
    path = tmp_path / "config.json"
    path.write_text(json.dumps(raw_config()), encoding="utf-8")
    return path


@pytest.mark.parametrize("outcome,code", [
    ("report_sent", 0),
    ("no_entries", 0),
    ("validation_failed", 1),
    ("error", 1),
])
def test_exit_code_follows_outcome(config_file, monkeypatch, outcome, code):
    seen = {}

    def fake_run(self, target_date=None):
        seen["date"] = target_date
        seen["dry_run"] = self.notifier.dry_run
        return outcome

    monkeypatch.setattr(rr.DailyReport, "run", fake_run)

    assert rr.main(["--config", str(config_file), "--date", "2024-01-15", "--dry-run"]) == code
    assert seen == {"date": date(2024, 1, 15), "dry_run": True}


def test_bad_config_exits_nonzero(tmp_path, monkeypatch):
    monkeypatch.setattr(rr, "setup_logging", lambda **kwargs: None)
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"redmine": {}}), encoding="utf-8")
    assert rr.main(["--config", str(path)]) == 1


def test_invalid_date_argument(config_file):
    with pytest.raises(SystemExit):
        rr.main(["--config", str(config_file), "--date", "15.01.2024"])


def test_log_file_sits_next_to_config(config_file, monkeypatch):
    seen = {}
    monkeypatch.setattr(rr, "setup_logging", lambda **kwargs: seen.update(kwargs))
    monkeypatch.setattr(rr.DailyReport, "run", lambda self, target_date=None: "no_entries")

    assert rr.main(["--config", str(config_file), "--verbose"]) == 0
    assert seen == {"verbose": True, "log_file": config_file.parent / "redmine_report.log"}
