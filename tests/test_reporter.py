# tests/test_reporter.py
import json
from datetime import datetime, timezone

import pandas as pd
import pytest

from collector.models import CollectionRun, RunError, RunStatus, SourceStatus
from scheduler import reporter

STARTED = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _run(status=RunStatus.COMPLETED, errors=()):
    return CollectionRun(
        run_id="r42",
        status=status,
        started_at=STARTED,
        finished_at=STARTED,
        sources={"alpha": SourceStatus.OK, "beta": SourceStatus.FAILED},
        item_counts={"alpha": 20, "beta": 0},
        errors=list(errors),
        excluded_sources=["beta"] if status != RunStatus.COMPLETED else [],
    )


@pytest.fixture
def sent(monkeypatch):
    calls = []

    def fake_send(subject, body, attachments=None):
        calls.append((subject, body, attachments))
        return True

    monkeypatch.setattr(reporter, "send_alert", fake_send)
    return calls


def test_clean_run_needs_no_alert():
    assert not reporter.needs_alert(_run())


def test_degraded_or_drifted_runs_need_alert():
    assert reporter.needs_alert(_run(RunStatus.DEGRADED_COMPLETED))
    drift = RunError(source="alpha", kind="drift_detected", message="layout changed")
    assert reporter.needs_alert(_run(errors=[drift]))
    dropped = RunError(source="alpha", kind="unparsable_price", message="n/a")
    assert not reporter.needs_alert(_run(errors=[dropped]))


def test_report_rows_per_source():
    errors = [
        RunError(source="beta", kind="timeout", message="t"),
        RunError(source="beta", kind="timeout", message="t"),
    ]
    rows = reporter.run_report_rows(_run(RunStatus.DEGRADED_COMPLETED, errors))
    assert rows == [
        {"run_id": "r42", "source": "alpha", "status": "ok", "items": 20, "error_kinds": "", "errors": 0},
        {"run_id": "r42", "source": "beta", "status": "failed", "items": 0, "error_kinds": "timeout", "errors": 2},
    ]


def test_generate_report_writes_files_and_alerts(tmp_path, sent):
    run = _run(RunStatus.DEGRADED_COMPLETED, [RunError(source="beta", kind="http_status", message="500")])
    json_path, csv_path = reporter.generate_run_report(run, report_dir=str(tmp_path))

    with open(json_path, encoding="utf-8") as f:
        doc = json.load(f)
    assert doc["runId"] == "r42"
    assert doc["status"] == "degraded_completed"

    df = pd.read_csv(csv_path)
    assert list(df["source"]) == ["alpha", "beta"]
    assert list(df["items"]) == [20, 0]

    assert len(sent) == 1
    subject, body, attachments = sent[0]
    assert "degraded_completed" in subject
    assert "beta: failed, 0 items (http_status)" in body
    assert attachments == [json_path, csv_path]


def test_generate_report_without_alert(tmp_path, sent):
    reporter.generate_run_report(_run(), report_dir=str(tmp_path))
    assert sent == []
    assert (tmp_path / "run_r42.csv").exists()
