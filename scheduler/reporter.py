# scheduler/reporter.py
import os
import json
import logging

import pandas as pd

from collector.models import RunStatus
from utils.alerts import send_alert

logger = logging.getLogger("reporter")
logger.setLevel(logging.INFO)

REPORT_DIR = os.getenv("REPORT_DIR", "./reports")

ALERT_KINDS = {"drift_detected", "container_not_found", "circuit_open", "no_valid_records"}


def needs_alert(run):
    """A run is worth an email when it was not clean or saw a layout change."""
    if run.status != RunStatus.COMPLETED:
        return True
    return any(e.kind in ALERT_KINDS for e in run.errors)


def run_report_rows(run):
    """One row per source: status, item count and its errors joined."""
    rows = []
    for source, status in run.sources.items():
        errors = [e for e in run.errors if e.source == source]
        rows.append(
            {
                "run_id": run.run_id,
                "source": source,
                "status": status.value,
                "items": run.item_counts.get(source, 0),
                "error_kinds": ";".join(sorted({e.kind for e in errors})),
                "errors": len(errors),
            }
        )
    return rows


def generate_run_report(run, report_dir=None):
    """
    Write JSON and CSV reports for a finished run and alert when needed.

    Args:
        run (CollectionRun): finished run
        report_dir (str, optional): output directory, defaults to REPORT_DIR

    Returns:
        tuple[str, str]: paths of the JSON and CSV reports

    Output Files:
        - {report_dir}/run_{runId}.json  full run document
        - {report_dir}/run_{runId}.csv   per-source summary

    Email Cases:
        Sent only for degraded or failed runs, or when a source reported
        drift, a missing container, an open circuit or no valid records.
    """
    report_dir = report_dir or REPORT_DIR
    os.makedirs(report_dir, exist_ok=True)
    json_path = os.path.join(report_dir, f"run_{run.run_id}.json")
    csv_path = os.path.join(report_dir, f"run_{run.run_id}.csv")

    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(run.to_wire(), f, indent=2)

    rows = run_report_rows(run)
    pd.DataFrame(
        rows, columns=["run_id", "source", "status", "items", "error_kinds", "errors"]
    ).to_csv(csv_path, index=False)
    logger.info(f"Generated run report: {json_path}, {csv_path}")

    if not needs_alert(run):
        return json_path, csv_path

    subject = f"[Collector] Run {run.status.value}: {len(run.excluded_sources)} source(s) excluded"
    body = (
        f"Run {run.run_id} finished with status {run.status.value}.\n"
        f"Started: {run.started_at.isoformat()}\n"
        f"Finished: {run.finished_at.isoformat() if run.finished_at else '-'}\n\n"
        "Per source:\n"
    )
    for row in rows:
        body += (
            f"- {row['source']}: {row['status']}, {row['items']} items"
            + (f" ({row['error_kinds']})" if row["error_kinds"] else "")
            + "\n"
        )
    body += "\nAttached are the JSON and CSV reports.\n"

    if send_alert(subject, body, attachments=[json_path, csv_path]):
        logger.info("Alert email (with attachments) sent.")
    return json_path, csv_path
