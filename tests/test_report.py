import csv
import json
from pathlib import Path

import pytest

from flymark.config import MARKS_CSV_FILENAME, MARKS_SUMMARY_FILENAME
from flymark.models import (
    CriterionResult,
    CriterionStatus,
    MarkRecord,
    MarkStatus,
    StudentOutcome,
    SubmissionOutcome,
    SubmissionResult,
)
from flymark.report import RunReport, load_report


def _entry(student: str, total: float, result: SubmissionResult | None, incomplete: bool = False) -> StudentOutcome:
    status = CriterionStatus.TIMED_OUT if incomplete else CriterionStatus.PASSED
    record = MarkRecord(
        student_id=student,
        results=(
            CriterionResult(criterion="compiles", weight=40, score=min(total, 40), status=CriterionStatus.PASSED),
            CriterionResult(criterion="tests", weight=60, score=max(total - 40, 0), status=status),
        ),
        total=total,
        max_total=100,
        status=MarkStatus.PARTIALLY_INCOMPLETE if incomplete else MarkStatus.COMPLETE,
    )
    outcome = None
    if result is not None:
        outcome = SubmissionOutcome(
            student_id=student,
            result=result,
            reason="" if result is SubmissionResult.ACCEPTED else "HTTP 403",
            attempts=1,
        )
    return StudentOutcome(record=record, outcome=outcome)


@pytest.fixture
def report(tmp_path: Path) -> RunReport:
    report = RunReport(output_dir=tmp_path / "marks")
    report.add(_entry("z3", 100, SubmissionResult.ACCEPTED))
    report.add(_entry("z1", 40, SubmissionResult.ACCEPTED, incomplete=True))
    report.add(_entry("z2", 70, SubmissionResult.REJECTED))
    report.add(_entry("z4", 90, SubmissionResult.RETRY_EXHAUSTED))
    return report


def test_summary_counts(report) -> None:
    summary = report.summary()

    assert summary["total_students"] == 4
    assert summary["accepted"] == 2
    assert summary["rejected"] == 1
    assert summary["failed"] == 1
    assert summary["unsubmitted"] == 0
    assert summary["incomplete"] == 1
    assert summary["needs_review"] == 3
    assert summary["average_mark"] == pytest.approx(75)


def test_needs_review_flags_incomplete_and_unaccepted(report) -> None:
    assert sorted(entry.student_id for entry in report.needs_review()) == ["z1", "z2", "z4"]


def test_dry_run_entries_count_as_unsubmitted(tmp_path: Path) -> None:
    report = RunReport(output_dir=tmp_path)
    report.add(_entry("z1", 100, None))

    assert report.summary()["unsubmitted"] == 1
    assert report.needs_review() == []


def test_save_writes_json_and_csv(report, tmp_path: Path) -> None:
    output_files = report.save()

    marks_dir = tmp_path / "marks"
    assert output_files["summary_json"] == marks_dir / MARKS_SUMMARY_FILENAME
    assert output_files["summary_csv"] == marks_dir / MARKS_CSV_FILENAME
    assert (marks_dir / "z1.json").exists()

    with open(marks_dir / MARKS_SUMMARY_FILENAME, encoding="utf-8") as f:
        data = json.load(f)
    assert data["needs_review"] == ["z1", "z2", "z4"]
    assert [e["record"]["student_id"] for e in data["entries"]] == ["z1", "z2", "z3", "z4"]

    with open(marks_dir / MARKS_CSV_FILENAME, newline="", encoding="utf-8") as f:
        rows = list(csv.reader(f))
    assert rows[0] == [
        "student_id",
        "total",
        "max_total",
        "status",
        "submission",
        "reason",
        "needs_review",
        "compiles",
        "tests",
    ]
    assert rows[1] == ["z1", "40", "100", "partially_incomplete", "accepted", "", "yes", "40/40", "0/60"]
    assert rows[2][4:7] == ["rejected", "HTTP 403", "yes"]


def test_load_report_round_trips(report, tmp_path: Path) -> None:
    report.save()

    entries = load_report(tmp_path / "marks")

    assert [entry.student_id for entry in entries] == ["z1", "z2", "z3", "z4"]
    assert entries == sorted(report.entries, key=lambda entry: entry.student_id)


def test_load_report_without_summary(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_report(tmp_path)


def test_empty_report_writes_no_csv(tmp_path: Path) -> None:
    output_files = RunReport(output_dir=tmp_path).save()

    assert "summary_csv" not in output_files
    assert not (tmp_path / MARKS_CSV_FILENAME).exists()
    assert (tmp_path / MARKS_SUMMARY_FILENAME).exists()


def test_csv_columns_follow_criterion_names(tmp_path: Path) -> None:
    report = RunReport(output_dir=tmp_path)
    report.add(_entry("z1", 100, None))
    partial = _entry("z2", 30, None)
    only_compiles = partial.record.model_copy(update={"results": partial.record.results[:1]})
    report.add(partial.model_copy(update={"record": only_compiles}))

    report.save()

    with open(tmp_path / MARKS_CSV_FILENAME, newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert [row["tests"] for row in rows] == ["60/60", ""]
    assert [row["compiles"] for row in rows] == ["40/40", "30/40"]
