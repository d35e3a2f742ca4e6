"""
Run report for collecting and exporting every student's mark and submission outcome.

Saves marks to a reports folder with JSON and CSV summaries, and flags the
students that need manual review.
"""

import csv
import json
from datetime import datetime
from pathlib import Path

from .config import DEFAULT_REPORTS_DIR, MARKS_CSV_FILENAME, MARKS_SUMMARY_FILENAME
from .models import StudentOutcome, SubmissionResult
from .scheme_parser import format_number

FAILED_RESULTS = (SubmissionResult.RETRY_EXHAUSTED, SubmissionResult.NETWORK_ERROR)


class RunReport:
    """
    Aggregates (MarkRecord, SubmissionOutcome) pairs from a marking run.
    """

    def __init__(self, output_dir: Path | None = None) -> None:
        """
        Initialize the run report.

        Args:
            output_dir: Directory to save reports in. Defaults to ./marks/
        """
        self.output_dir = output_dir or DEFAULT_REPORTS_DIR
        self.entries: list[StudentOutcome] = []
        self.timestamp = datetime.now().isoformat()

    def add(self, entry: StudentOutcome) -> None:
        self.entries.append(entry)

    def summary(self) -> dict:
        """
        Count outcomes across the run.

        Returns:
            Dictionary with accepted, rejected, failed and unsubmitted counts,
            the number of incomplete records, and the average mark.
        """
        outcomes = [entry.outcome for entry in self.entries]
        totals = [entry.record.total for entry in self.entries]
        return {
            "total_students": len(self.entries),
            "accepted": sum(1 for o in outcomes if o is not None and o.result is SubmissionResult.ACCEPTED),
            "rejected": sum(1 for o in outcomes if o is not None and o.result is SubmissionResult.REJECTED),
            "failed": sum(1 for o in outcomes if o is not None and o.result in FAILED_RESULTS),
            "unsubmitted": sum(1 for o in outcomes if o is None),
            "incomplete": sum(1 for entry in self.entries if entry.record.needs_review),
            "needs_review": len(self.needs_review()),
            "average_mark": sum(totals) / len(totals) if totals else 0.0,
        }

    def needs_review(self) -> list[StudentOutcome]:
        """Entries with an incomplete record or a submission that was not accepted."""
        return [entry for entry in self.entries if entry.needs_review]

    def save(self) -> dict[str, Path]:
        """
        Save the report to the output directory.

        Creates:
        - Individual JSON files per student
        - Summary JSON with every entry
        - Summary CSV for checking against the imark class list

        Returns:
            Dictionary of output file paths.
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)

        output_files: dict[str, Path] = {}
        self.entries.sort(key=lambda entry: entry.student_id)

        for entry in self.entries:
            individual_path = self.output_dir / f"{entry.student_id}.json"
            with open(individual_path, "w", encoding="utf-8") as f:
                f.write(entry.model_dump_json(indent=2))
            output_files[entry.student_id] = individual_path

        summary_path = self.output_dir / MARKS_SUMMARY_FILENAME
        summary_data = {
            "timestamp": self.timestamp,
            "summary": self.summary(),
            "needs_review": [entry.student_id for entry in self.needs_review()],
            "entries": [entry.model_dump(mode="json") for entry in self.entries],
        }
        with open(summary_path, "w", encoding="utf-8") as f:
            json.dump(summary_data, f, indent=2)
        output_files["summary_json"] = summary_path

        csv_path = self.output_dir / MARKS_CSV_FILENAME
        if self.entries:
            self._save_csv(csv_path)
            output_files["summary_csv"] = csv_path

        return output_files

    def _save_csv(self, csv_path: Path) -> None:
        criterion_names: list[str] = []
        for entry in self.entries:
            for result in entry.record.results:
                if result.criterion not in criterion_names:
                    criterion_names.append(result.criterion)

        header = ["student_id", "total", "max_total", "status", "submission", "reason", "needs_review"]
        header.extend(criterion_names)

        with open(csv_path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(header)

            for entry in self.entries:
                record, outcome = entry.record, entry.outcome
                row = [
                    record.student_id,
                    format_number(record.total),
                    format_number(record.max_total),
                    record.status.value,
                    outcome.result.value if outcome else "not submitted",
                    outcome.reason if outcome else "",
                    "yes" if entry.needs_review else "no",
                ]
                for name in criterion_names:
                    result = record.result_for(name)
                    row.append(f"{format_number(result.score)}/{format_number(result.weight)}" if result else "")
                writer.writerow(row)


def load_report(reports_dir: Path) -> list[StudentOutcome]:
    """
    Load the entries of a saved run report.

    Args:
        reports_dir: Directory a RunReport was saved to.

    Returns:
        List of StudentOutcome objects, sorted by student.

    Raises:
        FileNotFoundError: If no summary exists in the directory.
    """
    summary_path = reports_dir / MARKS_SUMMARY_FILENAME
    if not summary_path.exists():
        raise FileNotFoundError(f"No report summary in {reports_dir}")

    with open(summary_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    entries = [StudentOutcome.model_validate(item) for item in data.get("entries", [])]
    entries.sort(key=lambda entry: entry.student_id)
    return entries
