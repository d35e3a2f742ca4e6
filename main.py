"""
flymark: Automated exam marking with imark submission

Usage:
  main.py [--config=PATH] [--validate] [--dry-run] [--verbose]
  main.py [--config=PATH] --summary
  main.py (-h | --help)

Options:
  --config=PATH  Path to YAML configuration file [default: flymark.yml].
  --validate     Only parse and validate the marking scheme.
  --dry-run      Mark every student but do not submit to imark.
  --summary      Print the summary of the last saved run and exit.
  --verbose      Print debug logging.
  -h --help      Show this screen.
"""

import logging
import sys
from pathlib import Path

import yaml
from docopt import docopt
from pydantic import ValidationError

from flymark.cancellation import CancelToken
from flymark.config import DEFAULT_REPORTS_DIR
from flymark.config_loader import MarkerConfig, load_config, resolve_credentials
from flymark.evaluator import CriterionEvaluator
from flymark.executor import SchemeExecutor
from flymark.imark_client import ImarkClient
from flymark.models import INCOMPLETE_STATUSES, StudentOutcome
from flymark.report import RunReport, load_report
from flymark.scheduler import MarkingScheduler
from flymark.scheme_parser import SchemeError, describe_scheme, format_number, load_scheme

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NEEDS_REVIEW = 2


def print_outcome(index: int, count: int, entry: StudentOutcome) -> None:
    """
    Print a one-line summary of a student's mark as it completes.

    Args:
        index: Position in completion order (1-based).
        count: Number of students in the run.
        entry: Mark record and submission outcome.
    """
    record, outcome = entry.record, entry.outcome
    submitted = outcome.result.value if outcome else "not submitted"
    if outcome and outcome.reason:
        submitted += f" ({outcome.reason})"
    flag = " [REVIEW]" if entry.needs_review else ""

    print(
        f"[{index}/{count}] {record.student_id}: "
        f"{format_number(record.total)}/{format_number(record.max_total)} - {submitted}{flag}"
    )


def print_summary(report: RunReport) -> None:
    summary = report.summary()

    print("\n" + "=" * 60)
    print("MARKING COMPLETE")
    print("=" * 60)
    print(f"Students marked: {summary['total_students']}")
    print(f"Average mark:    {summary['average_mark']:.1f}")
    print(f"Accepted:        {summary['accepted']}")
    print(f"Rejected:        {summary['rejected']}")
    print(f"Failed:          {summary['failed']}")
    if summary["unsubmitted"]:
        print(f"Not submitted:   {summary['unsubmitted']}")

    review = report.needs_review()
    if review:
        print(f"\n{len(review)} student(s) need manual review:")
        for entry in review:
            reasons = []
            if entry.record.needs_review:
                broken = [
                    r.criterion for r in entry.record.results if r.status in INCOMPLETE_STATUSES
                ]
                reasons.append(f"incomplete: {', '.join(broken)}")
            if entry.outcome is not None and not entry.outcome.accepted:
                reasons.append(f"{entry.outcome.result.value}: {entry.outcome.reason}")
            print(f"  - {entry.student_id}: {'; '.join(reasons)}")


def run_marking(config: MarkerConfig, dry_run: bool = False) -> RunReport:
    """
    Run the complete marking pipeline.

    Args:
        config: Loaded configuration.
        dry_run: Mark without submitting.

    Returns:
        RunReport with one entry per student marked.
    """
    scheme = load_scheme(config.scheme_path)
    print(describe_scheme(scheme))

    targets = config.student_targets()
    print(f"\nFound {len(targets)} students to mark")

    report = RunReport(output_dir=config.reports_dir or DEFAULT_REPORTS_DIR)
    if not targets:
        return report

    settings = config.run_settings()
    cancel = CancelToken()
    evaluator = CriterionEvaluator(
        default_timeout=settings.default_timeout,
        output_limit=settings.output_limit,
        cancel=cancel,
    )
    scheduler = MarkingScheduler(SchemeExecutor(evaluator), settings.concurrency_limit, cancel)

    endpoint = None
    if not dry_run:
        endpoint = config.endpoint_config(resolve_credentials(config.endpoint_url))
        if not endpoint.username and not endpoint.cookie:
            print("Warning: no imark credentials found; submissions will probably be rejected.")
        print(f"Submitting to {endpoint.url}")

    with ImarkClient(cancel=cancel) as client:
        outcomes = scheduler.run_and_submit(scheme, targets, client, endpoint, submit=not dry_run)
        try:
            for entry in outcomes:
                report.add(entry)
                print_outcome(len(report.entries), len(targets), entry)
        except KeyboardInterrupt:
            print("\nMarking interrupted; stopping running commands...")
            cancel.cancel()
            # Students already marked or submitted are still reported
            for entry in outcomes:
                report.add(entry)
                print_outcome(len(report.entries), len(targets), entry)

    return report


def show_saved_summary(config: MarkerConfig) -> int:
    """Print the summary of a previously saved run report."""
    reports_dir = config.reports_dir or DEFAULT_REPORTS_DIR
    try:
        entries = load_report(reports_dir)
    except (OSError, ValueError) as e:
        print(f"Error loading report: {e}")
        return EXIT_ERROR

    report = RunReport(output_dir=reports_dir)
    for entry in entries:
        report.add(entry)
    print(f"Loaded {len(entries)} marks from {reports_dir}")

    print_summary(report)
    return EXIT_NEEDS_REVIEW if report.needs_review() else EXIT_OK


def main() -> int:
    """
    Main CLI entrypoint.

    Returns:
        Exit code (0 for success, 1 for error, 2 when students need review).
    """
    arguments = docopt(__doc__)
    config_path = Path(arguments["--config"])

    try:
        config = load_config(config_path)
        print(f"Loaded configuration from {config_path}")
    except (OSError, ValueError, yaml.YAMLError, ValidationError) as e:
        print(f"Error loading config: {e}")
        return EXIT_ERROR

    verbose = arguments["--verbose"] or config.verbose
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if arguments["--summary"]:
        return show_saved_summary(config)

    if arguments["--validate"] or config.validate_only:
        try:
            scheme = load_scheme(config.scheme_path)
        except (OSError, SchemeError) as e:
            print(f"Invalid scheme {config.scheme_path}: {e}")
            return EXIT_ERROR
        print(describe_scheme(scheme))
        print("Scheme is valid.")
        return EXIT_OK

    dry_run = arguments["--dry-run"] or config.dry_run

    try:
        report = run_marking(config, dry_run=dry_run)
    except SchemeError as e:
        print(f"Invalid scheme {config.scheme_path}: {e}")
        return EXIT_ERROR
    except Exception as e:
        print(f"\nError: {e}")
        if verbose:
            import traceback
            traceback.print_exc()
        return EXIT_ERROR

    if report.entries:
        output_files = report.save()
        print(f"\n  Summary JSON: {output_files.get('summary_json')}")
        print(f"  Summary CSV:  {output_files.get('summary_csv')}")

    print_summary(report)
    return EXIT_NEEDS_REVIEW if report.needs_review() else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
