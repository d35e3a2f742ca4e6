import shlex
import sys
import threading
import time
from pathlib import Path

import pytest

from flymark.models import (
    Criterion,
    CriterionResult,
    CriterionStatus,
    ExitMatcher,
    StudentTarget,
)


def python_command(code: str) -> str:
    """Command template running a Python snippet with the test interpreter."""
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


def exit_criterion(name: str, code: str, weight: float = 50, timeout: float | None = None) -> Criterion:
    return Criterion(
        name=name,
        weight=weight,
        command=python_command(code),
        matcher=ExitMatcher(accepted=frozenset({0})),
        timeout=timeout,
    )


class FakeEvaluator:
    """
    Stand-in for CriterionEvaluator that returns canned results.

    `outcomes` maps (student_id, criterion) or criterion name to a status;
    anything unlisted passes. `delays` maps student ids to seconds slept
    before answering.
    """

    def __init__(self, outcomes=None, delays=None, cancel=None) -> None:
        self.outcomes = outcomes or {}
        self.delays = delays or {}
        self.cancel = cancel
        self.calls: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def evaluate(self, criterion: Criterion, target: StudentTarget) -> CriterionResult:
        with self._lock:
            self.calls.append((target.student_id, criterion.name))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.delays.get(target.student_id, 0))
            status = self.outcomes.get(
                (target.student_id, criterion.name),
                self.outcomes.get(criterion.name, CriterionStatus.PASSED),
            )
            score = criterion.weight if status is CriterionStatus.PASSED else 0
            return CriterionResult(
                criterion=criterion.name, weight=criterion.weight, score=score, status=status
            )
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def make_target(tmp_path: Path):
    def _make(student_id: str = "z5555555", skip=()) -> StudentTarget:
        submission = tmp_path / "submissions" / student_id
        submission.mkdir(parents=True, exist_ok=True)
        return StudentTarget(student_id=student_id, submission=submission, skip=frozenset(skip))

    return _make
