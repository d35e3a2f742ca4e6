"""
Criterion evaluation: run one criterion's command for one student and score it.
"""

import logging
import math
import os
import re
import shlex

from .cancellation import CancelToken
from .config import (
    EXECUTION_TIMEOUT_SECONDS,
    OUTPUT_LIMIT_BYTES,
    STUDENT_ENV_VAR,
    SUBMISSION_ENV_VAR,
)
from .local_runner import run_command
from .models import (
    CommandOutput,
    Criterion,
    CriterionResult,
    CriterionStatus,
    ExactMatcher,
    ExitMatcher,
    PatternMatcher,
    StudentTarget,
)

logger = logging.getLogger(__name__)


class CriterionEvaluator:
    """
    Evaluates criteria against student submissions.

    Every call spawns exactly one external process. Evaluation is total: any
    failure is reported in the returned CriterionResult, never raised.
    """

    def __init__(
        self,
        default_timeout: float = EXECUTION_TIMEOUT_SECONDS,
        output_limit: int = OUTPUT_LIMIT_BYTES,
        cancel: CancelToken | None = None,
    ) -> None:
        """
        Initialize the evaluator.

        Args:
            default_timeout: Timeout for criteria that do not declare one.
            output_limit: Bytes of stdout/stderr kept per command.
            cancel: Run-level cancellation token.
        """
        self.default_timeout = default_timeout
        self.output_limit = output_limit
        self.cancel = cancel

    def evaluate(self, criterion: Criterion, target: StudentTarget) -> CriterionResult:
        """
        Run a criterion's command for a student and score its result.

        Args:
            criterion: The criterion to evaluate.
            target: The student and their submission.

        Returns:
            CriterionResult with the score and status.
        """
        try:
            argv = build_command(criterion, target)
        except ValueError as e:
            return _error_result(criterion, f"Could not build command: {e}")

        submission = target.submission
        env = os.environ.copy()
        env[STUDENT_ENV_VAR] = target.student_id
        env[SUBMISSION_ENV_VAR] = str(submission)

        try:
            output = run_command(
                argv,
                timeout=criterion.timeout or self.default_timeout,
                cwd=submission if submission.is_dir() else None,
                env=env,
                output_limit=self.output_limit,
                cancel=self.cancel,
            )
        except OSError as e:
            logger.warning("%s/%s: could not start %s: %s", target.student_id, criterion.name, argv[0], e)
            return _error_result(criterion, f"Could not start command: {e}")
        except Exception as e:
            logger.exception("%s/%s: unexpected execution failure", target.student_id, criterion.name)
            return _error_result(criterion, f"Execution failed: {e}")

        try:
            return score_output(criterion, output)
        except Exception as e:
            logger.exception("%s/%s: scoring failed", target.student_id, criterion.name)
            return _error_result(criterion, f"Scoring failed: {e}")


def build_command(criterion: Criterion, target: StudentTarget) -> list[str]:
    """
    Instantiate a criterion's command template for a student.

    The template is split shell-style first and placeholders are substituted
    inside each word, so a submission path with spaces stays one argument.
    A word that is exactly {args} expands to the split extra arguments.

    Raises:
        ValueError: If the template or the extra arguments cannot be split.
    """
    extra_args = shlex.split(criterion.args)
    substitutions = {
        "{submission}": str(target.submission),
        "{student}": target.student_id,
        "{args}": criterion.args,
    }

    argv: list[str] = []
    for word in shlex.split(criterion.command):
        if word == "{args}":
            argv.extend(extra_args)
            continue
        for placeholder, value in substitutions.items():
            word = word.replace(placeholder, value)
        argv.append(word)

    if not argv:
        raise ValueError("command is empty")
    return argv


def score_output(criterion: Criterion, output: CommandOutput) -> CriterionResult:
    """
    Derive a CriterionResult from a finished command.

    Args:
        criterion: The evaluated criterion.
        output: What the command did.

    Returns:
        Scored CriterionResult.
    """
    common = {
        "criterion": criterion.name,
        "weight": criterion.weight,
        "exit_code": output.exit_code,
        "output": output.stdout,
        "errors": output.stderr,
        "duration_seconds": output.duration_seconds,
    }

    if output.cancelled:
        return CriterionResult(
            score=0, status=CriterionStatus.EXECUTION_ERROR, detail="cancelled", **common
        )
    if output.timed_out:
        return CriterionResult(
            score=0,
            status=CriterionStatus.TIMED_OUT,
            detail=f"timed out after {output.duration_seconds:.1f}s",
            **common,
        )

    matcher = criterion.matcher
    weight = criterion.weight

    if isinstance(matcher, ExitMatcher):
        if output.exit_code in matcher.accepted:
            return CriterionResult(
                score=weight, status=CriterionStatus.PASSED, detail=f"exit {output.exit_code}", **common
            )
        return CriterionResult(
            score=0,
            status=CriterionStatus.FAILED,
            detail=f"exit {output.exit_code}, expected {_describe_codes(matcher.accepted)}",
            **common,
        )

    if isinstance(matcher, ExactMatcher):
        if output.stdout.strip() == matcher.expected:
            return CriterionResult(
                score=weight, status=CriterionStatus.PASSED, detail="output matched", **common
            )
        return CriterionResult(
            score=0, status=CriterionStatus.FAILED, detail="output did not match", **common
        )

    if isinstance(matcher, PatternMatcher):
        return _score_pattern(matcher, weight, output, common)

    raise TypeError(f"Unsupported matcher: {matcher!r}")


def _score_pattern(
    matcher: PatternMatcher, weight: float, output: CommandOutput, common: dict
) -> CriterionResult:
    match = re.search(matcher.pattern, output.stdout)
    if match is None:
        return CriterionResult(
            score=0, status=CriterionStatus.FAILED, detail="pattern not found in output", **common
        )

    captured = match.group(1)
    try:
        value = float(captured)
    except (TypeError, ValueError):
        value = math.nan
    if not math.isfinite(value):
        return CriterionResult(
            score=0,
            status=CriterionStatus.FAILED,
            detail=f"captured {captured!r} is not a number",
            **common,
        )

    ratio = min(max(value / matcher.maximum, 0.0), 1.0)
    score = weight * ratio
    if ratio >= 1.0:
        status = CriterionStatus.PASSED
    elif ratio <= 0.0:
        status = CriterionStatus.FAILED
    else:
        status = CriterionStatus.PARTIALLY_PASSED

    return CriterionResult(
        score=score,
        status=status,
        detail=f"extracted {captured} of {matcher.maximum:g}",
        **common,
    )


def _error_result(criterion: Criterion, detail: str) -> CriterionResult:
    return CriterionResult(
        criterion=criterion.name,
        weight=criterion.weight,
        score=0,
        status=CriterionStatus.EXECUTION_ERROR,
        detail=detail,
    )


def _describe_codes(codes: frozenset[int]) -> str:
    return ",".join(str(code) for code in sorted(codes))
