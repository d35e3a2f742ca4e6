"""
Pydantic models for the flymark system.

Defines the marking scheme, the per-student targets and results, and the
settings threaded explicitly through evaluation and submission.
"""

from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from .config import (
    BACKOFF_SECONDS,
    DEFAULT_CONCURRENCY,
    DEFAULT_MARK_NAME,
    DEFAULT_SCHEME_TOTAL,
    EXECUTION_TIMEOUT_SECONDS,
    OUTPUT_LIMIT_BYTES,
    REQUEST_TIMEOUT_SECONDS,
    SUBMIT_ATTEMPTS,
)


class ExitMatcher(BaseModel):
    """
    Full marks when the command exits with one of the accepted codes.

    Attributes:
        accepted: Exit codes that earn the criterion weight.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["exit"] = "exit"
    accepted: frozenset[int] = Field(..., description="Accepted exit codes")


class ExactMatcher(BaseModel):
    """
    Full marks when the trimmed standard output equals the expected string.

    Attributes:
        expected: Expected output, already trimmed.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["exact"] = "exact"
    expected: str = Field(default="", description="Expected trimmed output")


class PatternMatcher(BaseModel):
    """
    Proportional marks from a number extracted out of the output.

    Attributes:
        pattern: Regular expression with exactly one capture group.
        maximum: Value of the captured number that earns the full weight.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["match"] = "match"
    pattern: str = Field(..., description="Regex with one capture group")
    maximum: float = Field(..., gt=0, description="Captured value worth full marks")


Matcher = Annotated[
    Union[ExitMatcher, ExactMatcher, PatternMatcher],
    Field(discriminator="kind"),
]


class Criterion(BaseModel):
    """
    One scored check of a marking scheme, backed by an external command.

    Attributes:
        name: Unique identifier within the scheme.
        weight: Maximum score for this criterion.
        command: Command template using {submission}, {student} and {args}.
        args: Free-form extra arguments substituted for {args}.
        matcher: How a score is derived from the command's result.
        timeout: Seconds before the command is killed (None: global default).
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Unique criterion name")
    weight: float = Field(..., ge=0, description="Maximum score")
    command: str = Field(..., description="Command template")
    args: str = Field(default="", description="Extra arguments for {args}")
    matcher: Matcher
    timeout: float | None = Field(default=None, gt=0, description="Timeout in seconds")


class Scheme(BaseModel):
    """
    Parsed and validated marking scheme.

    Shared read-only between all workers of a marking run.

    Attributes:
        title: Optional human readable title.
        criteria: Criteria in declaration order.
        combine: Combination rule, "sum" or "capped".
        cap: Upper bound on the total for capped schemes.
        total: Configured total the weights add up to.
        normalized: False when the scheme declares itself unnormalized.
        allow_skip: Whether per-student skip lists are honoured.
    """

    model_config = ConfigDict(frozen=True)

    title: str = Field(default="", description="Scheme title")
    criteria: tuple[Criterion, ...] = Field(..., description="Ordered criteria")
    combine: Literal["sum", "capped"] = Field(default="sum", description="Combination rule")
    cap: float | None = Field(default=None, gt=0, description="Cap for capped schemes")
    total: float = Field(default=DEFAULT_SCHEME_TOTAL, gt=0, description="Configured total")
    normalized: bool = Field(default=True, description="Whether weights must sum to total")
    allow_skip: bool = Field(default=False, description="Honour per-student skip lists")

    @property
    def weight_sum(self) -> float:
        return sum(c.weight for c in self.criteria)

    @property
    def max_total(self) -> float:
        """Best achievable total under the combination rule."""
        return self.combine_scores([c.weight for c in self.criteria])

    def combine_scores(self, scores: list[float]) -> float:
        """
        Apply the combination rule to a list of criterion scores.

        Args:
            scores: Per-criterion scores (already weighted).

        Returns:
            The weighted sum, capped when the scheme declares a cap.
        """
        total = sum(scores)
        if self.combine == "capped" and self.cap is not None:
            total = min(total, self.cap)
        return total

    def criterion(self, name: str) -> Criterion | None:
        for criterion in self.criteria:
            if criterion.name == name:
                return criterion
        return None


class StudentTarget(BaseModel):
    """
    A student to mark, with the location of their submission.

    Attributes:
        student_id: Student identifier (e.g. a zID).
        submission: Resolved submission location.
        skip: Criteria this student is exempted from (if the scheme allows).
    """

    model_config = ConfigDict(frozen=True)

    student_id: str = Field(..., description="Student identifier")
    submission: Path = Field(..., description="Path to the submission")
    skip: frozenset[str] = Field(default_factory=frozenset, description="Criteria to skip")


class CriterionStatus(str, Enum):
    PASSED = "passed"
    PARTIALLY_PASSED = "partially_passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    EXECUTION_ERROR = "execution_error"
    SKIPPED = "skipped"


INCOMPLETE_STATUSES = frozenset({CriterionStatus.TIMED_OUT, CriterionStatus.EXECUTION_ERROR})


class CriterionResult(BaseModel):
    """
    Outcome of evaluating one criterion for one student.

    Attributes:
        criterion: Name of the evaluated criterion.
        weight: Weight of the criterion at evaluation time.
        score: Derived score, between 0 and weight.
        status: Result classification.
        exit_code: Process exit code, None if the process never exited normally.
        output: Captured standard output (bounded).
        errors: Captured standard error (bounded).
        detail: Short human readable explanation of the score.
        duration_seconds: Wall clock time spent running the command.
    """

    model_config = ConfigDict(frozen=True)

    criterion: str = Field(..., description="Criterion name")
    weight: float = Field(..., ge=0, description="Criterion weight")
    score: float = Field(..., ge=0, description="Awarded score")
    status: CriterionStatus
    exit_code: int | None = Field(default=None, description="Process exit code")
    output: str = Field(default="", description="Captured stdout")
    errors: str = Field(default="", description="Captured stderr")
    detail: str = Field(default="", description="Explanation of the score")
    duration_seconds: float = Field(default=0.0, ge=0, description="Command duration")


class MarkStatus(str, Enum):
    COMPLETE = "complete"
    PARTIALLY_INCOMPLETE = "partially_incomplete"


class MarkRecord(BaseModel):
    """
    Aggregated result of running a scheme for one student.

    Attributes:
        student_id: Student identifier.
        results: Criterion results in scheme order.
        total: Combined score.
        max_total: Best achievable total for the scheme.
        status: Complete, or partially incomplete when a criterion could not run.
    """

    model_config = ConfigDict(frozen=True)

    student_id: str = Field(..., description="Student identifier")
    results: tuple[CriterionResult, ...] = Field(..., description="Criterion results")
    total: float = Field(..., ge=0, description="Aggregated total")
    max_total: float = Field(..., ge=0, description="Maximum achievable total")
    status: MarkStatus

    @property
    def needs_review(self) -> bool:
        return self.status is MarkStatus.PARTIALLY_INCOMPLETE

    def result_for(self, criterion: str) -> CriterionResult | None:
        for result in self.results:
            if result.criterion == criterion:
                return result
        return None


class SubmissionResult(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    RETRY_EXHAUSTED = "retry_exhausted"
    NETWORK_ERROR = "network_error"


class SubmissionOutcome(BaseModel):
    """
    Result of submitting one mark record to imark.

    Attributes:
        student_id: Student identifier.
        result: Accepted, rejected, retry exhausted or network error.
        reason: Why the submission was not accepted.
        attempts: Number of HTTP requests made.
        status_code: Last HTTP status code received, if any.
    """

    model_config = ConfigDict(frozen=True)

    student_id: str = Field(..., description="Student identifier")
    result: SubmissionResult
    reason: str = Field(default="", description="Failure reason")
    attempts: int = Field(default=0, ge=0, description="HTTP attempts made")
    status_code: int | None = Field(default=None, description="Last HTTP status")

    @property
    def accepted(self) -> bool:
        return self.result is SubmissionResult.ACCEPTED


class StudentOutcome(BaseModel):
    """
    A mark record paired with its submission outcome (None on dry runs).
    """

    model_config = ConfigDict(frozen=True)

    record: MarkRecord
    outcome: SubmissionOutcome | None = None

    @property
    def student_id(self) -> str:
        return self.record.student_id

    @property
    def needs_review(self) -> bool:
        if self.record.needs_review:
            return True
        return self.outcome is not None and not self.outcome.accepted


class RunSettings(BaseModel):
    """
    Global defaults for a marking run.

    Attributes:
        default_timeout: Timeout for criteria that do not declare one.
        output_limit: Bytes captured per output stream.
        concurrency_limit: Students marked at the same time.
    """

    model_config = ConfigDict(frozen=True)

    default_timeout: float = Field(default=EXECUTION_TIMEOUT_SECONDS, gt=0)
    output_limit: int = Field(default=OUTPUT_LIMIT_BYTES, gt=0)
    concurrency_limit: int = Field(default=DEFAULT_CONCURRENCY, ge=1)


class EndpointConfig(BaseModel):
    """
    Where and how marks are submitted.

    Credentials are supplied by the caller and only attached to requests.

    Attributes:
        url: imark CGI endpoint.
        course: Course code (e.g. cs1521).
        session: Session code (e.g. 22T1).
        assignment: Assignment or exam name, sent when set.
        mark_name: Name of the mark being submitted.
        marker: Who is recorded as the marker.
        username: HTTP basic auth user.
        password: HTTP basic auth password.
        cookie: Opaque session cookie header value.
        attempts: Attempt budget for transient failures.
        backoff_seconds: First retry delay, doubled after every attempt.
        request_timeout: Per-request timeout in seconds.
    """

    model_config = ConfigDict(frozen=True)

    url: str = Field(..., description="imark CGI endpoint URL")
    course: str = Field(..., description="Course code")
    session: str = Field(..., description="Session code")
    assignment: str = Field(default="", description="Assignment name")
    mark_name: str = Field(default=DEFAULT_MARK_NAME, description="Mark name")
    marker: str = Field(default="flymark", description="Marker recorded with the mark")
    username: str | None = Field(default=None, description="Basic auth username")
    password: SecretStr | None = Field(default=None, description="Basic auth password")
    cookie: SecretStr | None = Field(default=None, description="Session cookie")
    attempts: int = Field(default=SUBMIT_ATTEMPTS, ge=1, description="Attempt budget")
    backoff_seconds: float = Field(default=BACKOFF_SECONDS, ge=0, description="Initial backoff")
    request_timeout: float = Field(default=REQUEST_TIMEOUT_SECONDS, gt=0, description="Request timeout")


class CommandOutput(BaseModel):
    """
    Result of running one external command.

    Attributes:
        pid: Process id of the spawned command.
        exit_code: Exit code, None when the command was killed by flymark.
        stdout: Captured standard output (bounded, decoded as UTF-8).
        stderr: Captured standard error (bounded, decoded as UTF-8).
        timed_out: Whether the command exceeded its timeout.
        cancelled: Whether the run was cancelled while the command ran.
        truncated: Whether either stream exceeded the output limit.
        duration_seconds: Wall clock run time.
    """

    pid: int = Field(..., description="Process id")
    exit_code: int | None = Field(default=None, description="Process exit code")
    stdout: str = Field(default="", description="Captured stdout")
    stderr: str = Field(default="", description="Captured stderr")
    timed_out: bool = Field(default=False, description="Whether the timeout was exceeded")
    cancelled: bool = Field(default=False, description="Whether the run was cancelled")
    truncated: bool = Field(default=False, description="Whether output was truncated")
    duration_seconds: float = Field(default=0.0, ge=0, description="Run time")
