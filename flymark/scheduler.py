"""
Marking scheduler: mark (and submit) many students with bounded concurrency.
"""

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Iterable, Iterator, TypeVar

from .cancellation import CancelToken, MarkingCancelled
from .config import DEFAULT_CONCURRENCY
from .executor import SchemeExecutor, build_record
from .imark_client import ImarkClient
from .models import (
    CriterionResult,
    CriterionStatus,
    EndpointConfig,
    MarkRecord,
    Scheme,
    StudentOutcome,
    StudentTarget,
    SubmissionOutcome,
    SubmissionResult,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MarkingScheduler:
    """
    Runs the scheme executor across all students.

    A pool of `concurrency_limit` workers each take one student end-to-end
    before picking up the next pending one. Results are yielded lazily in
    completion order, not input order.
    """

    def __init__(
        self,
        executor: SchemeExecutor,
        concurrency_limit: int = DEFAULT_CONCURRENCY,
        cancel: CancelToken | None = None,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            executor: Executor used to mark each student.
            concurrency_limit: Maximum number of students marked at once.
            cancel: Run-level cancellation token (defaults to the executor's).

        Raises:
            ValueError: If concurrency_limit is less than 1.
        """
        if concurrency_limit < 1:
            raise ValueError(f"concurrency_limit must be at least 1, got {concurrency_limit}")

        self.executor = executor
        self.concurrency_limit = concurrency_limit
        self.cancel = cancel or executor.cancel or CancelToken()
        self._lock = threading.Lock()
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        """Number of students currently being worked on."""
        with self._lock:
            return self._in_flight

    def run_all(self, scheme: Scheme, targets: Iterable[StudentTarget]) -> Iterator[MarkRecord]:
        """
        Mark every target, yielding each MarkRecord as soon as it is ready.

        A student whose commands all fail still yields a (partially
        incomplete) record. After cancellation, records already yielded stay
        valid, students not yet started are abandoned, and students
        interrupted mid-run are not reported.
        """

        def job(target: StudentTarget) -> MarkRecord:
            return self._mark(scheme, target)

        return self._fan_out(targets, job)

    def run_and_submit(
        self,
        scheme: Scheme,
        targets: Iterable[StudentTarget],
        client: ImarkClient | None = None,
        endpoint: EndpointConfig | None = None,
        submit: bool = True,
    ) -> Iterator[StudentOutcome]:
        """
        Mark and submit every target, one student per worker at a time.

        Each record is submitted as soon as it is produced, without waiting
        for the rest of the run.

        Args:
            scheme: Parsed marking scheme.
            targets: Students to mark.
            client: Submission client (required unless submit is False).
            endpoint: Endpoint configuration (required unless submit is False).
            submit: False for a dry run; outcomes are then None.

        Returns:
            Lazy iterator of StudentOutcome in completion order.
        """
        if submit and (client is None or endpoint is None):
            raise ValueError("client and endpoint are required to submit marks")

        def job(target: StudentTarget) -> StudentOutcome:
            record = self._mark(scheme, target)
            outcome = self._submit(client, record, endpoint) if submit else None
            return StudentOutcome(record=record, outcome=outcome)

        return self._fan_out(targets, job)

    def _mark(self, scheme: Scheme, target: StudentTarget) -> MarkRecord:
        try:
            return self.executor.run(scheme, target)
        except MarkingCancelled:
            raise
        except Exception as e:
            logger.exception("%s: marking failed", target.student_id)
            return _failed_record(scheme, target, f"Marking failed: {e}")

    @staticmethod
    def _submit(client: ImarkClient, record: MarkRecord, endpoint: EndpointConfig) -> SubmissionOutcome:
        try:
            return client.submit(record, endpoint)
        except Exception as e:
            logger.exception("%s: submission failed", record.student_id)
            return SubmissionOutcome(
                student_id=record.student_id,
                result=SubmissionResult.NETWORK_ERROR,
                reason=f"Submission failed: {e}",
            )

    def _fan_out(
        self, targets: Iterable[StudentTarget], job: Callable[[StudentTarget], T]
    ) -> Iterator[T]:
        """
        Feed targets to the pool and yield results as they complete.

        Once cancelled, no new target is started but the students already
        running are waited for, and every one that finished (a record that
        was marked and possibly already accepted by imark) is still yielded.
        A KeyboardInterrupt received while waiting cancels the run the same
        way and is re-raised once everything running has been delivered.
        Closing the iterator early abandons running students; results they
        finish with are logged as discarded.
        """
        pending = iter(targets)
        running: dict[Future, StudentTarget] = {}
        interrupted: KeyboardInterrupt | None = None

        with ThreadPoolExecutor(
            max_workers=self.concurrency_limit, thread_name_prefix="flymark-worker"
        ) as pool:
            try:
                while True:
                    while len(running) < self.concurrency_limit and not self.cancel.cancelled:
                        target = next(pending, None)
                        if target is None:
                            break
                        running[pool.submit(self._work, job, target)] = target

                    if not running:
                        break

                    try:
                        done, _ = wait(running, return_when=FIRST_COMPLETED)
                    except KeyboardInterrupt as e:
                        logger.warning("Interrupted; waiting for %d running student(s)", len(running))
                        self.cancel.cancel()
                        interrupted = e
                        continue

                    for future in done:
                        del running[future]
                        try:
                            result = future.result()
                        except MarkingCancelled:
                            continue
                        yield result
            finally:
                if running:
                    # Closed early: stop the workers still running
                    self.cancel.cancel()
                    pool.shutdown(wait=True)
                    _log_discarded(running)

        if interrupted is not None:
            raise interrupted

    def _work(self, job: Callable[[StudentTarget], T], target: StudentTarget) -> T:
        self.cancel.raise_if_cancelled()
        with self._lock:
            self._in_flight += 1
        try:
            logger.debug("%s: started", target.student_id)
            return job(target)
        finally:
            with self._lock:
                self._in_flight -= 1


def _log_discarded(running: dict[Future, StudentTarget]) -> None:
    for future, target in running.items():
        if future.cancelled() or future.exception() is not None:
            continue
        logger.warning("%s: finished after the run was closed; result not reported", target.student_id)


def _failed_record(scheme: Scheme, target: StudentTarget, detail: str) -> MarkRecord:
    results = [
        CriterionResult(
            criterion=criterion.name,
            weight=criterion.weight,
            score=0,
            status=CriterionStatus.EXECUTION_ERROR,
            detail=detail,
        )
        for criterion in scheme.criteria
    ]
    return build_record(scheme, target.student_id, results)
