"""
Scheme execution: evaluate every criterion of a scheme for one student.
"""

import logging

from .cancellation import CancelToken
from .evaluator import CriterionEvaluator
from .models import (
    INCOMPLETE_STATUSES,
    CriterionResult,
    CriterionStatus,
    MarkRecord,
    MarkStatus,
    Scheme,
    StudentTarget,
)

logger = logging.getLogger(__name__)


class SchemeExecutor:
    """
    Produces a MarkRecord per student by running the whole scheme.

    Criteria are evaluated in declaration order and independently: a failed,
    timed out or broken criterion never affects the others.
    """

    def __init__(self, evaluator: CriterionEvaluator, cancel: CancelToken | None = None) -> None:
        self.evaluator = evaluator
        self.cancel = cancel if cancel is not None else evaluator.cancel

    def run(self, scheme: Scheme, target: StudentTarget) -> MarkRecord:
        """
        Mark one student.

        Args:
            scheme: Parsed marking scheme.
            target: Student and submission to mark.

        Returns:
            MarkRecord with every criterion result and the combined total.

        Raises:
            MarkingCancelled: If the run is cancelled part way through, since
                the interrupted record would not be a real mark.
        """
        skip = self._effective_skip_list(scheme, target)

        results: list[CriterionResult] = []
        for criterion in scheme.criteria:
            if self.cancel is not None:
                self.cancel.raise_if_cancelled()

            if criterion.name in skip:
                results.append(
                    CriterionResult(
                        criterion=criterion.name,
                        weight=criterion.weight,
                        score=0,
                        status=CriterionStatus.SKIPPED,
                        detail="skipped for this student",
                    )
                )
                continue

            result = self.evaluator.evaluate(criterion, target)
            logger.debug(
                "%s/%s: %s (%g/%g)",
                target.student_id,
                criterion.name,
                result.status.value,
                result.score,
                criterion.weight,
            )
            results.append(result)

        if self.cancel is not None:
            self.cancel.raise_if_cancelled()

        return build_record(scheme, target.student_id, results)

    def _effective_skip_list(self, scheme: Scheme, target: StudentTarget) -> frozenset[str]:
        if not target.skip:
            return frozenset()

        if not scheme.allow_skip:
            logger.warning(
                "%s: ignoring skip list %s, the scheme does not allow skipping",
                target.student_id,
                sorted(target.skip),
            )
            return frozenset()

        unknown = sorted(name for name in target.skip if scheme.criterion(name) is None)
        if unknown:
            logger.warning("%s: skip list names unknown criteria %s", target.student_id, unknown)
        return target.skip


def build_record(scheme: Scheme, student_id: str, results: list[CriterionResult]) -> MarkRecord:
    """
    Combine criterion results into a MarkRecord.

    The record is partially incomplete when any criterion timed out or could
    not be executed. That status is advisory; the record is still complete
    enough to be submitted.
    """
    incomplete = any(result.status in INCOMPLETE_STATUSES for result in results)
    return MarkRecord(
        student_id=student_id,
        results=tuple(results),
        total=scheme.combine_scores([result.score for result in results]),
        max_total=scheme.max_total,
        status=MarkStatus.PARTIALLY_INCOMPLETE if incomplete else MarkStatus.COMPLETE,
    )
