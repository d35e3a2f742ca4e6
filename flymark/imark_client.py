"""
imark CGI submission client.

Encodes a MarkRecord as the form fields the imark CGI script expects and
POSTs it with retry. The wire format (encode_mark_form, classify_response)
is kept apart from the httpx transport so either side can change alone.
"""

import logging
import time
from datetime import datetime
from typing import Callable

import httpx

from .cancellation import CancelToken
from .config import IMARK_ENDPOINT_TEMPLATE, MARK_TIMESTAMP_FORMAT, RETRYABLE_CLIENT_STATUSES
from .models import (
    EndpointConfig,
    MarkRecord,
    SubmissionOutcome,
    SubmissionResult,
)
from .scheme_parser import format_number

logger = logging.getLogger(__name__)

ACK_OK = "ok"
ACK_ERROR = "error"


class _Transient(Exception):
    """A failure worth retrying."""

    def __init__(self, reason: str, status_code: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


def default_endpoint(course: str, session: str) -> str:
    """Production imark CGI endpoint for a course offering."""
    return IMARK_ENDPOINT_TEMPLATE.format(course=course, session=session)


def encode_mark_form(
    record: MarkRecord,
    endpoint: EndpointConfig,
    marked_at: datetime | None = None,
) -> dict[str, str]:
    """
    Encode a mark record as imark CGI form fields.

    Args:
        record: Mark record to submit.
        endpoint: Endpoint configuration (course, session, mark name, marker).
        marked_at: Timestamp recorded with the mark (default: now).

    Returns:
        Ordered mapping of form field names to values.
    """
    at = (marked_at or datetime.now()).strftime(MARK_TIMESTAMP_FORMAT)

    form: dict[str, str] = {
        "course": endpoint.course,
        "session": endpoint.session,
    }
    if endpoint.assignment:
        form["assignment"] = endpoint.assignment
    form["student"] = record.student_id
    form["name"] = endpoint.mark_name
    form["total"] = format_number(record.total)
    for result in record.results:
        form[f"mark.{result.criterion}"] = format_number(result.score)
    form["final"] = "1"
    form["by"] = endpoint.marker
    form["at"] = at
    form["text"] = _mark_text(record, endpoint.marker, at)
    return form


def _mark_text(record: MarkRecord, marker: str, at: str) -> str:
    lines = [f"marked with flymark by {marker} at {at}", ""]
    for result in record.results:
        detail = f": {result.detail}" if result.detail else ""
        lines.append(f"+{format_number(result.score)} {result.criterion}{detail}")
    if record.needs_review:
        lines.append("")
        lines.append("INCOMPLETE: some criteria could not be run, review manually")
    return "\n".join(lines) + "\n"


def is_transient_status(status_code: int) -> bool:
    """Whether an HTTP status is worth retrying rather than a final answer."""
    return status_code >= 500 or status_code in RETRYABLE_CLIENT_STATUSES


def classify_response(status_code: int, body: str) -> SubmissionResult | None:
    """
    Classify an imark response.

    Returns:
        ACCEPTED or REJECTED for final answers, None for transient failures
        (5xx, 408 and 429) that should be retried.
    """
    if is_transient_status(status_code):
        return None
    if 200 <= status_code < 300:
        first_line = _first_line(body).lower()
        if first_line.startswith(ACK_OK):
            return SubmissionResult.ACCEPTED
        return SubmissionResult.REJECTED
    return SubmissionResult.REJECTED


def rejection_reason(status_code: int, body: str) -> str:
    first_line = _first_line(body)
    if 200 <= status_code < 300:
        if first_line.lower().startswith(ACK_ERROR):
            return first_line[len(ACK_ERROR):].lstrip(" :-") or "rejected by imark"
        return f"unrecognised acknowledgement: {first_line[:100]!r}"
    return f"HTTP {status_code}: {first_line[:200]}" if first_line else f"HTTP {status_code}"


def _first_line(body: str) -> str:
    for line in body.splitlines():
        if line.strip():
            return line.strip()
    return ""


class ImarkClient:
    """
    Submits mark records to imark, one student at a time.

    Holds no per-student state, so a single client can be shared by every
    worker of a marking run.
    """

    def __init__(
        self,
        http_client: httpx.Client | None = None,
        cancel: CancelToken | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            http_client: httpx client to send requests with (created if omitted).
            cancel: Run-level cancellation token.
            sleep: Backoff sleep, defaults to an interruptible wait on `cancel`.
        """
        if http_client is None:
            self._client = httpx.Client(follow_redirects=True)
            self._owns_client = True
        else:
            self._client = http_client
            self._owns_client = False
        self.cancel = cancel
        self._sleep = sleep

    def __enter__(self) -> "ImarkClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def submit(self, record: MarkRecord, endpoint: EndpointConfig) -> SubmissionOutcome:
        """
        Submit one mark record.

        Transient failures (timeouts, network errors, 5xx, 408 and 429
        responses) are retried with exponential backoff up to the endpoint's
        attempt budget. Any other 4xx response or an error acknowledgement is
        final and never retried.

        Args:
            record: Mark record to submit.
            endpoint: Where and how to submit it.

        Returns:
            SubmissionOutcome for the student.
        """
        form = encode_mark_form(record, endpoint)
        student = record.student_id
        delay = endpoint.backoff_seconds
        last_status: int | None = None
        last_reason = ""

        for attempt in range(1, endpoint.attempts + 1):
            if self._cancelled():
                return self._outcome(student, SubmissionResult.NETWORK_ERROR, "cancelled", attempt - 1, last_status)

            try:
                response = self._post(endpoint, form)
            except _Transient as e:
                last_reason = e.reason
                last_status = e.status_code if e.status_code is not None else last_status
                logger.warning(
                    "%s: submission attempt %d/%d failed: %s", student, attempt, endpoint.attempts, e.reason
                )
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                logger.error("%s: submission failed: %s", student, e)
                return self._outcome(student, SubmissionResult.NETWORK_ERROR, str(e), attempt, last_status)
            else:
                result = classify_response(response.status_code, response.text)
                if result is SubmissionResult.ACCEPTED:
                    logger.info("%s: mark %s accepted", student, format_number(record.total))
                    return self._outcome(student, result, "", attempt, response.status_code)
                reason = rejection_reason(response.status_code, response.text)
                logger.warning("%s: mark rejected: %s", student, reason)
                return self._outcome(student, SubmissionResult.REJECTED, reason, attempt, response.status_code)

            if attempt < endpoint.attempts:
                if self._backoff(delay):
                    return self._outcome(student, SubmissionResult.NETWORK_ERROR, "cancelled", attempt, last_status)
                delay *= 2

        return self._outcome(
            student,
            SubmissionResult.RETRY_EXHAUSTED,
            f"gave up after {endpoint.attempts} attempts: {last_reason}",
            endpoint.attempts,
            last_status,
        )

    def _post(self, endpoint: EndpointConfig, form: dict[str, str]) -> httpx.Response:
        auth = None
        if endpoint.username:
            password = endpoint.password.get_secret_value() if endpoint.password else ""
            auth = httpx.BasicAuth(endpoint.username, password)
        headers = {}
        if endpoint.cookie:
            headers["Cookie"] = endpoint.cookie.get_secret_value()

        try:
            response = self._client.post(
                endpoint.url,
                data=form,
                auth=auth,
                headers=headers,
                timeout=endpoint.request_timeout,
            )
        except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as e:
            raise _Transient(f"{type(e).__name__}: {e}") from e

        if is_transient_status(response.status_code):
            raise _Transient(f"HTTP {response.status_code}", response.status_code)
        return response

    def _backoff(self, seconds: float) -> bool:
        """Sleep before the next attempt; True if cancelled meanwhile."""
        if self._sleep is not None:
            self._sleep(seconds)
            return self._cancelled()
        if self.cancel is not None:
            return self.cancel.wait(seconds)
        time.sleep(seconds)
        return False

    def _cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.cancelled

    @staticmethod
    def _outcome(
        student: str,
        result: SubmissionResult,
        reason: str,
        attempts: int,
        status_code: int | None,
    ) -> SubmissionOutcome:
        return SubmissionOutcome(
            student_id=student,
            result=result,
            reason=reason,
            attempts=attempts,
            status_code=status_code,
        )
