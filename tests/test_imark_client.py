import base64
from datetime import datetime
from urllib.parse import parse_qs

import httpx
import pytest

from flymark.cancellation import CancelToken
from flymark.imark_client import (
    ImarkClient,
    classify_response,
    default_endpoint,
    encode_mark_form,
)
from flymark.models import (
    CriterionResult,
    CriterionStatus,
    EndpointConfig,
    MarkRecord,
    MarkStatus,
    SubmissionResult,
)

URL = "https://imark.test/~cs1521/22T1/imark/server.cgi/"


@pytest.fixture
def record() -> MarkRecord:
    return MarkRecord(
        student_id="z5555555",
        results=(
            CriterionResult(criterion="compiles", weight=50, score=50, status=CriterionStatus.PASSED),
            CriterionResult(
                criterion="autotest",
                weight=50,
                score=37.5,
                status=CriterionStatus.PARTIALLY_PASSED,
                detail="15/20",
            ),
        ),
        total=87.5,
        max_total=100,
        status=MarkStatus.COMPLETE,
    )


@pytest.fixture
def endpoint() -> EndpointConfig:
    return EndpointConfig(
        url=URL,
        course="cs1521",
        session="22T1",
        assignment="exam",
        marker="andrewt",
        username="andrewt",
        password="hunter2",
        cookie="session=abc123",
        backoff_seconds=0.5,
    )


class Server:
    """MockTransport handler replaying a scripted list of responses or exceptions."""

    def __init__(self, *replies) -> None:
        self.replies = list(replies)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, type) and issubclass(reply, Exception):
            raise reply("scripted failure", request=request)
        status, body = reply
        return httpx.Response(status, text=body)


def _client(server: Server, sleeps: list | None = None, cancel: CancelToken | None = None) -> ImarkClient:
    http_client = httpx.Client(transport=httpx.MockTransport(server))
    sleep = sleeps.append if sleeps is not None else (lambda seconds: None)
    return ImarkClient(http_client=http_client, cancel=cancel, sleep=sleep)


def test_encode_mark_form(record, endpoint) -> None:
    form = encode_mark_form(record, endpoint, marked_at=datetime(2022, 5, 20, 14, 30, 0, 123456))

    assert list(form) == [
        "course",
        "session",
        "assignment",
        "student",
        "name",
        "total",
        "mark.compiles",
        "mark.autotest",
        "final",
        "by",
        "at",
        "text",
    ]
    assert form["student"] == "z5555555"
    assert form["name"] == "performance"
    assert form["total"] == "87.5"
    assert form["mark.compiles"] == "50"
    assert form["mark.autotest"] == "37.5"
    assert form["at"] == "2022-05-20 14:30:00.123456"
    assert form["text"] == (
        "marked with flymark by andrewt at 2022-05-20 14:30:00.123456\n"
        "\n"
        "+50 compiles\n"
        "+37.5 autotest: 15/20\n"
    )


def test_encode_flags_incomplete_records(record, endpoint) -> None:
    incomplete = record.model_copy(update={"status": MarkStatus.PARTIALLY_INCOMPLETE})

    text = encode_mark_form(incomplete, endpoint)["text"]

    assert text.rstrip().endswith("INCOMPLETE: some criteria could not be run, review manually")


def test_accepted_submission_sends_credentials(record, endpoint) -> None:
    server = Server((200, "OK\n"))

    with _client(server) as client:
        outcome = client.submit(record, endpoint)

    assert outcome.result is SubmissionResult.ACCEPTED
    assert outcome.accepted
    assert outcome.attempts == 1
    assert outcome.status_code == 200

    (request,) = server.requests
    assert request.method == "POST"
    assert str(request.url) == URL
    expected_auth = base64.b64encode(b"andrewt:hunter2").decode()
    assert request.headers["Authorization"] == f"Basic {expected_auth}"
    assert request.headers["Cookie"] == "session=abc123"
    body = parse_qs(request.content.decode())
    assert body["student"] == ["z5555555"]
    assert body["total"] == ["87.5"]
    assert body["final"] == ["1"]


def test_client_error_is_rejected_without_retry(record, endpoint) -> None:
    server = Server((403, "Forbidden"))

    with _client(server) as client:
        outcome = client.submit(record, endpoint)

    assert outcome.result is SubmissionResult.REJECTED
    assert outcome.reason == "HTTP 403: Forbidden"
    assert outcome.attempts == 1
    assert len(server.requests) == 1


def test_timeouts_are_retried_with_backoff(record, endpoint) -> None:
    server = Server(httpx.ReadTimeout, httpx.ReadTimeout, (200, "OK"))
    sleeps: list[float] = []

    with _client(server, sleeps) as client:
        outcome = client.submit(record, endpoint)

    assert outcome.result is SubmissionResult.ACCEPTED
    assert outcome.attempts == 3
    assert len(server.requests) == 3
    assert sleeps == [0.5, 1.0]


def test_server_errors_exhaust_retries(record, endpoint) -> None:
    server = Server((500, "Internal Server Error"))
    sleeps: list[float] = []

    with _client(server, sleeps) as client:
        outcome = client.submit(record, endpoint)

    assert outcome.result is SubmissionResult.RETRY_EXHAUSTED
    assert outcome.attempts == 3
    assert outcome.status_code == 500
    assert len(server.requests) == 3
    assert sleeps == [0.5, 1.0]
    assert "HTTP 500" in outcome.reason


def test_too_many_requests_is_retried(record, endpoint) -> None:
    server = Server((429, "Too Many Requests"), (200, "OK"))
    sleeps: list[float] = []

    with _client(server, sleeps) as client:
        outcome = client.submit(record, endpoint)

    assert outcome.result is SubmissionResult.ACCEPTED
    assert outcome.attempts == 2
    assert sleeps == [0.5]


def test_error_acknowledgement_is_rejected(record, endpoint) -> None:
    server = Server((200, "ERROR: session closed\n"))

    with _client(server) as client:
        outcome = client.submit(record, endpoint)

    assert outcome.result is SubmissionResult.REJECTED
    assert outcome.reason == "session closed"
    assert len(server.requests) == 1


def test_unrecognised_acknowledgement_is_rejected(record, endpoint) -> None:
    server = Server((200, "<html>login required</html>"))

    with _client(server) as client:
        outcome = client.submit(record, endpoint)

    assert outcome.result is SubmissionResult.REJECTED
    assert outcome.reason.startswith("unrecognised acknowledgement")


def test_non_transient_transport_error_is_network_error(record, endpoint) -> None:
    server = Server(httpx.UnsupportedProtocol)

    with _client(server) as client:
        outcome = client.submit(record, endpoint)

    assert outcome.result is SubmissionResult.NETWORK_ERROR
    assert outcome.attempts == 1
    assert len(server.requests) == 1


def test_cancelled_before_submitting(record, endpoint) -> None:
    cancel = CancelToken()
    cancel.cancel()
    server = Server((200, "OK"))

    with _client(server, cancel=cancel) as client:
        outcome = client.submit(record, endpoint)

    assert outcome.result is SubmissionResult.NETWORK_ERROR
    assert outcome.reason == "cancelled"
    assert outcome.attempts == 0
    assert server.requests == []


def test_cancel_during_backoff_stops_retrying(record, endpoint) -> None:
    cancel = CancelToken()
    server = Server((503, "busy"))

    with _client(server, sleeps=None, cancel=cancel) as client:
        client._sleep = lambda seconds: cancel.cancel()
        outcome = client.submit(record, endpoint)

    assert outcome.result is SubmissionResult.NETWORK_ERROR
    assert outcome.reason == "cancelled"
    assert len(server.requests) == 1


def test_default_endpoint() -> None:
    assert default_endpoint("cs1521", "22T1") == "https://cgi.cse.unsw.edu.au/~cs1521/22T1/imark/server.cgi/"


@pytest.mark.parametrize(
    "status, body, expected",
    [
        (200, "OK", SubmissionResult.ACCEPTED),
        (200, "\n  ok 1 mark recorded\n", SubmissionResult.ACCEPTED),
        (200, "ERROR: no such student", SubmissionResult.REJECTED),
        (200, "", SubmissionResult.REJECTED),
        (404, "Not Found", SubmissionResult.REJECTED),
        (502, "Bad Gateway", None),
        (408, "Request Timeout", None),
        (429, "Too Many Requests", None),
    ],
)
def test_classify_response(status: int, body: str, expected) -> None:
    assert classify_response(status, body) is expected
