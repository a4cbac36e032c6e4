"""Tests for the shared HTTP, polling, worker pool and OpenAI reply helpers."""
import threading
import time
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import httpx
import pytest

from conftest import make_settings
from utils.errors import AuthError, PollTimeoutError, TransientServiceError
from utils.http import send_with_retry
from utils.openai_utils import extract_results_object, latest_assistant_text, loads_strict
from utils.polling import Deadline, poll_until
from utils.workers import run_ordered


def _client(statuses: list[int]) -> tuple[httpx.Client, list[httpx.Request]]:
    seen: list[httpx.Request] = []
    replies = iter(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(next(replies), json={})

    return httpx.Client(transport=httpx.MockTransport(handler)), seen


class _Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# send_with_retry
# ---------------------------------------------------------------------------

class TestSendWithRetry:
    def test_success_first_try(self):
        client, seen = _client([200])
        response = send_with_retry(client, "GET", "https://x/a", settings=make_settings(), service="x")
        assert response.status_code == 200
        assert len(seen) == 1

    def test_retries_then_succeeds(self):
        client, seen = _client([503, 429, 201])
        settings = make_settings(retry_delays_s=[1, 3, 10])
        with patch("utils.http.time_module") as mock_time:
            response = send_with_retry(client, "POST", "https://x/a", settings=settings, service="x")

        assert response.status_code == 201
        assert len(seen) == 3
        assert [c.args[0] for c in mock_time.sleep.call_args_list] == [1, 3]

    def test_gives_up_after_attempts(self):
        client, seen = _client([502] * 5)
        with pytest.raises(TransientServiceError) as exc_info:
            send_with_retry(client, "GET", "https://x/a", settings=make_settings(), service="x")
        assert exc_info.value.http_status == 502
        assert len(seen) == 3

    def test_client_errors_returned_without_retry(self):
        client, seen = _client([404])
        response = send_with_retry(client, "GET", "https://x/a", settings=make_settings(), service="x")
        assert response.status_code == 404
        assert len(seen) == 1

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_failure_raises_immediately(self, status):
        client, seen = _client([status, 200])
        with pytest.raises(AuthError) as exc_info:
            send_with_retry(client, "GET", "https://x/a", settings=make_settings(), service="imgbb")
        assert exc_info.value.service == "imgbb"
        assert len(seen) == 1

    def test_anonymous_request_returns_forbidden(self):
        client, seen = _client([403])
        response = send_with_retry(
            client, "GET", "https://x/a",
            settings=make_settings(), service="download", credentialed=False,
        )
        assert response.status_code == 403
        assert len(seen) == 1

    def test_transport_error_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        response = send_with_retry(client, "GET", "https://x/a", settings=make_settings(), service="x")
        assert response.status_code == 200
        assert len(calls) == 2

    def test_transport_error_exhausted(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        with pytest.raises(TransientServiceError, match="unreachable"):
            send_with_retry(client, "GET", "https://x/a", settings=make_settings(), service="x")

    def test_expired_deadline_sends_nothing(self):
        client, seen = _client([200])
        with pytest.raises(PollTimeoutError):
            send_with_retry(
                client, "GET", "https://x/a",
                settings=make_settings(), service="x", deadline=Deadline(0),
            )
        assert seen == []


# ---------------------------------------------------------------------------
# Deadline / poll_until
# ---------------------------------------------------------------------------

class TestDeadline:
    def test_unbounded_never_expires(self):
        deadline = Deadline.unbounded()
        assert deadline.remaining() is None
        assert not deadline.expired
        deadline.check("anything")

    def test_expires_with_clock(self):
        clock = _Clock()
        deadline = Deadline(30, clock=clock)
        assert deadline.remaining() == 30
        clock.now += 31
        assert deadline.expired
        with pytest.raises(PollTimeoutError, match="before upload"):
            deadline.check("upload")

    def test_cancel_expires_unbounded_deadline(self):
        deadline = Deadline.unbounded()
        deadline.cancel()
        assert deadline.cancelled
        assert deadline.expired
        with pytest.raises(PollTimeoutError, match="cancelled before upload"):
            deadline.check("upload")


class TestPollUntil:
    def test_returns_terminal_state(self):
        fetch = MagicMock(side_effect=["queued", "running", "done"])
        with patch("utils.polling.time_module") as mock_time:
            state = poll_until(
                fetch, lambda s: s == "done",
                interval_s=1.0, max_attempts=5, deadline=Deadline.unbounded(), what="job",
            )
        assert state == "done"
        assert fetch.call_count == 3
        assert mock_time.sleep.call_count == 2
        mock_time.sleep.assert_called_with(1.0)

    def test_attempt_ceiling(self):
        fetch = MagicMock(return_value="running")
        with patch("utils.polling.time_module") as mock_time:
            with pytest.raises(PollTimeoutError, match="after 4 checks"):
                poll_until(
                    fetch, lambda s: s == "done",
                    interval_s=1.0, max_attempts=4, deadline=Deadline.unbounded(), what="job",
                )
        assert fetch.call_count == 4
        # No sleep after the final check.
        assert mock_time.sleep.call_count == 3

    def test_deadline_stops_polling(self):
        clock = _Clock()
        deadline = Deadline(10, clock=clock)

        def fetch():
            clock.now += 6
            return "running"

        with patch("utils.polling.time_module"):
            with pytest.raises(PollTimeoutError, match="deadline"):
                poll_until(fetch, lambda s: False, interval_s=1.0, max_attempts=50,
                           deadline=deadline, what="job")
        assert clock.now == 112


# ---------------------------------------------------------------------------
# run_ordered
# ---------------------------------------------------------------------------

class TestRunOrdered:
    def test_results_keep_input_order(self):
        def unit(i):
            time.sleep(0.01 * (3 - i))
            return i

        units = [lambda i=i: unit(i) for i in range(3)]
        assert run_ordered(units, max_workers=3, deadline=Deadline.unbounded()) == [0, 1, 2]

    def test_auth_error_stops_running_and_queued_units(self):
        deadline = Deadline.unbounded()
        polling_started = threading.Event()
        seen = []

        def rejected():
            polling_started.wait(timeout=5)
            raise AuthError("bad token", service="replicate", http_status=401)

        def polling():
            polling_started.set()
            for _ in range(500):
                if deadline.expired:
                    seen.append("polling stopped")
                    return None
                time.sleep(0.01)
            seen.append("polling finished")
            return None

        def queued():
            seen.append("queued ran")

        with pytest.raises(AuthError):
            run_ordered([rejected, polling, queued], max_workers=2, deadline=deadline)

        assert deadline.cancelled
        assert seen == ["polling stopped"]


# ---------------------------------------------------------------------------
# OpenAI reply helpers
# ---------------------------------------------------------------------------

class TestReplyHelpers:
    def test_latest_assistant_text_skips_user_and_images(self):
        page = SimpleNamespace(data=[
            SimpleNamespace(role="user", content=[
                SimpleNamespace(type="text", text=SimpleNamespace(value="prompt")),
            ]),
            SimpleNamespace(role="assistant", content=[
                SimpleNamespace(type="image_file"),
                SimpleNamespace(type="text", text=SimpleNamespace(value='{"results": []}')),
            ]),
        ])
        assert latest_assistant_text(page) == '{"results": []}'

    def test_latest_assistant_text_none(self):
        assert latest_assistant_text(SimpleNamespace(data=[])) is None

    def test_loads_strict_rejects_arrays(self):
        with pytest.raises(ValueError):
            loads_strict("[1, 2]")

    def test_extract_results_object(self):
        text = 'Sure! {"results": [{"altTag": "a", "seoFilename": "b"}]} Done.'
        assert extract_results_object(text) == {"results": [{"altTag": "a", "seoFilename": "b"}]}

    def test_extract_results_object_broken_json(self):
        assert extract_results_object('{"results": [oops}') is None
