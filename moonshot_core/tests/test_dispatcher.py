import threading

import httpx
import pytest

from moonshot_core.domain.exceptions import (
    AuthError,
    NetworkError,
    RateLimitError,
    RequestCancelledError,
    RequestTimeoutError,
    ServerError,
)
from moonshot_core.domain.models import RetryPolicy
from moonshot_core.providers.dispatcher import RetryDispatcher


def make_client(responses, calls):
    """返回一个假的 httpx.Client 类，按顺序交出 responses 中的响应（或抛出其中的异常）。"""

    queue = list(responses)

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def request(self, method, url, **kw):
            calls.append({"method": method, "url": url, **kw})
            item = queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

    return Client


def make_dispatcher(max_retries=3, initial_delay=1.0, max_delay=60.0, jitter=False, rand=lambda: 0.0, **kw):
    slept = []
    dispatcher = RetryDispatcher(
        api_key="sk-test-key-1234567890",
        base_url="https://api.example.test/v1",
        policy=RetryPolicy(max_retries=max_retries, initial_delay=initial_delay, max_delay=max_delay, jitter=jitter),
        sleep=slept.append,
        rand=rand,
        **kw,
    )
    return dispatcher, slept


def test_two_503_then_200_reports_two_delays(monkeypatch):
    calls = []
    monkeypatch.setattr(
        "httpx.Client",
        make_client(
            [
                httpx.Response(503, json={"error": {"message": "busy"}}),
                httpx.Response(503, json={"error": {"message": "busy"}}),
                httpx.Response(200, json={"ok": True}),
            ],
            calls,
        ),
    )
    dispatcher, slept = make_dispatcher(max_retries=3)
    resp = dispatcher.send("GET", "/models")
    assert resp.status_code == 200
    assert len(calls) == 3
    assert len(dispatcher.last_retry_delays) == 2
    assert slept == dispatcher.last_retry_delays == [1.0, 2.0]


def test_retryable_failures_make_exactly_max_attempts(monkeypatch):
    calls = []
    monkeypatch.setattr("httpx.Client", make_client([httpx.Response(500, text="oops")] * 4, calls))
    dispatcher, slept = make_dispatcher(max_retries=4)
    with pytest.raises(ServerError) as exc_info:
        dispatcher.send("POST", "/chat/completions", json={})
    assert len(calls) == 4
    assert len(slept) == 3
    assert exc_info.value.http_status == 500
    assert exc_info.value.extra["attempts"] == 4


def test_jittered_delay_stays_within_bounds(monkeypatch):
    calls = []
    monkeypatch.setattr("httpx.Client", make_client([httpx.Response(502, text="")] * 5, calls))
    dispatcher, _ = make_dispatcher(max_retries=5, initial_delay=2.0, max_delay=10.0, jitter=True, rand=lambda: 0.999)
    with pytest.raises(ServerError):
        dispatcher.send("GET", "/models")
    # 第 k 次尝试前的等待：base = 2 * 2^(k-2)，封顶 10
    for k, delay in enumerate(dispatcher.last_retry_delays, start=2):
        base = min(2.0 * 2 ** (k - 2), 10.0)
        assert base <= delay <= base * 1.2


def test_client_error_is_not_retried(monkeypatch):
    calls = []
    monkeypatch.setattr(
        "httpx.Client",
        make_client([httpx.Response(401, json={"error": {"message": "Invalid Authentication", "type": "invalid_authentication_error"}})], calls),
    )
    dispatcher, slept = make_dispatcher(max_retries=5)
    with pytest.raises(AuthError) as exc_info:
        dispatcher.send("GET", "/models")
    assert len(calls) == 1
    assert slept == []
    assert "sk-test-key" not in str(exc_info.value)
    assert "401" in str(exc_info.value)


def test_rate_limit_retry_after_is_recorded_but_not_used(monkeypatch):
    calls = []
    limited = httpx.Response(429, headers={"Retry-After": "30"}, json={"error": {"message": "rate limited"}})
    monkeypatch.setattr("httpx.Client", make_client([limited, limited], calls))
    dispatcher, slept = make_dispatcher(max_retries=2, initial_delay=1.0)
    with pytest.raises(RateLimitError) as exc_info:
        dispatcher.send("GET", "/models")
    assert slept == [1.0]
    assert exc_info.value.extra["retry_after"] == "30"


def test_transport_errors_are_classified_and_retried(monkeypatch):
    calls = []
    monkeypatch.setattr(
        "httpx.Client",
        make_client(
            [
                httpx.ConnectError("connection refused"),
                httpx.ReadTimeout("timed out"),
                httpx.ConnectError("connection refused"),
            ],
            calls,
        ),
    )
    dispatcher, slept = make_dispatcher(max_retries=3)
    with pytest.raises(NetworkError) as exc_info:
        dispatcher.send("GET", "/models")
    assert len(calls) == 3
    assert exc_info.value.http_status == 0
    assert issubclass(RequestTimeoutError, NetworkError)


def test_cancel_event_stops_before_next_attempt(monkeypatch):
    calls = []
    cancel = threading.Event()
    monkeypatch.setattr("httpx.Client", make_client([httpx.Response(503, text="")] * 3, calls))
    dispatcher, _ = make_dispatcher(max_retries=3, cancel_event=cancel)
    dispatcher._sleep = lambda delay: cancel.set()
    with pytest.raises(RequestCancelledError):
        dispatcher.send("GET", "/models")
    assert len(calls) == 1


def test_headers_carry_bearer_and_dialogue_tag(monkeypatch):
    calls = []
    monkeypatch.setattr("httpx.Client", make_client([httpx.Response(200, json={})], calls))
    dispatcher, _ = make_dispatcher(dialogue_tag="session-1")
    dispatcher.send("POST", "/chat/completions", json={"model": "x"})
    headers = calls[0]["headers"]
    assert headers["Authorization"] == "Bearer sk-test-key-1234567890"
    assert headers["tag"] == "session-1"
    assert calls[0]["url"] == "https://api.example.test/v1/chat/completions"


def test_stream_retries_until_connected(monkeypatch):
    attempts = []

    class FakeResponse:
        def __init__(self, status, lines=(), text=""):
            self.status_code = status
            self._lines = list(lines)
            self.text = text
            self.headers = {}

        def read(self):
            return self.text.encode()

        def iter_lines(self):
            yield from self._lines

    class StreamContext:
        def __init__(self, response):
            self._response = response

        def __enter__(self):
            return self._response

        def __exit__(self, *a):
            return False

    queue = [FakeResponse(503, text='{"error": {"message": "busy"}}'), FakeResponse(200, lines=["data: [DONE]"])]

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def stream(self, method, url, **kw):
            attempts.append(url)
            return StreamContext(queue.pop(0))

    monkeypatch.setattr("httpx.Client", Client)
    dispatcher, slept = make_dispatcher(max_retries=3)
    with dispatcher.stream("/chat/completions", {"stream": True}) as resp:
        assert list(resp.iter_lines()) == ["data: [DONE]"]
    assert len(attempts) == 2
    assert slept == [1.0]
