import time

import pytest
import requests

from catalog_core.errors import UpstreamNotFound
from catalog_core.http_utils import RateLimiter, RetryExecutor, ProviderClient
from conftest import FakeResponse, FakeSession


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


class RecordingObserver:
    def __init__(self):
        self.events = []

    def on_retry(self, event):
        self.events.append(event)


def test_rate_limiter_spacing_two_per_second():
    clock = FakeClock()
    limiter = RateLimiter(2, clock=clock, sleep=clock.sleep)
    start = clock()
    grants = []
    for _ in range(10):
        limiter.throttle()
        grants.append(clock())

    assert clock() - start >= 4.5
    gaps = [b - a for a, b in zip(grants, grants[1:])]
    assert all(g >= 0.5 - 1e-9 for g in gaps)


def test_rate_limiter_first_call_is_immediate_and_idle_time_counts():
    clock = FakeClock()
    limiter = RateLimiter(2, clock=clock, sleep=clock.sleep)
    limiter.throttle()
    assert clock() == 100.0
    clock.now += 2.0  # longer than the interval: no wait needed
    limiter.throttle()
    assert clock() == 102.0


def test_rate_limiter_real_clock():
    limiter = RateLimiter(20)
    start = time.monotonic()
    for _ in range(5):
        limiter.throttle()
    assert time.monotonic() - start >= 0.2 - 0.01


def test_rate_limiter_rejects_non_positive_rate():
    with pytest.raises(ValueError):
        RateLimiter(0)


def test_retry_exhaustion_invokes_four_times_and_reraises_last_error():
    calls = []
    sleeps = []
    errors = [RuntimeError(f"boom {i}") for i in range(4)]

    def always_fails():
        calls.append(1)
        raise errors[len(calls) - 1]

    observer = RecordingObserver()
    executor = RetryExecutor(max_retries=3, base_delay_ms=1000, observer=observer, sleep=sleeps.append)

    with pytest.raises(RuntimeError) as exc:
        executor.execute(always_fails)

    assert len(calls) == 4
    assert exc.value is errors[-1]
    assert sleeps == [1.0, 2.0, 4.0]
    assert [e.attempt for e in observer.events] == [1, 2, 3]
    assert [e.delay_ms for e in observer.events] == [1000, 2000, 4000]
    assert observer.events[0].error is errors[0]


def test_retry_recovers_and_supports_linear_delay():
    attempts = []
    sleeps = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("transient")
        return "ok"

    executor = RetryExecutor(max_retries=3, base_delay_ms=200, exponential=False, sleep=sleeps.append)
    assert executor.execute(flaky) == "ok"
    assert len(attempts) == 3
    assert sleeps == [0.2, 0.2]


def test_retry_per_call_override():
    calls = []

    def fails():
        calls.append(1)
        raise ValueError("nope")

    executor = RetryExecutor(max_retries=3, base_delay_ms=0, sleep=lambda s: None)
    with pytest.raises(ValueError):
        executor.execute(fails, max_retries=1)
    assert len(calls) == 2


def _client(session, max_retries=2):
    return ProviderClient(
        "https://upstream.test/",
        requests_per_second=1000,
        timeout=5,
        session=session,
        retry_executor=RetryExecutor(max_retries=max_retries, base_delay_ms=0, sleep=lambda s: None),
    )


def test_provider_client_not_found_is_not_retried():
    session = FakeSession(FakeResponse(404, {"status_message": "missing"}))
    client = _client(session)
    with pytest.raises(UpstreamNotFound) as exc:
        client._request("GET", "/movie/1")
    assert exc.value.status == 404
    assert len(session.calls) == 1
    assert session.calls[0]["url"] == "https://upstream.test/movie/1"


def test_provider_client_retries_server_errors_then_succeeds():
    session = FakeSession(FakeResponse(503), requests.Timeout("slow"), FakeResponse(200, {"ok": True}))
    client = _client(session)
    assert client._request("GET", "/thing") == {"ok": True}
    assert len(session.calls) == 3


def test_provider_client_surfaces_last_error_after_retries():
    session = FakeSession(FakeResponse(500))
    client = _client(session, max_retries=2)
    with pytest.raises(requests.HTTPError):
        client._request("GET", "/thing")
    assert len(session.calls) == 3
