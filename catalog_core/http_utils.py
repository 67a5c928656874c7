"""
Outbound HTTP plumbing shared by the provider clients: a per-provider rate
limiter, a bounded exponential-backoff retry executor and the session wrapper
that combines both around every upstream call.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol, TypeVar

import requests

from .errors import UpstreamNotFound
from .metrics import UPSTREAM_RETRIES

logger = logging.getLogger(__name__)

T = TypeVar("T")

# answers that mean "no such record" and must never be retried
NOT_FOUND_STATUSES = {401, 404}


class RateLimiter:
    """
    Strict minimum spacing between grants: 1/requests_per_second seconds.
    No burst credit; it never rejects, it only delays.
    """

    def __init__(self, requests_per_second: float, clock=time.monotonic, sleep=time.sleep):
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self.requests_per_second = requests_per_second
        self.min_interval = 1.0 / requests_per_second
        self._clock = clock
        self._sleep = sleep
        self._last_grant: float | None = None
        self._lock = threading.Lock()

    def throttle(self) -> None:
        with self._lock:
            if self._last_grant is not None:
                wait = self.min_interval - (self._clock() - self._last_grant)
                if wait > 0:
                    self._sleep(wait)
            self._last_grant = self._clock()


@dataclass(frozen=True)
class RetryEvent:
    attempt: int        # 1-based number of the retry about to happen
    max_retries: int
    delay_ms: float
    error: BaseException
    label: str | None = None


class RetryObserver(Protocol):
    def on_retry(self, event: RetryEvent) -> None: ...


class LoggingRetryObserver:
    """Logs each retry and counts it per provider."""

    def __init__(self, provider: str):
        self.provider = provider

    def on_retry(self, event: RetryEvent) -> None:
        UPSTREAM_RETRIES.labels(self.provider).inc()
        logger.warning(
            "Retrying %s request %s (attempt %d/%d) after %dms: %s",
            self.provider, event.label or "", event.attempt, event.max_retries,
            event.delay_ms, event.error,
        )


class RetryExecutor:
    """
    Runs a zero-argument callable, retrying on any exception with
    base_delay_ms * 2**attempt backoff. After max_retries the last error is
    re-raised unmodified.
    """

    def __init__(self, max_retries: int = 3, base_delay_ms: float = 1000, exponential: bool = True,
                 observer: RetryObserver | None = None, sleep=time.sleep):
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.exponential = exponential
        self.observer = observer
        self._sleep = sleep

    def delay_for(self, attempt: int, base_delay_ms: float, exponential: bool) -> float:
        return base_delay_ms * (2 ** attempt) if exponential else base_delay_ms

    def execute(self, operation: Callable[[], T], *, max_retries: int | None = None,
                base_delay_ms: float | None = None, exponential: bool | None = None,
                label: str | None = None) -> T:
        retries = self.max_retries if max_retries is None else max_retries
        base = self.base_delay_ms if base_delay_ms is None else base_delay_ms
        expo = self.exponential if exponential is None else exponential

        attempt = 0
        while True:
            try:
                return operation()
            except Exception as e:
                if attempt >= retries:
                    raise
                delay = self.delay_for(attempt, base, expo)
                if self.observer is not None:
                    self.observer.on_retry(RetryEvent(attempt + 1, retries, delay, e, label))
                self._sleep(delay / 1000.0)
                attempt += 1


class ProviderClient:
    """
    Base for upstream API clients. Every attempt is throttled by the
    provider's own RateLimiter; the whole call is wrapped by a RetryExecutor.
    401/404 answers leave the executor untouched and surface as
    UpstreamNotFound so they are never retried.
    """

    provider = "upstream"

    def __init__(self, base_url: str, *, requests_per_second: float, timeout: float,
                 max_retries: int = 3, retry_delay_ms: float = 1000,
                 session: requests.Session | None = None,
                 rate_limiter: RateLimiter | None = None,
                 retry_executor: RetryExecutor | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter or RateLimiter(requests_per_second)
        self.retry = retry_executor or RetryExecutor(
            max_retries=max_retries,
            base_delay_ms=retry_delay_ms,
            observer=LoggingRetryObserver(self.provider),
        )

    def _prepare(self, params: dict | None) -> tuple[dict, dict]:
        """Hook for auth: returns (headers, params) for one request."""
        return {"accept": "application/json"}, dict(params or {})

    def _request(self, method: str, path: str, params: dict | None = None, json: Any = None) -> Any:
        url = f"{self.base_url}{path}"
        headers, params = self._prepare(params)

        def attempt():
            self.rate_limiter.throttle()
            r = self.session.request(method, url, params=params, json=json, headers=headers, timeout=self.timeout)
            if r.status_code in NOT_FOUND_STATUSES:
                return r
            if r.status_code >= 400:
                logger.error("%s API error: %s %s -> %s", self.provider, method, path, r.status_code)
            r.raise_for_status()
            return r

        r = self.retry.execute(attempt, label=f"{method} {path}")
        if r.status_code in NOT_FOUND_STATUSES:
            raise UpstreamNotFound(self.provider, f"{method} {path} -> {r.status_code}", r.status_code)
        return r.json()

    def close(self):
        self.session.close()
