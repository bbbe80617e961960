"""HTTP client with retry classification, backoff and request budgeting."""
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class BudgetExceededError(RuntimeError):
    pass


class UpstreamError(RuntimeError):
    """Non-success response (or transport failure) from the search API."""

    def __init__(
        self,
        status: Optional[int],
        reason: str,
        url: str = "",
        retryable: Optional[bool] = None,
    ) -> None:
        self.status = status
        self.reason = reason
        self.url = url
        if retryable is None:
            retryable = status is None or status in RETRYABLE_STATUSES or status >= 500
        self.retryable = retryable
        label = status if status is not None else "network"
        super().__init__(f"Serper API error: {label} {reason}".rstrip())


@dataclass
class RequestMetrics:
    api_calls: int = 0
    retries: int = 0
    failures: int = 0

    @property
    def api_calls_made(self) -> int:
        return self.api_calls

    def inc_api_call(self) -> None:
        self.api_calls += 1

    def inc_retry(self) -> None:
        self.retries += 1

    def inc_failure(self) -> None:
        self.failures += 1


class RequestBudget:
    def __init__(
        self,
        max_calls: int,
        on_consume: Optional[Callable[[int], None]] = None,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.max_calls = max_calls
        self.on_consume = on_consume
        self.metrics = metrics
        self._count = 0

    @property
    def count(self) -> int:
        if self.metrics is not None:
            return int(self.metrics.api_calls)
        return self._count

    def consume(self) -> None:
        if self.count >= self.max_calls:
            raise BudgetExceededError(f"API call budget exceeded: {self.count} >= {self.max_calls}")
        if self.metrics is not None:
            self.metrics.inc_api_call()
        else:
            self._count += 1
        if self.on_consume:
            self.on_consume(self.count)


class HttpClient:
    """POSTs JSON bodies; retries only transient failures.

    retry_max is the total number of attempts, so retry_max=1 never retries.
    """

    def __init__(
        self,
        timeout: float = 20,
        retry_max: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        metrics: Optional[RequestMetrics] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = timeout
        self.retry_max = max(1, int(retry_max))
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.metrics = metrics
        self.sleep = sleep
        self.session = requests.Session()

    def post_json(
        self,
        url: str,
        body: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        request_headers = {"Content-Type": "application/json"}
        if headers:
            request_headers.update(headers)

        for attempt in range(1, self.retry_max + 1):
            try:
                resp = self.session.post(url, json=body, headers=request_headers, timeout=self.timeout)
            except requests.Timeout as exc:
                error = UpstreamError(None, f"timeout after {self.timeout}s: {exc}", url, retryable=True)
            except requests.RequestException as exc:
                error = UpstreamError(None, str(exc), url, retryable=True)
            else:
                status = resp.status_code
                if 200 <= status < 300:
                    try:
                        payload = resp.json()
                    except ValueError as exc:
                        logger.error("Non-JSON response from %s", url)
                        raise UpstreamError(status, "invalid JSON body", url, retryable=False) from exc
                    if not isinstance(payload, dict):
                        logger.error("Unexpected JSON shape from %s: %s", url, type(payload).__name__)
                        raise UpstreamError(status, "unexpected JSON shape", url, retryable=False)
                    return payload
                error = UpstreamError(status, resp.reason or "", url)
                if not error.retryable:
                    logger.error("HTTP %s from %s", status, url)
                    self._record_failure()
                    raise error

            if attempt >= self.retry_max:
                self._record_failure()
                raise error
            logger.warning("%s (attempt %s/%s), retrying", error, attempt, self.retry_max)
            if self.metrics is not None:
                self.metrics.inc_retry()
            if error.status is None or not self._sleep_retry_after(resp):
                self._sleep_backoff(attempt)

        raise RuntimeError("Unexpected HTTP retry loop exit")

    def _record_failure(self) -> None:
        if self.metrics is not None:
            self.metrics.inc_failure()

    def _sleep_backoff(self, attempt: int) -> None:
        base = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        jitter = random.uniform(0, self.backoff_base)
        self.sleep(base + jitter)

    def _sleep_retry_after(self, resp: requests.Response) -> bool:
        retry_after = resp.headers.get("Retry-After")
        if not retry_after:
            return False
        try:
            delay = float(retry_after)
        except ValueError:
            return False
        delay = max(0.0, min(delay, self.backoff_max))
        self.sleep(delay)
        return True
