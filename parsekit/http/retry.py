# parsekit/http/retry.py
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Optional

import requests

from parsekit.errors import ParseConnectionError, RetriesExhaustedError
from parsekit.http.response import ERROR_EXCEEDED_BURST_LIMIT, ERROR_SERVICE_UNAVAILABLE

logger = logging.getLogger("parse.retry")

RATE_LIMITED = "rate_limited"
UNAVAILABLE = "unavailable"
CONNECTION = "connection"
DEADLINE = "deadline"


def classify(response: Any = None, error: Optional[BaseException] = None) -> Optional[str]:
    """
    Transient classification, or None when the outcome must not be retried.
    Only rate limiting (429 / code 155), service unavailable (503 / code 2)
    and low-level connection failures qualify.
    """
    if error is not None:
        if isinstance(error, (requests.ConnectionError, requests.Timeout, ParseConnectionError)):
            return CONNECTION
        return None
    if response is None:
        return None
    status = getattr(response, "http_status", None)
    code = getattr(response, "code", None)
    if status == 429 or code == ERROR_EXCEEDED_BURST_LIMIT:
        return RATE_LIMITED
    if status == 503 or code == ERROR_SERVICE_UNAVAILABLE:
        return UNAVAILABLE
    return None


def retry_after_seconds(
    headers: Optional[Dict[str, str]], now_ts: float | None = None, cap_seconds: float = 60.0
) -> Optional[float]:
    """
    Parses Retry-After header (seconds or HTTP-date) and returns a bounded wait in seconds,
    or None if header is absent/invalid.
    """
    if not headers:
        return None
    v = next((val for k, val in headers.items() if k.lower() == "retry-after"), None)
    if not v:
        return None
    v = str(v).strip()
    if v.isdigit():
        return max(0.0, min(float(v), cap_seconds))
    try:
        dt = parsedate_to_datetime(v)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    now = (
        datetime.fromtimestamp(now_ts, tz=timezone.utc)
        if now_ts
        else datetime.now(timezone.utc)
    )
    return max(0.0, min((dt - now).total_seconds(), cap_seconds))


@dataclass
class RetryPolicy:
    """
    Retries transient failures in place.

    retry_limit counts total attempts. The delay before retry n is sampled
    uniformly from [0.5, 1.5) * base_delay * n so concurrent callers spread
    out instead of retrying in lockstep; a server Retry-After wins when present.
    """

    retry_limit: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            retry_limit=int(getattr(settings, "retry_limit", 5)),
            base_delay=float(getattr(settings, "retry_base_delay", 0.5)),
            max_delay=float(getattr(settings, "retry_max_delay", 30.0)),
        )

    def backoff(self, attempt: int, headers: Optional[Dict[str, str]] = None) -> float:
        """attempt: 1-based number of the attempt that just failed."""
        ra = retry_after_seconds(headers, cap_seconds=self.max_delay)
        if ra is not None:
            return ra
        sampled = random.uniform(0.5, 1.5) * self.base_delay * max(1, attempt)
        return min(sampled, self.max_delay)

    def execute(
        self,
        request_fn: Callable[[Optional[float]], Any],
        deadline: Optional[float] = None,
        label: str = "",
    ) -> Any:
        """
        Calls request_fn(remaining_seconds) until it returns a non-transient
        response. `deadline` is an absolute time.monotonic() value shared by
        every attempt. Raises RetriesExhaustedError when attempts or time run out.
        """
        limit = max(1, int(self.retry_limit))
        attempt = 0
        while True:
            attempt += 1
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                raise RetriesExhaustedError(DEADLINE, attempt - 1)

            response = None
            error: Optional[BaseException] = None
            try:
                response = request_fn(remaining)
            except (requests.ConnectionError, requests.Timeout, ParseConnectionError) as e:
                error = e

            reason = classify(response, error)
            if reason is None:
                return response

            if attempt >= limit:
                logger.warning(
                    "retry.exhausted",
                    extra={"event": {"label": label, "attempts": attempt, "reason": reason}},
                )
                raise RetriesExhaustedError(reason, attempt, last_response=response, last_error=error)

            delay = self.backoff(attempt, getattr(response, "headers", None))
            if deadline is not None and time.monotonic() + delay >= deadline:
                logger.warning(
                    "retry.deadline",
                    extra={"event": {"label": label, "attempts": attempt, "reason": reason}},
                )
                raise RetriesExhaustedError(DEADLINE, attempt, last_response=response, last_error=error)

            logger.warning(
                "[retry] reason='%s' attempt=%d/%d wait=%.2fs %s", reason, attempt, limit, delay, label
            )
            time.sleep(delay)
