"""Retry policy for outbound provider calls.

Classifies failures into retry classes, computes bounded exponential backoff
with jitter, honours rate-limit metadata, and wraps async calls so transient
errors are retried without losing the original exception.

Usage:
    from incident_sre.retry import RetryPolicyConfig, with_retry

    result = await with_retry(lambda: client.get_run(run_id), RetryPolicyConfig())
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import random
import re
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")

HttpMethod = Literal["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]

_IDEMPOTENT_METHODS = frozenset({"GET", "HEAD"})
_DEFAULT_RATE_LIMIT = 5000
_RETRY_AFTER_RE = re.compile(r"retry after (\d+)", re.IGNORECASE)
_STATUS_IN_MESSAGE_RE = re.compile(r"\b(?:http|status) ([45]\d\d)\b")


class ErrorType(str, Enum):
    """Retry class of a failed outbound call."""

    RATE_LIMIT_PRIMARY = "RATE_LIMIT_PRIMARY"
    RATE_LIMIT_SECONDARY = "RATE_LIMIT_SECONDARY"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    CLIENT_ERROR = "CLIENT_ERROR"
    UNKNOWN = "UNKNOWN"


class RetryPolicyConfig(BaseModel):
    """Bounds for the retry loop.

    ``request_id`` and ``endpoint`` are optional context; when ``request_id``
    is set the jitter is derived from it so the delay schedule is
    reproducible for the same request.
    """

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0, le=10)
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=32000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1, le=5)
    jitter_factor: float = Field(default=0.25, ge=0, le=1)
    http_method: HttpMethod = "GET"
    allow_non_idempotent_retry: bool = False
    request_id: str | None = None
    endpoint: str | None = None

    @property
    def is_idempotent(self) -> bool:
        return self.http_method in _IDEMPOTENT_METHODS


DEFAULT_RETRY_CONFIG = RetryPolicyConfig()


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of :func:`should_retry` for one failed attempt."""

    should_retry: bool
    error_type: ErrorType
    reason: str
    delay_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "shouldRetry": self.should_retry,
            "errorType": self.error_type.value,
            "delayMs": self.delay_ms,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class RateLimitInfo:
    """Rate-limit metadata. ``reset`` is a Unix timestamp in seconds."""

    remaining: int
    limit: int
    reset: int
    retry_after: int | None = None


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _status_of(error: BaseException) -> int | None:
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _classify_status(status: int, message: str) -> ErrorType | None:
    if status == 429:
        if "secondary" in message:
            return ErrorType.RATE_LIMIT_SECONDARY
        return ErrorType.RATE_LIMIT_PRIMARY
    if status == 403 and ("rate limit" in message or "abuse" in message):
        if "secondary" in message or "abuse" in message:
            return ErrorType.RATE_LIMIT_SECONDARY
        return ErrorType.RATE_LIMIT_PRIMARY
    if 500 <= status <= 599:
        return ErrorType.SERVER_ERROR
    if 400 <= status <= 499:
        return ErrorType.CLIENT_ERROR
    return None


def _classify_message(message: str) -> ErrorType:
    if "rate limit" in message or "x-ratelimit-remaining" in message:
        if "secondary" in message:
            return ErrorType.RATE_LIMIT_SECONDARY
        return ErrorType.RATE_LIMIT_PRIMARY

    # A status code quoted in the message outranks the network markers, so
    # "HTTP 408 Request Timeout" is a client error.
    match = _STATUS_IN_MESSAGE_RE.search(message)
    if match:
        status = int(match.group(1))
        if status == 429:
            return ErrorType.RATE_LIMIT_PRIMARY
        if status == 403 and "abuse" in message:
            return ErrorType.RATE_LIMIT_SECONDARY
        if status >= 500:
            return ErrorType.SERVER_ERROR
        return ErrorType.CLIENT_ERROR

    network_markers = (
        "network",
        "timeout",
        "timed out",
        "econnrefused",
        "econnreset",
        "etimedout",
        "connection refused",
        "connection reset",
        "fetch failed",
    )
    if any(p in message for p in network_markers):
        return ErrorType.NETWORK_ERROR

    return ErrorType.UNKNOWN


def classify_error(error: object) -> ErrorType:
    """Map an exception to its retry class.

    An integer ``status`` or ``status_code`` attribute takes precedence over
    message patterns.  Builtin connection and timeout exceptions are network
    errors.  ``None`` and non-exceptions are ``UNKNOWN``.
    """
    if not isinstance(error, BaseException):
        return ErrorType.UNKNOWN

    message = str(error).lower()
    status = _status_of(error)
    if status is not None:
        by_status = _classify_status(status, message)
        if by_status is not None:
            return by_status

    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return ErrorType.NETWORK_ERROR

    return _classify_message(message)


def _header(headers: Mapping[str, str], name: str) -> str | None:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def _to_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def extract_rate_limit_info(
    error: object,
    headers: Mapping[str, str] | None = None,
    now: float | None = None,
) -> RateLimitInfo | None:
    """Read rate-limit metadata from response headers or the error message.

    Headers win when ``x-ratelimit-remaining``, ``-limit`` and ``-reset`` are
    all present, or when a ``retry-after`` header stands alone (secondary
    rate limits send only that).  Headers attached to the error (``error.headers``) are used
    when none are passed explicitly.
    """
    if headers is None and isinstance(error, BaseException):
        attached = getattr(error, "headers", None)
        if isinstance(attached, Mapping):
            headers = attached

    if headers:
        remaining = _to_int(_header(headers, "x-ratelimit-remaining"))
        limit = _to_int(_header(headers, "x-ratelimit-limit"))
        reset = _to_int(_header(headers, "x-ratelimit-reset"))
        retry_after = _to_int(_header(headers, "retry-after"))
        if remaining is not None and limit is not None and reset is not None:
            return RateLimitInfo(
                remaining=remaining,
                limit=limit,
                reset=reset,
                retry_after=retry_after,
            )
        if retry_after is not None:
            current = int(now if now is not None else time.time())
            return RateLimitInfo(
                remaining=0,
                limit=limit if limit is not None else _DEFAULT_RATE_LIMIT,
                reset=reset if reset is not None else current + retry_after,
                retry_after=retry_after,
            )

    if isinstance(error, BaseException):
        match = _RETRY_AFTER_RE.search(str(error))
        if match:
            retry_after = int(match.group(1))
            current = int(now if now is not None else time.time())
            return RateLimitInfo(
                remaining=0,
                limit=_DEFAULT_RATE_LIMIT,
                reset=current + retry_after,
                retry_after=retry_after,
            )

    return None


# ---------------------------------------------------------------------------
# Delays
# ---------------------------------------------------------------------------


def _seeded_rng(config: RetryPolicyConfig, attempt: int) -> random.Random | None:
    if not config.request_id:
        return None
    seed = f"{config.request_id}-{attempt}-{config.endpoint or 'unknown'}"
    return random.Random(int(hashlib.sha256(seed.encode("utf-8")).hexdigest()[:16], 16))


def _exponential_delay(attempt: int, config: RetryPolicyConfig) -> float:
    if config.base_delay_ms == 0:
        return 0.0
    try:
        raw = config.base_delay_ms * config.backoff_multiplier ** max(attempt, 0)
    except OverflowError:
        return float(config.max_delay_ms)
    return min(raw, config.max_delay_ms)


def calculate_backoff(
    attempt: int,
    config: RetryPolicyConfig = DEFAULT_RETRY_CONFIG,
    rng: random.Random | None = None,
) -> int:
    """Exponential backoff in milliseconds for a 0-indexed *attempt*.

    ``min(max_delay, base_delay * multiplier ** attempt)`` perturbed by up to
    ``±jitter_factor`` of itself.  With ``jitter_factor == 0`` the result is
    exact.
    """
    capped = _exponential_delay(attempt, config)
    if config.jitter_factor == 0:
        return int(capped)

    source = rng or _seeded_rng(config, attempt) or random
    jitter = (source.random() * 2 - 1) * capped * config.jitter_factor
    return max(0, math.floor(capped + jitter))


def calculate_rate_limit_delay(
    reset: int,
    retry_after: int | None,
    max_delay_ms: int,
    now: float | None = None,
) -> int:
    """Delay in milliseconds before a rate-limited call may be retried.

    An explicit positive ``retry_after`` (seconds) wins.  Otherwise wait until
    ``reset`` plus a one second buffer.  Always capped at ``max_delay_ms``.
    """
    if retry_after is not None and retry_after > 0:
        return min(retry_after * 1000, max_delay_ms)

    current = int(now if now is not None else time.time())
    delay_ms = max(0, reset - current) * 1000
    return min(delay_ms + 1000, max_delay_ms)


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


def should_retry(
    error: object,
    attempt: int,
    config: RetryPolicyConfig = DEFAULT_RETRY_CONFIG,
    headers: Mapping[str, str] | None = None,
    now: float | None = None,
) -> RetryDecision:
    """Decide whether a failed *attempt* (0-indexed) should be retried."""
    error_type = classify_error(error)

    if attempt >= config.max_retries:
        return RetryDecision(
            should_retry=False,
            error_type=error_type,
            reason=f"Max retries ({config.max_retries}) exceeded",
        )

    if not config.is_idempotent and not config.allow_non_idempotent_retry:
        return RetryDecision(
            should_retry=False,
            error_type=error_type,
            reason=(
                f"Non-idempotent method {config.http_method} requires explicit opt-in "
                "(allow_non_idempotent_retry=True)"
            ),
        )

    if error_type in (ErrorType.RATE_LIMIT_PRIMARY, ErrorType.RATE_LIMIT_SECONDARY):
        info = extract_rate_limit_info(error, headers, now=now)
        if info is not None:
            delay_ms = calculate_rate_limit_delay(
                info.reset, info.retry_after, config.max_delay_ms, now=now
            )
        else:
            delay_ms = calculate_backoff(attempt, config)
        return RetryDecision(
            should_retry=True,
            error_type=error_type,
            delay_ms=delay_ms,
            reason=(
                f"Rate limit hit, waiting {math.ceil(delay_ms / 1000)}s "
                f"before retry {attempt + 1}/{config.max_retries}"
            ),
        )

    if error_type in (ErrorType.SERVER_ERROR, ErrorType.NETWORK_ERROR):
        delay_ms = calculate_backoff(attempt, config)
        return RetryDecision(
            should_retry=True,
            error_type=error_type,
            delay_ms=delay_ms,
            reason=(
                f"{error_type.value} detected, retrying with {delay_ms}ms backoff "
                f"(attempt {attempt + 1}/{config.max_retries})"
            ),
        )

    if error_type == ErrorType.CLIENT_ERROR:
        return RetryDecision(
            should_retry=False,
            error_type=error_type,
            reason="Client error (4xx) - not retryable",
        )

    return RetryDecision(
        should_retry=False,
        error_type=error_type,
        reason="Unknown error type - not retryable",
    )


# ---------------------------------------------------------------------------
# Observers
# ---------------------------------------------------------------------------


@runtime_checkable
class RetryObserver(Protocol):
    """Receives one notification per scheduled retry."""

    def on_retry(self, decision: RetryDecision, attempt: int) -> None: ...


@dataclass
class RecordingRetryObserver:
    """Collects retry notifications in memory."""

    events: list[tuple[RetryDecision, int]] = field(default_factory=list)

    def on_retry(self, decision: RetryDecision, attempt: int) -> None:
        self.events.append((decision, attempt))

    @property
    def attempts(self) -> list[int]:
        return [attempt for _, attempt in self.events]


class LoggingRetryObserver:
    """Logs each scheduled retry at WARNING."""

    def __init__(self, name: str = "", log: logging.Logger | None = None) -> None:
        self._name = name
        self._logger = log or logger

    def on_retry(self, decision: RetryDecision, attempt: int) -> None:
        self._logger.warning(
            "Retrying %s after attempt %d: %s",
            self._name or "call",
            attempt,
            decision.reason,
        )


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    config: RetryPolicyConfig = DEFAULT_RETRY_CONFIG,
    observer: RetryObserver | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Await ``fn()`` and retry transient failures per *config*.

    Between attempts the calling coroutine sleeps for the decided delay; other
    tasks keep running.  When retries are exhausted or the failure is not
    retryable the original exception is re-raised unchanged.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            decision = should_retry(exc, attempt, config)
            if not decision.should_retry:
                logger.debug("Not retrying: %s", decision.reason)
                raise

            if observer is not None:
                observer.on_retry(decision, attempt)
            logger.info("Retry policy: %s", decision.reason)

            if decision.delay_ms:
                await sleep(decision.delay_ms / 1000)
            attempt += 1
