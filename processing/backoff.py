# processing/backoff.py
"""Provider error classification and retry delay policy.

This is the only module that reads raw provider error text. Everything else
works with :class:`ErrorClassification`.
"""

from __future__ import annotations

import random
import re
from dataclasses import dataclass
from enum import Enum

import httpx

from config import settings
from processing.errors import ProviderError


class ErrorKind(str, Enum):
    """Classification of a single provider failure."""

    RATE_LIMIT = "rate_limit"
    CONTENT_TOO_LARGE = "content_too_large"
    MALFORMED_RESPONSE = "malformed_response"
    OTHER = "other"


RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.OTHER})

_RATE_LIMIT_MARKERS = (
    "rate limit",
    "rate_limit",
    "ratelimit",
    "too many requests",
    "quota exceeded",
    "try again in",
)
_TOO_LARGE_MARKERS = (
    "token limit",
    "context length",
    "context_length",
    "maximum context",
    "too large",
    "payload too large",
)
_MALFORMED_MARKERS = (
    "malformed",
    "empty response",
    "invalid response",
    "unparseable",
)
# Status codes quoted in the message text, consulted only without a status hint.
_RATE_LIMIT_CODE_RE = re.compile(r"\b429\b")
_TOO_LARGE_CODE_RE = re.compile(r"\b413\b")

_WAIT_UNIT = r"(?:ms|milliseconds?|hours?|hrs?|h|minutes?|mins?|m|seconds?|secs?|s)(?![a-z])"
# "Please try again in 12.3s", "try again in 1m30s", "retry after 20 seconds"
_WAIT_HINT_RE = re.compile(
    r"(?:try again in|retry after|retry in)\s*"
    rf"(\d+(?:\.\d+)?\s*(?:{_WAIT_UNIT})?(?:\s*\d+(?:\.\d+)?\s*{_WAIT_UNIT})*)",
    re.IGNORECASE,
)
_WAIT_PART_RE = re.compile(rf"(\d+(?:\.\d+)?)\s*({_WAIT_UNIT})?", re.IGNORECASE)
_UNIT_SECONDS = {"ms": 0.001, "h": 3600.0, "m": 60.0, "s": 1.0}


@dataclass(frozen=True)
class ErrorClassification:
    """Result of :func:`classify_error`."""

    kind: ErrorKind
    message: str
    recommended_wait: float | None = None

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


def extract_recommended_wait(message: str) -> float | None:
    """Return the provider-recommended wait in seconds, if the text has one."""
    match = _WAIT_HINT_RE.search(message or "")
    if not match:
        return None
    total = 0.0
    for part in _WAIT_PART_RE.finditer(match.group(1)):
        unit = (part.group(2) or "s").lower()
        if unit.startswith("mil") or unit == "ms":
            factor = _UNIT_SECONDS["ms"]
        else:
            factor = _UNIT_SECONDS[unit[0]]
        total += float(part.group(1)) * factor
    return total


def _status_of(exc: BaseException) -> int | None:
    if isinstance(exc, ProviderError):
        return exc.status_hint
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        return exc.response.status_code
    return None


def classify_error(exc: BaseException) -> ErrorClassification:
    """Map a provider exception onto an :class:`ErrorKind`."""
    message = str(exc) or type(exc).__name__
    lowered = message.lower()
    status = _status_of(exc)
    if status is None:
        if _RATE_LIMIT_CODE_RE.search(message):
            status = 429
        elif _TOO_LARGE_CODE_RE.search(message):
            status = 413

    if status == 429 or any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        return ErrorClassification(
            ErrorKind.RATE_LIMIT, message, extract_recommended_wait(message)
        )
    if status == 413 or any(marker in lowered for marker in _TOO_LARGE_MARKERS):
        return ErrorClassification(ErrorKind.CONTENT_TOO_LARGE, message)
    if any(marker in lowered for marker in _MALFORMED_MARKERS):
        return ErrorClassification(ErrorKind.MALFORMED_RESPONSE, message)
    return ErrorClassification(ErrorKind.OTHER, message)


def exponential_component(
    attempt: int,
    base_delay: float,
    exponential: bool = True,
    max_delay: float | None = None,
) -> float:
    """Delay before retry ``attempt`` (1-based) without jitter."""
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    if exponential:
        delay = base_delay * (2 ** (attempt - 1))
    else:
        delay = base_delay * attempt
    cap = settings.RETRY_MAX_DELAY_SECONDS if max_delay is None else max_delay
    return min(delay, cap)


def compute_retry_delay(
    attempt: int,
    classification: ErrorClassification,
    base_delay: float,
    exponential: bool = True,
    rng: random.Random | None = None,
) -> float:
    """Seconds to wait before retry ``attempt`` (1-based).

    A provider-recommended wait wins and gets a fixed safety margin. Otherwise
    the exponential component plus up to ``RETRY_JITTER_RATIO`` of jitter.
    """
    if classification.recommended_wait is not None:
        return classification.recommended_wait + settings.RETRY_SAFETY_MARGIN_SECONDS

    delay = exponential_component(attempt, base_delay, exponential)
    jitter_source = rng or random
    jitter = jitter_source.uniform(0, delay * settings.RETRY_JITTER_RATIO)
    return delay + jitter
