"""Deterministic backend failure classification for dispatcher fallback policy."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from task_router.routing.errors import BackendExecutionError
from task_router.routing.models import ErrorKind

DISPATCH_FAILURE_CLASSIFIER_VERSION = 1

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "throttle",
    "quota",
    "429",
    "too many requests",
    "usage limit",
)
_TIMEOUT_CODE_MARKER = "TIMEOUT"


@dataclass(slots=True)
class DispatchFailureClassification:
    """Normalized failure classification result."""

    kind: ErrorKind
    fallback_eligible: bool
    matched_rule: str
    matched_pattern: str | None

    def to_log_details(self) -> dict[str, object]:
        return {
            "classifier_version": DISPATCH_FAILURE_CLASSIFIER_VERSION,
            "kind": self.kind.value,
            "fallback_eligible": self.fallback_eligible,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_dispatch_failure(error: BaseException) -> DispatchFailureClassification:
    """Classify an adapter failure as timeout, rate-limited or other."""

    code = str(getattr(error, "code", "") or "")
    timeout_hint = bool(getattr(error, "timeout", False))
    should_fallback = bool(getattr(error, "should_fallback", False))

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return DispatchFailureClassification(
            kind=ErrorKind.TIMEOUT,
            fallback_eligible=True,
            matched_rule="timeout_exception",
            matched_pattern=None,
        )
    if _TIMEOUT_CODE_MARKER in code.upper():
        return DispatchFailureClassification(
            kind=ErrorKind.TIMEOUT,
            fallback_eligible=True,
            matched_rule="timeout_code",
            matched_pattern=_TIMEOUT_CODE_MARKER,
        )
    if timeout_hint:
        return DispatchFailureClassification(
            kind=ErrorKind.TIMEOUT,
            fallback_eligible=True,
            matched_rule="timeout_hint",
            matched_pattern=None,
        )

    pattern = _first_match(str(error).lower(), _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return DispatchFailureClassification(
            kind=ErrorKind.RATE_LIMITED,
            fallback_eligible=True,
            matched_rule="rate_limited",
            matched_pattern=pattern,
        )

    return DispatchFailureClassification(
        kind=ErrorKind.OTHER,
        fallback_eligible=should_fallback,
        matched_rule="should_fallback_hint" if should_fallback else "non_fallback",
        matched_pattern=None,
    )


def stamp_classification(
    error: BaseException,
    classification: DispatchFailureClassification,
) -> None:
    if isinstance(error, BackendExecutionError):
        error.kind = classification.kind


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
