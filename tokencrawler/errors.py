"""
Error Taxonomy & Handler
========================
Categorised crawler errors plus the single place that decides what a failure
means for the run.

Categories (exit code in brackets):
- ValidationError     (1)  bad input, never retried
- NetworkError        (2)  timeouts, refused/reset connections, 5xx, 429
- FileSystemError     (3)  permissions, disk, missing artifacts
- ConfigurationError  (4)  bad option values, raised before any phase starts
- ApplicationError    (5)  unexpected/internal, aborts the run

Phase-level escalation uses ``PhaseFailure`` (and ``BrowserLaunchError``);
run-level aborts use ``PipelineAborted``. Both carry whatever partial
results exist so callers can still report them.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import re
from collections import Counter
from enum import Enum
from typing import Any, Dict, Optional

import requests
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    NETWORK = "network"
    FILESYSTEM = "filesystem"
    CONFIGURATION = "configuration"
    APPLICATION = "application"


class ErrorAction(str, Enum):
    """What the runner / orchestrator should do with a failure."""
    RETRY = "retry"                     # requeue the task after backoff
    RECORD = "record"                   # terminal task failure, phase goes on
    ESCALATE_PHASE = "escalate_phase"   # phase-level failure
    ABORT_PIPELINE = "abort_pipeline"   # stop the whole run


EXIT_CODES = {
    ErrorCategory.VALIDATION: 1,
    ErrorCategory.NETWORK: 2,
    ErrorCategory.FILESYSTEM: 3,
    ErrorCategory.CONFIGURATION: 4,
    ErrorCategory.APPLICATION: 5,
}


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------

class CrawlerError(Exception):
    """Base class for every categorised crawler error."""

    category: ErrorCategory = ErrorCategory.APPLICATION
    code: str = "APPLICATION_ERROR"
    exit_code: int = 5
    transient: bool = False
    default_hint: str = "Run with --verbose for detailed error information."

    def __init__(
        self,
        message: str,
        *,
        context: Optional[Dict[str, Any]] = None,
        hint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context or {}
        self.hint = hint or self.default_hint

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "category": self.category.value,
            "code": self.code,
            "message": self.message,
            "transient": self.transient,
            "hint": self.hint,
            "context": {k: v for k, v in self.context.items() if _is_jsonable(v)},
        }


class ValidationError(CrawlerError):
    category = ErrorCategory.VALIDATION
    code = "VALIDATION_ERROR"
    exit_code = 1
    default_hint = "Check your input and try again. Use --help for usage information."


class NetworkError(CrawlerError):
    category = ErrorCategory.NETWORK
    code = "NETWORK_ERROR"
    exit_code = 2
    transient = True
    default_hint = "Check your connection and that the URL is reachable, then try again."

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
        hint: Optional[str] = None,
    ):
        ctx = dict(context or {})
        if url:
            ctx.setdefault("url", url)
        if status_code is not None:
            ctx.setdefault("status_code", status_code)
        super().__init__(message, context=ctx, hint=hint)
        self.url = url
        self.status_code = status_code


class FileSystemError(CrawlerError):
    category = ErrorCategory.FILESYSTEM
    code = "FILESYSTEM_ERROR"
    exit_code = 3
    default_hint = "Check that the output directory exists and is writable."


class ConfigurationError(CrawlerError):
    category = ErrorCategory.CONFIGURATION
    code = "CONFIGURATION_ERROR"
    exit_code = 4
    default_hint = "Check option values (concurrency 1-20, timeout > 0, retries >= 0)."


class ApplicationError(CrawlerError):
    pass


class PhaseFailure(ApplicationError):
    """A phase could not produce a usable outcome (e.g. every task failed).

    ``category`` / ``exit_code`` start as application and are re-pointed at
    the underlying failure by ``attribute_to``.
    """

    code = "PHASE_FAILURE"

    def __init__(self, message: str, *, phase=None, outcome=None, cause: Optional[BaseException] = None,
                 hint: Optional[str] = None):
        super().__init__(message, context={"phase": getattr(phase, "value", phase)}, hint=hint)
        self.phase = phase
        self.outcome = outcome
        self.cause = cause

    def attribute_to(self, category: ErrorCategory) -> "PhaseFailure":
        self.category = category
        self.exit_code = EXIT_CODES[category]
        return self


class BrowserLaunchError(PhaseFailure):
    code = "BROWSER_LAUNCH_FAILED"
    default_hint = "Install browsers with 'playwright install chromium' and check system resources."


class PipelineAborted(ApplicationError):
    """The run stopped; ``report`` holds every PhaseOutcome obtained so far."""

    code = "PIPELINE_ABORTED"

    def __init__(self, message: str, *, report=None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.report = report
        self.cause = cause
        if isinstance(cause, CrawlerError):
            self.category = cause.category
            self.exit_code = cause.exit_code


def _is_jsonable(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool, type(None), list, dict))


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------

_STATUS_RE = re.compile(r"\b(?:HTTP|status)[\s:]*([1-5]\d\d)\b", re.IGNORECASE)

_NETWORK_MARKERS = (
    "net::err_",
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "econnrefused",
    "econnreset",
    "enotfound",
    "name resolution",
    "target closed",
)

_NETWORK_ERRNOS = {
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ETIMEDOUT,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
}


class ErrorHandler:
    """
    Classifies raw exceptions into the taxonomy and decides the action.

    Usage::

        handler = ErrorHandler()
        err = handler.classify(exc, url=url)
        action = handler.decide(err, attempt, retry_policy)
    """

    def classify(self, exc: BaseException, *, url: Optional[str] = None) -> CrawlerError:
        """Map any exception (or error string) onto a ``CrawlerError``."""
        if isinstance(exc, PhaseFailure):
            return exc.attribute_to(self.phase_category(exc))
        if isinstance(exc, CrawlerError):
            return exc

        if isinstance(exc, (PlaywrightTimeout, asyncio.TimeoutError, TimeoutError,
                            requests.Timeout)):
            return NetworkError(f"Timed out: {exc or 'no response'}", url=url)

        if isinstance(exc, (ConnectionError, requests.ConnectionError)):
            return NetworkError(f"Connection failed: {exc}", url=url)

        if isinstance(exc, requests.HTTPError):
            status = getattr(getattr(exc, "response", None), "status_code", None)
            return self.from_status(status or 500, url=url, message=str(exc))

        if isinstance(exc, PermissionError):
            return FileSystemError(f"Permission denied: {exc}", context={"path": exc.filename})

        if isinstance(exc, OSError):
            if exc.errno in _NETWORK_ERRNOS:
                return NetworkError(f"Network failure: {exc}", url=url)
            return FileSystemError(str(exc), context={"path": exc.filename})

        if isinstance(exc, (ValueError, TypeError)) and "url" in str(exc).lower():
            return ValidationError(str(exc), context={"url": url})

        if isinstance(exc, PlaywrightError):
            return self._classify_message(str(exc), url=url) or ApplicationError(
                f"Browser error: {exc}", context={"url": url}
            )

        return ApplicationError(f"{type(exc).__name__}: {exc}", context={"url": url})

    def phase_category(self, failure: PhaseFailure) -> ErrorCategory:
        """
        Category behind a phase failure: its cause when it has one, otherwise
        the most common category among its task failures.
        """
        cause = failure.cause
        if cause is not None and not isinstance(cause, PhaseFailure):
            return self.classify(cause).category
        failures = getattr(failure.outcome, "failures", None) or []
        counts = Counter(f.category for f in failures)
        if not counts:
            return ErrorCategory.APPLICATION
        top, _ = counts.most_common(1)[0]
        try:
            return ErrorCategory(top)
        except ValueError:
            return ErrorCategory.APPLICATION

    def classify_result_error(self, error: Any, *, url: Optional[str] = None) -> CrawlerError:
        """Classify the ``error`` field of an unsuccessful TaskResult."""
        if isinstance(error, BaseException):
            return self.classify(error, url=url)
        text = str(error or "unknown task failure")
        return self._classify_message(text, url=url) or ApplicationError(text, context={"url": url})

    def from_status(self, status_code: int, *, url: Optional[str] = None,
                    message: str = "") -> CrawlerError:
        """HTTP status → error. 5xx/408/429 are transient, other 4xx permanent."""
        msg = message or f"HTTP {status_code}"
        if status_code >= 500 or status_code in (408, 429):
            return NetworkError(msg, url=url, status_code=status_code)
        if 400 <= status_code < 500:
            err = NetworkError(msg, url=url, status_code=status_code,
                               hint="The server rejected the request; it will not be retried.")
            err.transient = False
            return err
        return ApplicationError(msg, context={"url": url, "status_code": status_code})

    def _classify_message(self, text: str, *, url: Optional[str]) -> Optional[CrawlerError]:
        match = _STATUS_RE.search(text)
        if match:
            return self.from_status(int(match.group(1)), url=url, message=text)
        lowered = text.lower()
        if "invalid url" in lowered or "malformed" in lowered:
            return ValidationError(text, context={"url": url})
        if any(marker in lowered for marker in _NETWORK_MARKERS):
            return NetworkError(text, url=url)
        return None

    def decide(self, error: CrawlerError, attempt: int, retry_policy=None) -> ErrorAction:
        """
        Decide what to do with a task-level failure.

        Args:
            error:        Classified error.
            attempt:      0-based number of the attempt that just failed.
            retry_policy: Optional RetryPolicy; without one nothing is retried.
        """
        if isinstance(error, ConfigurationError):
            return ErrorAction.ABORT_PIPELINE
        if isinstance(error, (BrowserLaunchError, FileSystemError)):
            return ErrorAction.ESCALATE_PHASE
        if retry_policy is not None and retry_policy.should_retry(attempt, error):
            return ErrorAction.RETRY
        return ErrorAction.RECORD

    @staticmethod
    def exit_code(error: BaseException) -> int:
        if isinstance(error, CrawlerError):
            return error.exit_code
        return ApplicationError.exit_code

    def describe(self, error: BaseException, *, verbose: bool = False) -> str:
        """Human-readable, multi-line description with a remediation hint."""
        err = self.classify(error)
        title = {
            ErrorCategory.VALIDATION: "Input Validation Error",
            ErrorCategory.NETWORK: "Network Error",
            ErrorCategory.FILESYSTEM: "File System Error",
            ErrorCategory.CONFIGURATION: "Configuration Error",
            ErrorCategory.APPLICATION: "Application Error",
        }[err.category]
        lines = [f"{title}:", f"   {err.message}"]
        for key in ("phase", "url", "path", "field", "status_code"):
            value = err.context.get(key)
            if value:
                lines.append(f"   {key.replace('_', ' ').title()}: {value}")
        lines.append("")
        lines.append(f"Hint: {err.hint}")
        if verbose and err.__cause__ is not None:
            lines.append(f"   Caused by: {type(err.__cause__).__name__}: {err.__cause__}")
        return "\n".join(lines)
