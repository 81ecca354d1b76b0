"""Custom exception hierarchy for NepseWatch.

Each exception carries a context dictionary so log records and job status
messages can say which URL, strategy or job key was involved.

Recovery policy by layer:
    - Strategy level: NavigationTimeoutError, SelectorTimeoutError and
      ParseError are absorbed by the pipeline, which moves to the next
      strategy.
    - Pipeline level: StrategyExhaustedError surfaces to the operation,
      which retries with backoff.
    - Operation level: OperationFailedError surfaces to the scheduler,
      which records FAILED and never propagates further.
"""

from datetime import UTC, datetime
from typing import Any


class NepseWatchError(Exception):
    """Base exception for all NepseWatch errors.

    Attributes:
        message: Human-readable error description.
        context: Optional dictionary with additional debugging information.
        timestamp: UTC timestamp when the exception was raised.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.message = message
        self.context = context or {}
        self.timestamp = datetime.now(UTC)
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format exception message with context for logging."""
        base = f"[{self.timestamp.isoformat()}] {self.message}"
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{base} | Context: {context_str}"
        return base


class LaunchError(NepseWatchError):
    """Raised when the browser process fails to start.

    Fatal to the current attempt only; the session stays UNINITIALIZED and
    a later ``init()`` may retry.
    """

    def __init__(self, reason: str, browser_type: str = "chromium") -> None:
        super().__init__(
            message=f"Failed to launch {browser_type} browser: {reason}",
            context={"browser_type": browser_type, "reason": reason},
        )


class SessionUnavailableError(NepseWatchError):
    """Raised when a page is requested from a session that is not READY."""

    def __init__(self, state: str) -> None:
        super().__init__(
            message=f"Browser session is not ready (state={state})",
            context={"state": state},
        )


class NavigationTimeoutError(NepseWatchError):
    """Raised when page navigation fails or times out. Transient."""

    def __init__(self, url: str, reason: str, status_code: int | None = None) -> None:
        super().__init__(
            message=f"Navigation to '{url}' failed: {reason}",
            context={"url": url, "reason": reason, "status_code": status_code},
        )
        self.status_code = status_code


class SelectorTimeoutError(NepseWatchError):
    """Raised when a selector or an awaited response does not appear in time."""

    def __init__(self, selector: str, url: str, timeout_ms: int | None = None) -> None:
        super().__init__(
            message=f"Timed out waiting for '{selector}'",
            context={"selector": selector, "url": url, "timeout_ms": timeout_ms},
        )


class ParseError(NepseWatchError):
    """Raised when a payload does not have the expected shape.

    Treated as a strategy failure, never as fatal.
    """

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(
            message=f"Unexpected payload from {source}: {reason}",
            context={"source": source, "reason": reason},
        )


class LayoutShiftError(ParseError):
    """Raised when too many scraped table rows are unusable.

    Usually means the site's markup changed. Counted as a ParseError so the
    pipeline falls through to its next strategy.
    """

    def __init__(self, failure_ratio: float, threshold: float, batch_size: int, url: str) -> None:
        super().__init__(
            source=url,
            reason=(
                f"layout shift: failure ratio {failure_ratio:.1%} "
                f"exceeds threshold {threshold:.1%}"
            ),
        )
        self.context.update(
            {"failure_ratio": failure_ratio, "threshold": threshold, "batch_size": batch_size}
        )
        self.failure_ratio = failure_ratio
        self.threshold = threshold
        self.batch_size = batch_size


class StrategyExhaustedError(NepseWatchError):
    """Raised when every strategy of a pipeline failed for one attempt.

    Attributes:
        domain: Pipeline domain (prices, index, company, history).
        failures: Mapping of strategy name to the error it raised.
    """

    def __init__(self, domain: str, failures: dict[str, str]) -> None:
        super().__init__(
            message=f"All {len(failures)} {domain} strategies failed",
            context={"domain": domain, "failures": failures},
        )
        self.domain = domain
        self.failures = failures


class OperationFailedError(NepseWatchError):
    """Raised when a scrape operation exhausted its retry budget."""

    def __init__(self, operation: str, attempts: int, last_error: str) -> None:
        super().__init__(
            message=f"{operation} failed after {attempts} attempts: {last_error}",
            context={"operation": operation, "attempts": attempts},
        )
        self.attempts = attempts
        self.last_error = last_error


class WatchdogTimeoutError(NepseWatchError):
    """Recorded when a job exceeds its time budget and its lock is force-released."""

    def __init__(self, job_key: str, timeout_sec: float) -> None:
        super().__init__(
            message=f"Job '{job_key}' exceeded its {timeout_sec:.0f}s budget",
            context={"job_key": job_key, "timeout_sec": timeout_sec},
        )
        self.job_key = job_key


class UnknownJobError(NepseWatchError):
    """Raised when a job key outside the registry is requested."""

    def __init__(self, job_key: str) -> None:
        super().__init__(
            message=f"Unknown job key '{job_key}'",
            context={"job_key": job_key},
        )


class ReportGenerationError(NepseWatchError):
    """Raised when report generation fails."""

    def __init__(self, report_type: str, reason: str, output_path: str | None = None) -> None:
        super().__init__(
            message=f"Failed to generate {report_type} report: {reason}",
            context={"report_type": report_type, "reason": reason, "output_path": output_path},
        )


class LoggingInitializationError(NepseWatchError):
    """Raised when the logging system fails to initialize.

    Startup-blocking: the application does not run without logs.
    """

    def __init__(self, log_dir: str, reason: str) -> None:
        super().__init__(
            message=f"Failed to initialize logging at '{log_dir}': {reason}",
            context={"log_dir": log_dir, "reason": reason},
        )
