from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


@dataclass(frozen=True, slots=True)
class ErrorPattern:
    category: str
    pattern: re.Pattern[str]
    strategy: str
    suggestions: tuple[str, ...]


ERROR_PATTERNS: tuple[ErrorPattern, ...] = (
    ErrorPattern(
        category="validation",
        pattern=re.compile(r"validation failed|invalid|schema mismatch|required field", re.I),
        strategy="retry",
        suggestions=(
            "Check input schema against section/collection definition",
            "Use getPage to look the resource up by slug",
            "Verify required fields are present",
        ),
    ),
    ErrorPattern(
        category="constraint",
        pattern=re.compile(r"unique constraint|already exists|duplicate", re.I),
        strategy="fallback",
        suggestions=(
            "Slug already exists - try appending timestamp or number",
            "Use getPage with all=true to list existing slugs",
            "Update existing resource instead of creating new",
        ),
    ),
    ErrorPattern(
        category="not_found",
        pattern=re.compile(r"not found|does not exist|404", re.I),
        strategy="fallback",
        suggestions=(
            "Resource not found - list pages with getPage to find the right id",
            "Check if resource was deleted or ID is incorrect",
            "Create resource first before referencing it",
        ),
    ),
    ErrorPattern(
        category="reference",
        pattern=re.compile(r"foreign key|reference|cascade|orphan", re.I),
        strategy="escalate",
        suggestions=(
            "Referenced resource missing - create it first",
            "Check cascade delete settings",
            "Verify parent resource exists",
        ),
    ),
    ErrorPattern(
        category="circuit_breaker",
        pattern=re.compile(r"circuit.*open|service unavailable|too many requests", re.I),
        strategy="skip",
        suggestions=(
            "Circuit breaker open - tool temporarily unavailable",
            "Wait 30 seconds before retrying",
            "Use alternative tool or approach",
        ),
    ),
    ErrorPattern(
        category="timeout",
        pattern=re.compile(r"timeout|timed out|deadline exceeded", re.I),
        strategy="retry",
        suggestions=(
            "Operation timed out - retry with exponential backoff",
            "Break down operation into smaller steps",
            "Check if resource is too large",
        ),
    ),
    ErrorPattern(
        category="unknown",
        pattern=re.compile(r".*", re.S),
        strategy="escalate",
        suggestions=("Unexpected error - review logs and manual intervention may be needed",),
    ),
)


@dataclass(slots=True)
class ErrorClassification:
    category: str
    strategy: str
    suggestions: List[str]
    message: str


@dataclass(slots=True)
class RetryDecision:
    should_retry: bool
    reason: str
    wait_ms: int | None = None


@dataclass(slots=True)
class BreakerState:
    tool_name: str
    reset_after_s: float
    failures: int = 0
    last_failure: float = 0.0
    last_failure_wall: float = 0.0
    state: str = CLOSED
    probe_in_flight: bool = False
    last_error: str = field(default="", repr=False)


def _error_message(error: BaseException | str) -> str:
    return error if isinstance(error, str) else str(error)


class ErrorRecoveryManager:
    """Classifies tool failures and keeps one circuit breaker per tool name.

    The breaker table is safe to share between concurrently running turns:
    every read-modify-write happens under a single lock.
    """

    def __init__(
        self,
        max_failures: int = 3,
        reset_after_s: float = 30.0,
        max_retries: int = 2,
        *,
        clock: Callable[[], float] = time.monotonic,
        patterns: tuple[ErrorPattern, ...] = ERROR_PATTERNS,
    ) -> None:
        if max_failures <= 0:
            raise ValueError("max_failures must be positive")
        self.max_failures = max_failures
        self.reset_after_s = reset_after_s
        self.max_retries = max_retries
        self._clock = clock
        self._patterns = patterns
        self._breakers: dict[str, BreakerState] = {}
        self._lock = threading.Lock()

    def classify_error(self, error: BaseException | str) -> ErrorClassification:
        message = _error_message(error)
        for pattern in self._patterns:
            if pattern.pattern.search(message):
                return ErrorClassification(
                    category=pattern.category,
                    strategy=pattern.strategy,
                    suggestions=list(pattern.suggestions),
                    message=message,
                )
        return ErrorClassification(
            category="unknown",
            strategy="escalate",
            suggestions=["Unexpected error - review logs and manual intervention may be needed"],
            message=message,
        )

    def is_circuit_open(self, tool_name: str) -> bool:
        with self._lock:
            breaker = self._breakers.get(tool_name)
            if breaker is None:
                return False
            if breaker.state == OPEN:
                if self._clock() - breaker.last_failure >= breaker.reset_after_s:
                    breaker.state = HALF_OPEN
                    breaker.probe_in_flight = True
                    logger.info("Circuit breaker half-open for %s", tool_name)
                    return False
                return True
            if breaker.state == HALF_OPEN:
                if breaker.probe_in_flight:
                    return True
                breaker.probe_in_flight = True
            return False

    def retry_after(self, tool_name: str) -> float:
        with self._lock:
            breaker = self._breakers.get(tool_name)
            if breaker is None or breaker.state == CLOSED:
                return 0.0
            if breaker.state == HALF_OPEN:
                return breaker.reset_after_s
            remaining = breaker.reset_after_s - (self._clock() - breaker.last_failure)
            return max(remaining, 0.0)

    def record_failure(self, tool_name: str, error: BaseException | str) -> None:
        message = _error_message(error)
        with self._lock:
            breaker = self._breakers.get(tool_name)
            if breaker is None:
                breaker = BreakerState(tool_name=tool_name, reset_after_s=self.reset_after_s)
                self._breakers[tool_name] = breaker
            breaker.failures += 1
            breaker.last_failure = self._clock()
            breaker.last_failure_wall = time.time()
            breaker.last_error = message
            was_probe = breaker.state == HALF_OPEN
            breaker.probe_in_flight = False
            if was_probe or breaker.failures >= self.max_failures:
                if breaker.state != OPEN:
                    logger.warning(
                        "Circuit breaker opened for %s after %d failures (reset after %.0fs)",
                        tool_name,
                        breaker.failures,
                        breaker.reset_after_s,
                    )
                breaker.state = OPEN
            logger.info(
                "Tool failure recorded: %s failures=%d state=%s error=%s",
                tool_name,
                breaker.failures,
                breaker.state,
                message,
            )

    def release_probe(self, tool_name: str) -> None:
        """Give back a half-open probe that ended without an outcome (cancelled).

        The breaker reopens with a fresh reset window so a later call can probe again.
        """
        with self._lock:
            breaker = self._breakers.get(tool_name)
            if breaker is None or breaker.state != HALF_OPEN or not breaker.probe_in_flight:
                return
            breaker.state = OPEN
            breaker.probe_in_flight = False
            breaker.last_failure = self._clock()
        logger.info("Circuit breaker probe released for %s, reopened", tool_name)

    def record_success(self, tool_name: str) -> None:
        with self._lock:
            breaker = self._breakers.get(tool_name)
            if breaker is None:
                return
            if breaker.state == HALF_OPEN:
                breaker.state = CLOSED
                breaker.failures = 0
                breaker.probe_in_flight = False
                logger.info("Circuit breaker closed for %s", tool_name)
            elif breaker.failures > 0:
                breaker.failures -= 1

    def should_retry(
        self, tool_name: str, error: BaseException | str, attempt_number: int
    ) -> RetryDecision:
        with self._lock:
            breaker = self._breakers.get(tool_name)
            circuit_open = breaker is not None and breaker.state == OPEN
        if circuit_open:
            return RetryDecision(
                should_retry=False,
                reason="Circuit breaker open - tool temporarily unavailable",
            )
        if attempt_number >= self.max_retries:
            return RetryDecision(
                should_retry=False, reason=f"Max retries ({self.max_retries}) exceeded"
            )
        classification = self.classify_error(error)
        if classification.strategy in ("skip", "escalate"):
            return RetryDecision(
                should_retry=False,
                reason=f"Error category '{classification.category}' does not support retry",
            )
        wait_ms = min(1000 * 2**attempt_number, 10_000)
        return RetryDecision(
            should_retry=True,
            reason=f"Retry attempt {attempt_number + 1}/{self.max_retries}",
            wait_ms=wait_ms,
        )

    def generate_error_observation(
        self, tool_name: str, error: BaseException | str, attempt_number: int = 0
    ) -> str:
        classification = self.classify_error(error)
        lines = [
            f"Tool Error: {tool_name}",
            "",
            f"Error Category: {classification.category}",
            f"Message: {classification.message}",
            "",
            "Suggested Actions:",
        ]
        lines.extend(
            f"{index}. {suggestion}"
            for index, suggestion in enumerate(classification.suggestions, start=1)
        )
        decision = self.should_retry(tool_name, error, attempt_number)
        lines.append("")
        if decision.should_retry:
            lines.append(f"Recovery: {decision.reason} (wait {decision.wait_ms}ms)")
        else:
            lines.append(f"Recovery: {decision.reason}")
        return "\n".join(lines)

    def circuit_open_observation(self, tool_name: str) -> str:
        wait_s = max(1, int(round(self.retry_after(tool_name))))
        return (
            f"Tool {tool_name} is temporarily unavailable (circuit open), "
            f"retry after {wait_s} seconds."
        )

    def get_circuit_status(self) -> list[dict[str, object]]:
        with self._lock:
            return [
                {
                    "tool_name": breaker.tool_name,
                    "state": breaker.state,
                    "failures": breaker.failures,
                    "last_failure": breaker.last_failure_wall,
                    "last_error": breaker.last_error,
                }
                for breaker in self._breakers.values()
            ]

    def reset_circuit(self, tool_name: str) -> bool:
        with self._lock:
            breaker = self._breakers.get(tool_name)
            if breaker is None:
                return False
            breaker.state = CLOSED
            breaker.failures = 0
            breaker.probe_in_flight = False
        logger.info("Circuit breaker manually reset for %s", tool_name)
        return True

    def reset_all(self) -> None:
        with self._lock:
            self._breakers.clear()
        logger.info("All circuit breakers reset")
