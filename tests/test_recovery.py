from __future__ import annotations

import pytest

from cmsagent.runtime.recovery import ErrorRecoveryManager


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _manager(clock: FakeClock | None = None, **kwargs) -> ErrorRecoveryManager:
    return ErrorRecoveryManager(clock=clock or FakeClock(), **kwargs)


@pytest.mark.parametrize(
    ("message", "category", "strategy"),
    [
        ("Validation failed: slug is a required field", "validation", "retry"),
        ("Page with slug 'home' already exists", "constraint", "fallback"),
        ("Page not found: about", "not_found", "fallback"),
        ("foreign key violation on page_id", "reference", "escalate"),
        ("request timed out after 30s", "timeout", "retry"),
        ("segfault in renderer", "unknown", "escalate"),
    ],
)
def test_classify_error(message: str, category: str, strategy: str) -> None:
    classification = _manager().classify_error(message)

    assert classification.category == category
    assert classification.strategy == strategy
    assert classification.suggestions
    assert classification.message == message


def test_classify_error_accepts_exceptions() -> None:
    classification = _manager().classify_error(ValueError("Section not found: abc"))

    assert classification.category == "not_found"


def test_circuit_opens_after_max_failures() -> None:
    manager = _manager(max_failures=3)

    for _ in range(2):
        manager.record_failure("createPage", "boom")
        assert not manager.is_circuit_open("createPage")

    manager.record_failure("createPage", "boom")

    assert manager.is_circuit_open("createPage")
    status = manager.get_circuit_status()
    assert status[0]["tool_name"] == "createPage"
    assert status[0]["state"] == "open"
    assert status[0]["failures"] == 3
    assert status[0]["last_error"] == "boom"


def test_breakers_are_per_tool() -> None:
    manager = _manager(max_failures=1)

    manager.record_failure("createPage", "boom")

    assert manager.is_circuit_open("createPage")
    assert not manager.is_circuit_open("getPage")


def test_half_open_allows_a_single_probe() -> None:
    clock = FakeClock()
    manager = _manager(clock, max_failures=1, reset_after_s=30.0)
    manager.record_failure("createPage", "boom")

    clock.now += 29.0
    assert manager.is_circuit_open("createPage")

    clock.now += 1.0
    assert not manager.is_circuit_open("createPage")
    assert manager.is_circuit_open("createPage")

    manager.record_success("createPage")

    assert not manager.is_circuit_open("createPage")
    assert manager.get_circuit_status()[0]["state"] == "closed"
    assert manager.get_circuit_status()[0]["failures"] == 0


def test_failed_probe_reopens_circuit() -> None:
    clock = FakeClock()
    manager = _manager(clock, max_failures=3, reset_after_s=30.0)
    for _ in range(3):
        manager.record_failure("createPage", "boom")

    clock.now += 30.0
    assert not manager.is_circuit_open("createPage")
    manager.record_failure("createPage", "still broken")

    assert manager.is_circuit_open("createPage")
    assert manager.retry_after("createPage") == pytest.approx(30.0)


def test_released_half_open_call_can_retry_later() -> None:
    clock = FakeClock()
    manager = _manager(clock, max_failures=1, reset_after_s=30.0)
    manager.record_failure("createPage", "boom")

    clock.now += 30.0
    assert not manager.is_circuit_open("createPage")
    manager.release_probe("createPage")

    status = manager.get_circuit_status()[0]
    assert status["state"] == "open"
    assert status["failures"] == 1
    assert manager.is_circuit_open("createPage")
    clock.now += 30.0
    assert not manager.is_circuit_open("createPage")


def test_release_ignores_closed_and_unknown_tools() -> None:
    manager = _manager()
    manager.release_probe("getPage")
    manager.record_failure("createPage", "boom")
    manager.release_probe("createPage")

    assert manager.get_circuit_status()[0]["state"] == "closed"
    assert not manager.is_circuit_open("createPage")


def test_success_decrements_failure_count() -> None:
    manager = _manager(max_failures=3)
    manager.record_failure("createPage", "boom")
    manager.record_failure("createPage", "boom")

    manager.record_success("createPage")
    manager.record_failure("createPage", "boom")

    assert not manager.is_circuit_open("createPage")
    assert manager.get_circuit_status()[0]["failures"] == 2


def test_should_retry_backs_off_and_caps_attempts() -> None:
    manager = _manager(max_retries=2)

    first = manager.should_retry("createPage", "Validation failed: name", 0)
    second = manager.should_retry("createPage", "Validation failed: name", 1)
    exhausted = manager.should_retry("createPage", "Validation failed: name", 2)

    assert first.should_retry and first.wait_ms == 1000
    assert second.should_retry and second.wait_ms == 2000
    assert not exhausted.should_retry
    assert "Max retries" in exhausted.reason


def test_should_retry_refuses_escalation_and_open_circuits() -> None:
    manager = _manager(max_failures=1)

    escalate = manager.should_retry("createPage", "foreign key violation", 0)
    manager.record_failure("createPage", "timeout")
    blocked = manager.should_retry("createPage", "timeout", 0)

    assert not escalate.should_retry
    assert "reference" in escalate.reason
    assert not blocked.should_retry
    assert "Circuit breaker open" in blocked.reason


def test_error_observation_is_agent_readable() -> None:
    observation = _manager().generate_error_observation(
        "createPage", "Page with slug 'home' already exists"
    )

    assert observation.startswith("Tool Error: createPage")
    assert "Error Category: constraint" in observation
    assert "Suggested Actions:" in observation
    assert "1. " in observation
    assert "Recovery: Retry attempt 1/2" in observation


def test_circuit_open_observation_mentions_wait() -> None:
    manager = _manager(max_failures=1, reset_after_s=30.0)
    manager.record_failure("createPage", "boom")

    observation = manager.circuit_open_observation("createPage")

    assert "circuit open" in observation
    assert "retry after 30 seconds" in observation


def test_reset_circuit() -> None:
    manager = _manager(max_failures=1)
    manager.record_failure("createPage", "boom")

    assert manager.reset_circuit("createPage")
    assert not manager.is_circuit_open("createPage")
    assert not manager.reset_circuit("unknownTool")

    manager.reset_all()
    assert manager.get_circuit_status() == []


def test_rejects_non_positive_threshold() -> None:
    with pytest.raises(ValueError):
        ErrorRecoveryManager(max_failures=0)
