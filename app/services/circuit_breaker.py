"""Circuit breaker keyed by resource name.

One record per protected resource, held in memory for the lifetime of the
process. Records are not shared between instances.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from app.logging_config import get_logger
from app.services.errors import NetworkTimeout, UpstreamServerError

logger = get_logger("circuit_breaker")

MESSAGING_API_RESOURCE = "messaging-api"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    def __init__(self, resource_name: str, retry_in: float):
        self.resource_name = resource_name
        self.retry_in = retry_in
        super().__init__(f"Circuit '{resource_name}' is open, next probe in {retry_in:.1f}s")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0


@dataclass
class CircuitRecord:
    resource_name: str
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    last_failure_at: Optional[float] = None
    opened_at: Optional[float] = None
    probe_in_flight: bool = False
    generation: int = 0  # bumped on every state change
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0


def is_resource_failure(exc: BaseException) -> bool:
    """Only errors that say the remote side is unhealthy count against a circuit."""
    return isinstance(
        exc,
        (UpstreamServerError, NetworkTimeout, httpx.TimeoutException, httpx.TransportError),
    )


class CircuitBreaker:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._records: dict[str, CircuitRecord] = {}

    def _record(self, resource_name: str) -> CircuitRecord:
        record = self._records.get(resource_name)
        if record is None:
            record = CircuitRecord(resource_name=resource_name)
            self._records[resource_name] = record
        return record

    def state(self, resource_name: str) -> CircuitState:
        return self._record(resource_name).state

    def _change_state(self, record: CircuitRecord, new_state: CircuitState, reason: str) -> None:
        if record.state == new_state:
            return
        old_state = record.state
        record.state = new_state
        record.generation += 1
        logger.warning(
            f"Circuit '{record.resource_name}' {old_state.value} -> {new_state.value}",
            extra={
                "context": {
                    "resource": record.resource_name,
                    "reason": reason,
                    "consecutive_failures": record.consecutive_failures,
                }
            },
        )

    def _admit(self, record: CircuitRecord, config: CircuitBreakerConfig) -> tuple[bool, int]:
        """Raise CircuitOpenError unless this call may proceed.

        Returns whether the call is the half-open probe and the generation it
        was admitted under.
        """
        now = self._clock()

        if record.state == CircuitState.OPEN:
            elapsed = now - (record.opened_at or now)
            if elapsed < config.reset_timeout:
                record.rejected_calls += 1
                raise CircuitOpenError(record.resource_name, config.reset_timeout - elapsed)
            self._change_state(record, CircuitState.HALF_OPEN, "reset timeout elapsed")

        if record.state == CircuitState.HALF_OPEN:
            if record.probe_in_flight:
                record.rejected_calls += 1
                raise CircuitOpenError(record.resource_name, 0.0)
            record.probe_in_flight = True
            return True, record.generation
        return False, record.generation

    def _on_success(self, record: CircuitRecord, generation: int) -> None:
        record.successful_calls += 1
        if generation != record.generation:
            # Admitted before the last state change; its outcome says nothing about now.
            return
        record.consecutive_failures = 0
        if record.state == CircuitState.HALF_OPEN:
            self._change_state(record, CircuitState.CLOSED, "probe succeeded")

    def _on_failure(
        self,
        record: CircuitRecord,
        config: CircuitBreakerConfig,
        exc: BaseException,
        generation: int,
    ) -> None:
        now = self._clock()
        record.failed_calls += 1
        record.last_failure_at = now
        if generation != record.generation:
            return
        record.consecutive_failures += 1

        if record.state == CircuitState.HALF_OPEN:
            record.opened_at = now
            self._change_state(record, CircuitState.OPEN, f"probe failed: {type(exc).__name__}")
        elif record.consecutive_failures >= config.failure_threshold:
            record.opened_at = now
            self._change_state(record, CircuitState.OPEN, f"threshold reached: {type(exc).__name__}")

    async def execute(
        self,
        resource_name: str,
        operation: Callable[[], Awaitable[Any]],
        config: CircuitBreakerConfig = CircuitBreakerConfig(),
    ) -> Any:
        record = self._record(resource_name)
        is_probe, generation = self._admit(record, config)
        record.total_calls += 1

        try:
            result = await operation()
        except Exception as exc:
            if is_resource_failure(exc):
                self._on_failure(record, config, exc, generation)
            else:
                logger.debug(f"Circuit '{resource_name}' ignoring non-resource error: {type(exc).__name__}")
            raise
        else:
            self._on_success(record, generation)
            return result
        finally:
            if is_probe:
                record.probe_in_flight = False

    def reset(self, resource_name: Optional[str] = None) -> None:
        if resource_name is None:
            self._records.clear()
        else:
            self._records.pop(resource_name, None)

    def stats(self) -> dict[str, dict]:
        return {
            name: {
                "state": record.state.value,
                "consecutive_failures": record.consecutive_failures,
                "total_calls": record.total_calls,
                "successful_calls": record.successful_calls,
                "failed_calls": record.failed_calls,
                "rejected_calls": record.rejected_calls,
            }
            for name, record in self._records.items()
        }
