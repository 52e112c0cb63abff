import asyncio

import httpx
import pytest

from app.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
    is_resource_failure,
)
from app.services.errors import NetworkTimeout, UpstreamClientError, UpstreamServerError

CONFIG = CircuitBreakerConfig(failure_threshold=3, reset_timeout=30.0)


async def _ok():
    return "ok"


async def _server_error():
    raise UpstreamServerError("boom", status_code=502)


async def _client_error():
    raise UpstreamClientError("bad request", status_code=400)


async def _fail_times(breaker, n):
    for _ in range(n):
        with pytest.raises(UpstreamServerError):
            await breaker.execute("api", _server_error, CONFIG)


class TestResourceFailureClassification:
    def test_counted_errors(self):
        assert is_resource_failure(UpstreamServerError("x"))
        assert is_resource_failure(NetworkTimeout("x"))
        assert is_resource_failure(httpx.ReadTimeout("x"))
        assert is_resource_failure(httpx.ConnectError("x"))

    def test_ignored_errors(self):
        assert not is_resource_failure(UpstreamClientError("x", 404))
        assert not is_resource_failure(ValueError("x"))


class TestClosedState:
    @pytest.mark.asyncio
    async def test_success_returns_result(self, clock):
        breaker = CircuitBreaker(clock=clock)
        assert await breaker.execute("api", _ok, CONFIG) == "ok"
        assert breaker.state("api") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, clock):
        breaker = CircuitBreaker(clock=clock)
        await _fail_times(breaker, 2)
        assert breaker.state("api") == CircuitState.CLOSED

        await _fail_times(breaker, 1)
        assert breaker.state("api") == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, clock):
        breaker = CircuitBreaker(clock=clock)
        await _fail_times(breaker, 2)
        await breaker.execute("api", _ok, CONFIG)
        await _fail_times(breaker, 2)

        assert breaker.state("api") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_client_errors_never_trip(self, clock):
        breaker = CircuitBreaker(clock=clock)
        for _ in range(10):
            with pytest.raises(UpstreamClientError):
                await breaker.execute("api", _client_error, CONFIG)

        assert breaker.state("api") == CircuitState.CLOSED
        assert breaker.stats()["api"]["consecutive_failures"] == 0

    @pytest.mark.asyncio
    async def test_resources_are_independent(self, clock):
        breaker = CircuitBreaker(clock=clock)
        await _fail_times(breaker, 3)

        assert await breaker.execute("storage", _ok, CONFIG) == "ok"
        assert breaker.state("storage") == CircuitState.CLOSED


class TestOpenState:
    @pytest.mark.asyncio
    async def test_rejects_without_calling_operation(self, clock):
        breaker = CircuitBreaker(clock=clock)
        await _fail_times(breaker, 3)
        calls = []

        async def operation():
            calls.append(1)
            return "ok"

        clock.advance(10)
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute("api", operation, CONFIG)

        assert calls == []
        assert exc_info.value.retry_in == pytest.approx(20.0)
        assert breaker.stats()["api"]["rejected_calls"] == 1

    @pytest.mark.asyncio
    async def test_probe_success_closes(self, clock):
        breaker = CircuitBreaker(clock=clock)
        await _fail_times(breaker, 3)
        clock.advance(30)

        assert await breaker.execute("api", _ok, CONFIG) == "ok"
        assert breaker.state("api") == CircuitState.CLOSED
        assert breaker.stats()["api"]["consecutive_failures"] == 0

    @pytest.mark.asyncio
    async def test_probe_failure_reopens_with_fresh_timer(self, clock):
        breaker = CircuitBreaker(clock=clock)
        await _fail_times(breaker, 3)
        clock.advance(30)

        await _fail_times(breaker, 1)
        assert breaker.state("api") == CircuitState.OPEN

        clock.advance(29)
        with pytest.raises(CircuitOpenError):
            await breaker.execute("api", _ok, CONFIG)

    @pytest.mark.asyncio
    async def test_probe_client_error_keeps_half_open(self, clock):
        breaker = CircuitBreaker(clock=clock)
        await _fail_times(breaker, 3)
        clock.advance(30)

        with pytest.raises(UpstreamClientError):
            await breaker.execute("api", _client_error, CONFIG)

        assert breaker.state("api") == CircuitState.HALF_OPEN
        assert await breaker.execute("api", _ok, CONFIG) == "ok"
        assert breaker.state("api") == CircuitState.CLOSED


class TestHalfOpenConcurrency:
    @pytest.mark.asyncio
    async def test_single_probe_in_flight(self, clock):
        breaker = CircuitBreaker(clock=clock)
        await _fail_times(breaker, 3)
        clock.advance(30)

        release = asyncio.Event()

        async def slow_probe():
            await release.wait()
            return "probe"

        probe = asyncio.create_task(breaker.execute("api", slow_probe, CONFIG))
        await asyncio.sleep(0)

        with pytest.raises(CircuitOpenError):
            await breaker.execute("api", _ok, CONFIG)

        release.set()
        assert await probe == "probe"
        assert breaker.state("api") == CircuitState.CLOSED


class TestCallsAdmittedBeforeStateChange:
    @pytest.mark.asyncio
    async def test_late_success_does_not_reset_open_circuit(self, clock):
        breaker = CircuitBreaker(clock=clock)
        await _fail_times(breaker, 2)

        release = asyncio.Event()

        async def slow_ok():
            await release.wait()
            return "late"

        slow = asyncio.create_task(breaker.execute("api", slow_ok, CONFIG))
        await asyncio.sleep(0)

        await _fail_times(breaker, 1)
        assert breaker.state("api") == CircuitState.OPEN

        release.set()
        assert await slow == "late"

        assert breaker.state("api") == CircuitState.OPEN
        assert breaker.stats()["api"]["consecutive_failures"] >= CONFIG.failure_threshold

    @pytest.mark.asyncio
    async def test_late_failure_does_not_reopen_during_trial(self, clock):
        breaker = CircuitBreaker(clock=clock)
        await _fail_times(breaker, 2)

        stale_release = asyncio.Event()
        trial_release = asyncio.Event()

        async def slow_server_error():
            await stale_release.wait()
            raise UpstreamServerError("late 502", status_code=502)

        async def slow_trial():
            await trial_release.wait()
            return "trial"

        stale = asyncio.create_task(breaker.execute("api", slow_server_error, CONFIG))
        await asyncio.sleep(0)

        await _fail_times(breaker, 1)
        clock.advance(30)
        trial = asyncio.create_task(breaker.execute("api", slow_trial, CONFIG))
        await asyncio.sleep(0)
        assert breaker.state("api") == CircuitState.HALF_OPEN

        stale_release.set()
        with pytest.raises(UpstreamServerError):
            await stale
        assert breaker.state("api") == CircuitState.HALF_OPEN

        trial_release.set()
        assert await trial == "trial"
        assert breaker.state("api") == CircuitState.CLOSED


class TestReset:
    @pytest.mark.asyncio
    async def test_reset_single_resource(self, clock):
        breaker = CircuitBreaker(clock=clock)
        await _fail_times(breaker, 3)

        breaker.reset("api")

        assert breaker.state("api") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reset_all(self, clock):
        breaker = CircuitBreaker(clock=clock)
        await breaker.execute("a", _ok, CONFIG)
        await breaker.execute("b", _ok, CONFIG)

        breaker.reset()

        assert breaker.stats() == {}
