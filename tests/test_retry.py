"""Tests for postqueue.resilience.retry (classified retry with backoff)."""

import pytest

from postqueue.config import ResilienceConfig
from postqueue.exceptions import ConfigurationError
from postqueue.resilience.errors import ApiError, ErrorType, RETRYABLE_ERROR_TYPES, create_error
from postqueue.resilience.retry import RetryConfig, calculate_backoff_delay, execute_with_retry


def scripted(*steps):
    """Coroutine function returning/raising *steps* in order; counts calls."""
    remaining = list(steps)
    calls = {"n": 0}

    async def operation():
        calls["n"] += 1
        step = remaining.pop(0)
        if isinstance(step, BaseException):
            raise step
        return step

    operation.calls = calls
    return operation


def sleep_delays(sleep_mock):
    return [call.args[0] for call in sleep_mock.await_args_list]


class TestCalculateBackoffDelay:
    @pytest.mark.parametrize("attempt, expected", [(0, 1.0), (1, 2.0), (2, 4.0), (3, 8.0), (4, 16.0)])
    def test_exponential(self, attempt, expected):
        assert calculate_backoff_delay(attempt) == expected

    def test_capped_at_max_delay(self):
        assert calculate_backoff_delay(5) == 30.0
        assert calculate_backoff_delay(20) == 30.0

    def test_custom_config(self):
        config = RetryConfig(base_delay=0.5, backoff_multiplier=3.0, max_delay=10.0)
        assert calculate_backoff_delay(2, config) == 4.5
        assert calculate_backoff_delay(3, config) == 10.0


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self, no_sleep):
        operation = scripted("ok")
        assert await execute_with_retry(operation, "x-api") == "ok"
        assert operation.calls["n"] == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, no_sleep):
        operation = scripted(
            RuntimeError("503 Service Unavailable"),
            RuntimeError("Network connection error"),
            "ok",
        )
        assert await execute_with_retry(operation, "x-api") == "ok"
        assert operation.calls["n"] == 3
        assert sleep_delays(no_sleep) == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_unauthorized_is_never_retried(self, no_sleep):
        operation = scripted(RuntimeError("401 Unauthorized"), "ok")
        config = RetryConfig(max_retries=10)

        with pytest.raises(ApiError) as exc_info:
            await execute_with_retry(operation, "x-api", config=config)

        assert exc_info.value.type is ErrorType.AUTHENTICATION
        assert exc_info.value.retryable is False
        assert operation.calls["n"] == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limit_propagates_by_default(self, no_sleep):
        operation = scripted(RuntimeError("429 Too Many Requests"), "ok")
        with pytest.raises(ApiError) as exc_info:
            await execute_with_retry(operation, "x-api")
        assert exc_info.value.type is ErrorType.RATE_LIMIT
        assert operation.calls["n"] == 1

    @pytest.mark.asyncio
    async def test_rate_limit_retried_up_to_max_when_opted_in(self, no_sleep):
        """A 429 is retried max_retries times when RATE_LIMIT is retryable."""
        operation = scripted(*[RuntimeError("429 Too Many Requests") for _ in range(4)])
        config = RetryConfig(retryable_errors=RETRYABLE_ERROR_TYPES | {ErrorType.RATE_LIMIT})

        with pytest.raises(ApiError) as exc_info:
            await execute_with_retry(operation, "x-api", config=config)

        assert exc_info.value.type is ErrorType.RATE_LIMIT
        assert operation.calls["n"] == 4
        assert sleep_delays(no_sleep) == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_classified_error(self, no_sleep):
        original = RuntimeError("500 Internal Server Error")
        operation = scripted(RuntimeError("503"), RuntimeError("503"), original)
        config = RetryConfig(max_retries=2)

        with pytest.raises(ApiError) as exc_info:
            await execute_with_retry(operation, "x-api", config=config, endpoint="/tweets", user_id="u-1")

        error = exc_info.value
        assert error.type is ErrorType.SERVER_ERROR
        assert error.endpoint == "/tweets"
        assert error.user_id == "u-1"
        assert error.__cause__ is original

    @pytest.mark.asyncio
    async def test_api_error_passes_through_unchanged(self, no_sleep):
        raised = create_error(ErrorType.INVALID_RESPONSE, "bad payload", "other")
        operation = scripted(raised)
        with pytest.raises(ApiError) as exc_info:
            await execute_with_retry(operation, "x-api")
        assert exc_info.value is raised

    @pytest.mark.asyncio
    async def test_on_error_receives_every_failure(self, no_sleep):
        seen = []
        operation = scripted(RuntimeError("timeout"), RuntimeError("timeout"), "ok")
        await execute_with_retry(operation, "x-api", on_error=seen.append)
        assert [e.type for e in seen] == [ErrorType.TIMEOUT, ErrorType.TIMEOUT]


class TestRetryConfigFromSettings:
    def test_maps_settings(self):
        config = RetryConfig.from_settings(
            ResilienceConfig(max_retries=5, base_delay_seconds=0.5, retryable_errors=["timeout", "rate_limit"])
        )
        assert config.max_retries == 5
        assert config.base_delay == 0.5
        assert config.retryable_errors == {ErrorType.TIMEOUT, ErrorType.RATE_LIMIT}

    def test_default_settings_match_default_config(self):
        assert RetryConfig.from_settings(ResilienceConfig()) == RetryConfig()

    def test_unknown_error_type_rejected(self):
        with pytest.raises(ConfigurationError):
            RetryConfig.from_settings(ResilienceConfig(retryable_errors=["flaky"]))
