"""
Unit tests for the retry wrapper.

Tests retryable error detection, attempt counting and backoff delays.
"""

import logging

import pytest

from cinegen.core.retry import call_with_retry, is_retryable


class ProviderError(Exception):
    """Error shaped like an SDK status error."""

    def __init__(self, message="", status_code=None, code=None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class FlakyOperation:
    """Fails with the given errors in order, then returns ``result``."""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestIsRetryable:
    """Test classification of transient errors."""

    def test_status_codes(self):
        assert is_retryable(ProviderError(status_code=429))
        assert is_retryable(ProviderError(status_code=503))
        assert not is_retryable(ProviderError(status_code=400))
        assert not is_retryable(ProviderError(status_code=500))

    def test_symbolic_code_case_insensitive(self):
        assert is_retryable(ProviderError(code="UNAVAILABLE"))
        assert is_retryable(ProviderError(code="Overloaded"))
        assert not is_retryable(ProviderError(code="invalid_request"))

    def test_message_substring(self):
        assert is_retryable(Exception("The model is OVERLOADED right now"))
        assert is_retryable(Exception("Service Unavailable"))
        assert not is_retryable(Exception("invalid api key"))

    def test_digits_in_message_are_not_status_codes(self):
        assert not is_retryable(Exception("upstream returned 503"))
        assert not is_retryable(Exception("scene #429 has no description"))
        assert not is_retryable(Exception("image was 15036 bytes"))

    def test_numeric_string_code(self):
        assert is_retryable(ProviderError(code="503"))
        assert not is_retryable(ProviderError(code="500"))

    def test_nested_response_status(self):
        error = Exception("boom")
        error.response = type("Response", (), {"status_code": 429})()
        assert is_retryable(error)

    def test_boolean_code_is_not_a_status(self):
        assert not is_retryable(ProviderError(code=True))


class TestCallWithRetry:
    """Test retry wrapper behaviour."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, recording_sleep):
        operation = FlakyOperation([])
        result = await call_with_retry(operation, sleep=recording_sleep)

        assert result == "ok"
        assert operation.calls == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_four_retryable_failures_then_success(self, recording_sleep):
        operation = FlakyOperation([ProviderError("busy", status_code=503)] * 4, result=42)
        result = await call_with_retry(operation, attempts=5, sleep=recording_sleep)

        assert result == 42
        assert operation.calls == 5

    @pytest.mark.asyncio
    async def test_backoff_doubles_from_initial_delay(self, recording_sleep):
        operation = FlakyOperation([ProviderError(status_code=429)] * 3)
        await call_with_retry(operation, attempts=5, initial_delay=3.0, sleep=recording_sleep)

        assert recording_sleep.delays == [3.0, 6.0, 12.0]

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_immediately(self, recording_sleep):
        error = ValueError("bad request")
        operation = FlakyOperation([error])

        with pytest.raises(ValueError) as excinfo:
            await call_with_retry(operation, sleep=recording_sleep)

        assert excinfo.value is error
        assert operation.calls == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_exhausted_budget_raises_last_error_unchanged(self, recording_sleep):
        errors = [ProviderError(f"overloaded {i}", status_code=503) for i in range(5)]
        operation = FlakyOperation(errors)

        with pytest.raises(ProviderError) as excinfo:
            await call_with_retry(operation, attempts=5, sleep=recording_sleep)

        assert str(excinfo.value) == "overloaded 4"
        assert operation.calls == 5
        assert len(recording_sleep.delays) == 4

    @pytest.mark.asyncio
    async def test_logs_each_retry(self, recording_sleep, caplog):
        operation = FlakyOperation([ProviderError(status_code=503)] * 2)
        with caplog.at_level(logging.WARNING, logger="cinegen.core.retry"):
            await call_with_retry(operation, attempts=5, initial_delay=1.0, sleep=recording_sleep)

        messages = [record.getMessage() for record in caplog.records]
        assert len(messages) == 2
        assert "4 attempts left" in messages[0]
        assert "Retrying in 2.0s" in messages[1]

    @pytest.mark.asyncio
    async def test_invalid_attempts(self):
        with pytest.raises(ValueError, match="attempts must be >= 1"):
            await call_with_retry(FlakyOperation([]), attempts=0)
