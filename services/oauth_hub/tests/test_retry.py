"""
Tests for the async retry helper.
"""

from unittest.mock import AsyncMock

import httpx
import pytest

from services.oauth_hub.exceptions import IntegrationNotFoundError, OAuthError, ServiceError
from services.oauth_hub.schemas.errors import ErrorKind
from services.oauth_hub.services.error_classifier import ErrorClassifier
from services.oauth_hub.utils.retry import (
    RetryError,
    compute_backoff_delay,
    is_transient_error,
    retry_async,
)

classifier = ErrorClassifier()


class TestIsTransientError:
    @pytest.mark.parametrize(
        "exception",
        [
            httpx.ConnectError("connection refused"),
            httpx.ReadTimeout("read timed out"),
            ServiceError("storage unavailable"),
            RuntimeError("503 Service Unavailable"),
            OAuthError(classifier.build(ErrorKind.RATE_LIMITED)),
        ],
    )
    def test_transient(self, exception):
        assert is_transient_error(exception)

    @pytest.mark.parametrize(
        "exception",
        [
            IntegrationNotFoundError("woocommerce"),
            ValueError("bad input"),
            OAuthError(classifier.build(ErrorKind.INVALID_GRANT)),
        ],
    )
    def test_not_transient(self, exception):
        assert not is_transient_error(exception)


class TestComputeBackoffDelay:
    def test_exponential_growth(self):
        assert [compute_backoff_delay(attempt) for attempt in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        assert compute_backoff_delay(10, base_delay=1.0, max_delay=30.0) == 30.0


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        func = AsyncMock(side_effect=[
            httpx.ConnectError("reset"), httpx.ConnectError("reset"), "ok"
        ])
        sleep = AsyncMock()
        result = await retry_async(func, max_attempts=3, jitter=False, sleep=sleep)
        assert result == "ok"
        assert func.await_count == 3
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_retry_error(self):
        error = httpx.ConnectTimeout("timed out")
        func = AsyncMock(side_effect=error)
        sleep = AsyncMock()
        with pytest.raises(RetryError) as exc_info:
            await retry_async(func, max_attempts=2, sleep=sleep)
        assert exc_info.value.attempts == 2
        assert exc_info.value.last_exception is error
        assert sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_non_transient_error_is_raised_immediately(self):
        func = AsyncMock(side_effect=ValueError("bad input"))
        sleep = AsyncMock()
        with pytest.raises(ValueError):
            await retry_async(func, sleep=sleep)
        assert func.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ignore_and_retry_exception_lists(self):
        sleep = AsyncMock()
        func = AsyncMock(side_effect=ServiceError("down"))
        with pytest.raises(ServiceError):
            await retry_async(func, ignore_exceptions=[ServiceError], sleep=sleep)
        assert func.await_count == 1

        func = AsyncMock(side_effect=[KeyError("missing"), "ok"])
        assert await retry_async(func, retry_exceptions=[KeyError], sleep=sleep) == "ok"

    @pytest.mark.asyncio
    async def test_jitter_keeps_delay_within_half_to_full(self):
        func = AsyncMock(side_effect=[httpx.ConnectError("reset"), "ok"])
        sleep = AsyncMock()
        await retry_async(func, base_delay=4.0, sleep=sleep)
        delay = sleep.await_args.args[0]
        assert 2.0 <= delay <= 4.0
