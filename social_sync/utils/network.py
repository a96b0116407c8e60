"""
Network execution layer: timeouts, retry with exponential backoff and a
short-TTL result cache shared by every service in the process.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from pymongo.errors import ConnectionFailure

from social_sync.config import Settings
from social_sync.utils.errors import RequestTimeout, ServiceError, classify_exception


logger = logging.getLogger(__name__)

_NETWORK_ERRORS = (ConnectionFailure, asyncio.TimeoutError, OSError)

Operation = Callable[[], Awaitable[Any]]


class QueryCache:

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._clock = clock

    def get(self, key: str, ttl: float) -> Tuple[bool, Any]:
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        value, stored_at = entry
        if self._clock() - stored_at < ttl:
            return True, value
        return False, None

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (value, self._clock())

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class NetworkExecutor:

    def __init__(self, settings: Settings, cache: Optional[QueryCache] = None) -> None:
        self._settings = settings
        self.cache = cache if cache is not None else QueryCache()

    async def execute_with_retry(
        self,
        operation: Operation,
        *,
        max_retries: Optional[int] = None,
        initial_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        factor: Optional[float] = None,
        on_retry: Optional[Callable[[int, float, ServiceError], None]] = None,
    ) -> Any:
        """Run ``operation`` until it succeeds or a non-retryable error occurs.

        Conflict, not-found and validation errors surface on the first attempt.
        Transient errors are retried with ``delay = min(delay * factor, max_delay)``
        for at most ``max_retries`` extra attempts. Cancellation is never retried.
        """
        s = self._settings
        max_retries = s.retry_max_retries if max_retries is None else max_retries
        delay = s.retry_initial_delay if initial_delay is None else initial_delay
        max_delay = s.retry_max_delay if max_delay is None else max_delay
        factor = s.retry_factor if factor is None else factor

        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as exc:
                error = classify_exception(exc)
                if not error.retryable:
                    _reraise(error, exc)
                if attempt >= max_retries:
                    logger.error("Failed after %d attempts: %s", attempt + 1, error.message)
                    _reraise(error, exc)
                attempt += 1
                logger.info("Attempt %d failed (%s). Retrying in %.2fs", attempt, error.message, delay)
                if on_retry is not None:
                    on_retry(attempt, delay, error)
                await asyncio.sleep(delay)
                delay = min(delay * factor, max_delay)

    async def with_timeout(self, awaitable: Awaitable[Any], timeout: Optional[float] = None, message: str = "Request timeout") -> Any:
        timeout = self._settings.request_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as exc:
            raise RequestTimeout(message) from exc

    async def run(self, operation: Operation, *, timeout: Optional[float] = None, **retry_options: Any) -> Any:
        # Each attempt gets its own timer
        async def attempt():
            return await self.with_timeout(operation(), timeout)

        return await self.execute_with_retry(attempt, **retry_options)

    async def execute_with_cache(self, key: str, operation: Operation, ttl: float) -> Any:
        hit, value = self.cache.get(key, ttl)
        if hit:
            logger.debug("Cache hit for key: %s", key)
            return value
        value = await operation()
        self.cache.set(key, value)
        return value

    def clear_cache(self, key: Optional[str] = None) -> None:
        if key:
            self.cache.delete(key)
        else:
            self.cache.clear()

    def clear_cache_many(self, keys: Iterable[str]) -> None:
        for key in keys:
            self.cache.delete(key)

    async def batch_requests(self, factories: List[Operation], batch_size: int = 5) -> List[Any]:
        results: List[Any] = []
        for start in range(0, len(factories), batch_size):
            batch = factories[start:start + batch_size]
            outcomes = await asyncio.gather(*(factory() for factory in batch), return_exceptions=True)
            for outcome in outcomes:
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                results.append(None if isinstance(outcome, BaseException) else outcome)
        return results


def _reraise(error: ServiceError, original: Exception) -> None:
    if error is original:
        raise error
    raise error from original


def is_network_error(exc: BaseException) -> bool:
    if isinstance(exc, ServiceError):
        return exc.retryable
    return isinstance(exc, _NETWORK_ERRORS)


def get_error_message(exc: BaseException) -> str:
    if is_network_error(exc):
        return "Network connection issue. Please check your internet connection and try again."
    return str(exc) or "An unexpected error occurred"
