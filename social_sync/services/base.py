import logging
from typing import Any, Awaitable, Callable, Optional

from social_sync.config import Settings
from social_sync.schemas.result import Err, MutationResult, Ok, from_exception
from social_sync.utils.errors import VALIDATION, ServiceError
from social_sync.utils.network import NetworkExecutor


logger = logging.getLogger(__name__)


class BaseService:

    def __init__(self, executor: NetworkExecutor, settings: Settings) -> None:
        self._executor = executor
        self._settings = settings

    async def _execute(
        self,
        operation: Callable[[], Awaitable[Any]],
        *,
        description: str,
        timeout: Optional[float] = None,
        cache_key: Optional[str] = None,
        cache_ttl: Optional[float] = None,
        **retry_options: Any,
    ) -> MutationResult:
        async def call():
            return await self._executor.run(operation, timeout=timeout, **retry_options)

        try:
            if cache_key is not None:
                value = await self._executor.execute_with_cache(cache_key, call, cache_ttl or 0.0)
            else:
                value = await call()
        except ServiceError as exc:
            if exc.retryable:
                logger.error("Error %s: %s", description, exc.message)
            else:
                logger.info("%s: %s (%s)", description, exc.kind, exc.message)
            return from_exception(exc)
        return Ok(value=value)

    @staticmethod
    def _invalid(message: str) -> Err:
        return Err(kind=VALIDATION, message=message)
