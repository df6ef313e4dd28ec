"""Bounded fixed-delay retry used for page visits and listing writes."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from ouncetracker.errors import ConfigurationFault
from ouncetracker.logging_config import get_logger

LOGGER = get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


def _before_sleep(label: str | None, max_attempts: int) -> Callable[[RetryCallState], None]:
    def _log(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        LOGGER.warning(
            "Attempt %s/%s failed%s: %s",
            state.attempt_number,
            max_attempts,
            f" | {label}" if label else "",
            exc,
        )

    return _log


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    delay_ms: int = 2000,
    *,
    sleep: SleepFn = asyncio.sleep,
    retry_on: type[BaseException] | tuple[type[BaseException], ...] = Exception,
    give_up_on: tuple[type[BaseException], ...] = (ConfigurationFault,),
    label: str | None = None,
) -> T:
    """Await ``fn()`` up to *max_attempts* times, sleeping *delay_ms* between tries.

    The last error is re-raised unchanged once attempts are exhausted.
    Errors matching *give_up_on* are raised on first occurrence.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(max(delay_ms, 0) / 1000),
        retry=retry_if_exception_type(retry_on) & retry_if_not_exception_type(give_up_on),
        before_sleep=_before_sleep(label, max_attempts),
        sleep=sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await fn()
    raise AssertionError("unreachable")  # pragma: no cover


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay_ms: int = 2000

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        label: str | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> T:
        return await retry_async(
            fn,
            self.max_attempts,
            self.delay_ms,
            sleep=sleep,
            label=label,
        )
