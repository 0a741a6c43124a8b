# brokerlink/core/broker/bridge.py
"""
Helpers that turn event-driven broker primitives into awaitable operations.

- ``bounded``: every network call gets a deadline.
- ``OneShot``: a single-resolution future for "success or error" event pairs.
- ``settle``: run awaitables concurrently and collect each outcome
  independently, never raising.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Generic, Iterable, TypeVar

from brokerlink.core.errors import BrokerTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def bounded(aw: Awaitable[T], timeout: float | None, operation: str) -> T:
    """
    Await ``aw`` with a deadline.

    Args:
        aw: The awaitable to run.
        timeout: Seconds to wait, or None for no bound.
        operation: Human readable name used in the error message.

    Raises:
        BrokerTimeoutError: If the deadline expires. The awaitable is cancelled.
    """
    if timeout is None:
        return await aw
    try:
        return await asyncio.wait_for(aw, timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.error("%s timed out after %.1fs", operation, timeout)
        raise BrokerTimeoutError(
            f"{operation} timed out after {timeout:.1f}s"
        ) from exc


class OneShot(Generic[T]):
    """
    A future that settles exactly once.

    The first ``resolve`` or ``reject`` wins; later calls are ignored and
    reported as False. Waiters never leak: ``wait`` with a timeout raises
    ``BrokerTimeoutError`` without settling the future.
    """

    def __init__(self, operation: str = "operation") -> None:
        self._operation = operation
        self._future: asyncio.Future[T] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, value: T) -> bool:
        if self._future.done():
            return False
        self._future.set_result(value)
        return True

    def reject(self, exc: BaseException) -> bool:
        if self._future.done():
            return False
        self._future.set_exception(exc)
        return True

    def consume_exception(self) -> None:
        """Mark a rejection as retrieved when nobody is waiting for it."""
        if self._future.done() and not self._future.cancelled():
            self._future.exception()

    async def wait(self, timeout: float | None = None) -> T:
        return await bounded(asyncio.shield(self._future), timeout, self._operation)


@dataclass(frozen=True)
class Settled(Generic[T]):
    """Outcome of one awaitable run through ``settle``."""

    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def settle(aws: Iterable[Awaitable[T]]) -> list[Settled[T]]:
    """
    Run awaitables concurrently and collect every outcome in input order.

    Never raises for failures of individual awaitables.
    """
    results: list[Any] = await asyncio.gather(*aws, return_exceptions=True)
    out: list[Settled[T]] = []
    for result in results:
        if isinstance(result, BaseException):
            out.append(Settled(error=result))
        else:
            out.append(Settled(value=result))
    return out
