"""Best-effort concurrent joins."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Generic, Iterable, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Settled(Generic[T]):
    """Outcome of one awaitable: either a value or the exception it raised."""

    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def gather_settled(aws: Iterable[Awaitable[T]]) -> list[Settled[T]]:
    """Run awaitables concurrently and report every outcome in input order.

    Unlike a plain gather, one failure never cancels or hides the others.
    Cancellation of the caller still propagates.
    """
    results: list[Any] = await asyncio.gather(*aws, return_exceptions=True)
    settled: list[Settled[T]] = []
    for item in results:
        if isinstance(item, asyncio.CancelledError):
            raise item
        if isinstance(item, BaseException):
            settled.append(Settled(error=item))
        else:
            settled.append(Settled(value=item))
    return settled
