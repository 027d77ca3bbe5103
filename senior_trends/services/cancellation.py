from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from contextlib import suppress
from typing import TypeVar

T = TypeVar("T")


class ScanCancelledError(Exception):
    pass


class CancellationToken:
    """Cooperative cancellation signal shared by every stage of a scan.

    Loops poll `cancelled` at their boundaries; awaited network calls are raced
    against the token through `run()` so an in-flight request is aborted as soon
    as `cancel()` is called.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "user requested stop") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ScanCancelledError(self._reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay_seconds: float) -> bool:
        """Sleep unless cancelled first. Returns False when the sleep was interrupted."""
        if self._event.is_set():
            return False
        if delay_seconds <= 0:
            await asyncio.sleep(0)
            return not self._event.is_set()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay_seconds)
        except TimeoutError:
            return True
        return False

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, aborting it with ScanCancelledError if the token fires."""
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise ScanCancelledError(self._reason or "cancelled")
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            work.cancel()
            waiter.cancel()
            raise

        if work in done:
            waiter.cancel()
            return work.result()

        work.cancel()
        with suppress(asyncio.CancelledError, Exception):
            await work
        raise ScanCancelledError(self._reason or "cancelled")
