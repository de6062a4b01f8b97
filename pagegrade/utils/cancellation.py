"""
pagegrade/utils/cancellation.py
Hierarchical cancellation token passed through every fetch of an analysis run.

A token is cancelled once, with a reason (an exception instance). Children
created with parent=... are cancelled together with their parent and inherit
its reason. guard() runs an awaitable and aborts it as soon as the token fires.
"""
import asyncio
from typing import Awaitable, List, Optional, TypeVar

from ..exceptions import AnalysisCancelledError

T = TypeVar("T")


class CancellationToken:
    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = asyncio.Event()
        self._children: List["CancellationToken"] = []
        self._parent = parent
        self.reason: Optional[BaseException] = None
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[BaseException] = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason if reason is not None else AnalysisCancelledError()
        self._event.set()
        for child in list(self._children):
            child.cancel(self.reason)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise self.reason

    async def wait(self) -> None:
        await self._event.wait()

    def detach(self) -> None:
        """Stop following the parent token."""
        if self._parent is not None and self in self._parent._children:
            self._parent._children.remove(self)
        self._parent = None

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, cancelling it and raising self.reason if the token fires first."""
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise self.reason
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task.done():
            waiter.cancel()
            return task.result()

        task.cancel()
        # drain before raising so the aborted request never reaches a cache
        await asyncio.gather(task, return_exceptions=True)
        raise self.reason


async def run_guarded(awaitable: Awaitable[T], token: Optional[CancellationToken]) -> T:
    if token is None:
        return await awaitable
    return await token.guard(awaitable)
