"""Composable cancellation signals for asyncio.

A ``CancelController`` owns a ``CancelSignal``; calling ``abort()`` fires the
signal once, records the reason and notifies listeners.  Signals compose with
``combine_signals()`` (first source to fire wins, its reason is kept) and
``TimeoutSource`` turns a deadline into a signal that fires with an
``OllamaTimeoutError`` reason.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, TypeVar

from .errors import OllamaAbortError, OllamaError, OllamaTimeoutError

_logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[Any], None]


class CancelSignal:
    """Read side of a cancellation source.  Fires at most once."""

    def __init__(self) -> None:
        self._aborted = False
        self._reason: Any = None
        self._listeners: list[Listener] = []
        self._detachers: list[Callable[[], None]] = []
        self._event = asyncio.Event()

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> Any:
        return self._reason

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Call *listener(reason)* when the signal fires.

        Returns a function that removes the listener.  Listeners added after
        the signal fired are not called; check ``aborted`` first.
        """
        self._listeners.append(listener)

        def remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return remove

    def error(self) -> OllamaError:
        """The classified error this signal's reason represents."""
        if isinstance(self._reason, OllamaError):
            return self._reason
        if self._reason is None:
            return OllamaAbortError()
        return OllamaAbortError(str(self._reason))

    def detach(self) -> None:
        """Stop listening to the sources this signal was combined from.

        A no-op for plain signals.  Call it once the guarded operation is
        over so long-lived source signals do not accumulate listeners.
        """
        detachers, self._detachers = self._detachers, []
        for detach in detachers:
            detach()

    def raise_if_aborted(self) -> None:
        if self._aborted:
            raise self.error()

    async def wait(self) -> Any:
        """Suspend until the signal fires; return the reason."""
        await self._event.wait()
        return self._reason

    def _fire(self, reason: Any) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        self._event.set()
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener(reason)
            except Exception:
                _logger.exception("Cancel listener %r raised", listener)

    def __repr__(self) -> str:
        return f"CancelSignal(aborted={self._aborted}, reason={self._reason!r})"


class CancelController:
    """Write side: ``abort()`` fires the owned signal."""

    def __init__(self) -> None:
        self.signal = CancelSignal()

    def abort(self, reason: Any = None) -> None:
        self.signal._fire(reason if reason is not None else OllamaAbortError())


def combine_signals(*signals: CancelSignal | None) -> CancelSignal:
    """Return a signal that fires when any of *signals* fires.

    The first source to fire wins and its reason is propagated.  Once the
    combined signal fires it unsubscribes from the remaining sources; call
    ``detach()`` on it to unsubscribe when the operation ends without firing.
    """
    controller = CancelController()
    combined = controller.signal

    def on_source(reason: Any) -> None:
        combined.detach()
        controller.abort(reason)

    for source in signals:
        if source is None:
            continue
        if source.aborted:
            on_source(source.reason)
            break
        combined._detachers.append(source.add_listener(on_source))

    return controller.signal


class TimeoutSource:
    """Cancellation source that fires after *timeout_ms* milliseconds."""

    def __init__(self, timeout_ms: float) -> None:
        self.timeout_ms = timeout_ms
        self._controller = CancelController()
        loop = asyncio.get_running_loop()
        self._handle: asyncio.TimerHandle | None = loop.call_later(
            timeout_ms / 1000, self._expire,
        )

    @property
    def signal(self) -> CancelSignal:
        return self._controller.signal

    def _expire(self) -> None:
        self._handle = None
        self._controller.abort(
            OllamaTimeoutError(
                f"Request timed out after {self.timeout_ms:g} ms", self.timeout_ms,
            ),
        )

    def clear(self) -> None:
        """Stop the timer without firing."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


async def race(awaitable: Awaitable[T], signal: CancelSignal | None) -> T:
    """Await *awaitable*, abandoning it as soon as *signal* fires.

    Raises the signal's classified error when the signal wins.  The losing
    task is cancelled and awaited so no work is left running.
    """
    if signal is None:
        return await awaitable
    if signal.aborted:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise signal.error()

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter}, return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise

    if task in done:
        waiter.cancel()
        return task.result()

    task.cancel()
    try:
        await task
    except (asyncio.CancelledError, Exception) as e:
        _logger.debug("Abandoned operation finished with %r", e)
    raise signal.error()
