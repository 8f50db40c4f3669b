"""Cooperative cancellation for the job work loop."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterable

SIGNAL_CHECK_INTERVAL_SECONDS = 0.05


class CancellationToken:
    """One-shot cancellation signal shared by the host and the work loop.

    The hosting layer (signal handler, test, caller thread) is the only
    writer; the work loop is the only reader. Cancelling twice is a no-op.

    A signal handler must not take locks, so it only records the signal
    with :meth:`notify_signal`. The token turns that into a cancellation
    the next time it is checked or waited on.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None
        self._pending_signal: int | None = None
        self._signal_listeners: list[Callable[[str], None]] = []

    def cancel(self, reason: str | None = None) -> bool:
        """Request cancellation. Returns True only for the first call."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    def notify_signal(self, signum: int) -> None:
        """Record a shutdown signal. Only assigns an attribute, so it is safe in a signal handler."""
        if self._pending_signal is None:
            self._pending_signal = signum

    def add_signal_listener(self, listener: Callable[[str], None]) -> None:
        """Call ``listener(signal_name)`` when a recorded signal cancels the token."""
        self._signal_listeners.append(listener)

    def remove_signal_listener(self, listener: Callable[[str], None]) -> None:
        if listener in self._signal_listeners:
            self._signal_listeners.remove(listener)

    def _apply_pending_signal(self) -> None:
        signum = self._pending_signal
        if signum is None or self._event.is_set():
            return
        name = signal.Signals(signum).name
        if self.cancel(reason=f"received {name}"):
            for listener in list(self._signal_listeners):
                listener(name)

    @property
    def is_cancelled(self) -> bool:
        self._apply_pending_signal()
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        self._apply_pending_signal()
        return self._reason

    def wait(self, timeout: float | None = None) -> bool:
        """Block for up to ``timeout`` seconds; returns True as soon as cancelled."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            self._apply_pending_signal()
            if self._event.is_set():
                return True
            interval = SIGNAL_CHECK_INTERVAL_SECONDS
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                interval = min(interval, remaining)
            if self._event.wait(interval):
                return True


def install_signal_handlers(
    token: CancellationToken,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
    signals: Iterable[signal.Signals] = (signal.SIGINT, signal.SIGTERM),
) -> Callable[[], None]:
    """Translate host shutdown signals into a cancelled ``token``.

    Must be called from the main thread. The shutdown message is logged by
    whoever next checks the token, never from inside the handler. Returns a
    function that restores the previous handlers.
    """
    log = logger or logging.getLogger(__name__)
    previous: dict[signal.Signals, object] = {}

    def _log_shutdown(name: str) -> None:
        log.info("Application is stopping (%s), initiating graceful shutdown...", name)

    def _handler(signum: int, _frame: object) -> None:
        token.notify_signal(signum)

    token.add_signal_listener(_log_shutdown)
    for sig in signals:
        previous[sig] = signal.signal(sig, _handler)

    def _restore() -> None:
        for sig, handler in previous.items():
            signal.signal(sig, handler if handler is not None else signal.SIG_DFL)
        token.remove_signal_listener(_log_shutdown)

    return _restore
