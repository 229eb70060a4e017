"""SIGINT/SIGTERM handling for runs that supervise child processes."""

import asyncio
import logging
import signal
from typing import Callable, Iterable

logger = logging.getLogger(__name__)

WATCHED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class SignalManager:
    """Turns an interrupting signal into a shutdown event and runs teardown callbacks.

    Callbacks run inside the signal handler, most recently registered first, so
    they must be synchronous and must not block. Async code waits on
    `shutdown_event` instead. Use as a context manager to install the handlers
    for the duration of a run and restore the previous ones afterwards.
    """

    def __init__(self, signals: Iterable[int] = WATCHED_SIGNALS):
        self._signals = tuple(signals)
        self._shutdown_event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self._previous: dict[int, object] = {}
        self.received_signal: int | None = None

    def add_shutdown_handler(self, callback: Callable[[], None]) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def remove_shutdown_handler(self, callback: Callable[[], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    @property
    def installed(self) -> bool:
        return bool(self._previous)

    def install(self) -> None:
        if self.installed:
            logger.debug("Signal handlers already installed")
            return
        for signum in self._signals:
            self._previous[signum] = signal.signal(signum, self._handle)
        names = ", ".join(signal.Signals(s).name for s in self._signals)
        logger.debug(f"Watching signals: {names}")

    def restore(self) -> None:
        """Put back the handlers that were active before `install`."""
        for signum, previous in self._previous.items():
            try:
                signal.signal(signum, previous)
            except (OSError, ValueError) as e:
                logger.error(f"Cannot restore handler for signal {signum}: {e}")
        self._previous.clear()
        self._callbacks.clear()

    def _handle(self, signum, frame) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        self.received_signal = signum
        self._shutdown_event.set()

        for callback in reversed(list(self._callbacks)):
            try:
                callback()
            except Exception as e:
                logger.error(f"Error in shutdown handler: {e}")

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    def is_shutdown_requested(self) -> bool:
        return self._shutdown_event.is_set()

    def exit_status(self) -> int | None:
        """Shell-style exit status for the received signal, e.g. 130 for SIGINT."""
        if self.received_signal is None:
            return None
        return 128 + self.received_signal

    def __enter__(self) -> "SignalManager":
        self.install()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.restore()
