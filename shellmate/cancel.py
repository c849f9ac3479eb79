"""Per-turn cancellation: a single-shot token bound to SIGINT."""

import logging
import signal
import threading

logger = logging.getLogger(__name__)


class CancelToken:
    """Single-shot cancellation flag shared by the turn executor and the tools."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> bool:
        """Signal cancellation. Returns True only for the call that fired it."""
        if self._event.is_set():
            return False
        self._event.set()
        return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; return the flag."""
        return self._event.wait(timeout)


class CancellationController:
    """Bind Ctrl-C to a fresh CancelToken for the duration of one turn.

    Usage::

        with CancellationController() as token:
            run_turn(..., cancel_token=token)

    The previous SIGINT handler is restored on every exit path, so an
    interrupt after the turn can never cancel a later one. Off the main
    thread signal handlers cannot be installed; the token still works when
    cancelled programmatically.
    """

    def __init__(self, on_interrupt=None):
        self._on_interrupt = on_interrupt
        self._previous = None
        self._installed = False
        self.token: CancelToken | None = None

    def _handle_sigint(self, signum, frame):
        if self.token is not None and self.token.cancel():
            logger.debug("SIGINT received, turn cancelled")
            if self._on_interrupt is not None:
                self._on_interrupt()

    def __enter__(self) -> CancelToken:
        self.token = CancelToken()
        if threading.current_thread() is threading.main_thread():
            self._previous = signal.signal(signal.SIGINT, self._handle_sigint)
            self._installed = True
        return self.token

    def __exit__(self, exc_type, exc, tb):
        if self._installed:
            # None means the old handler was not installed from Python
            previous = self._previous if self._previous is not None else signal.SIG_DFL
            signal.signal(signal.SIGINT, previous)
            self._installed = False
        self._previous = None
        self.token = None
        return False
