"""
Signal handling for the launch lifecycle.

Interrupts mean different things before and after containers exist:

- Setup (extraction, merging, writing files): StartupGate records the
  interrupt in a CancellationToken and nothing else. Right before the first
  container would start, the gate is checked; a recorded interrupt means
  "start nothing, remove the files just written".
- Running (foreground log tailing): listen_for_shutdown() installs a second
  token that the tail race watches; it triggers teardown.

Handlers only flip a flag. They never log, print, or take locks.
"""

import logging
import signal
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, Sequence

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CancellationToken:
    """
    A one-way flag safe to set from a signal handler.

    Setting and reading a plain attribute is atomic under the interpreter
    lock; no lock is taken, so a handler interrupting a reader cannot
    deadlock.
    """

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled})"


def _in_main_thread() -> bool:
    return threading.current_thread() is threading.main_thread()


def install_flag_handler(
    token: CancellationToken,
    signals: Sequence[int] = HANDLED_SIGNALS,
) -> Dict[int, object]:
    """
    Route signals to token.cancel().

    Returns:
        Previous handlers, for restore_handlers(). Empty when not called
        from the main thread (Python only delivers signals there).
    """
    if not _in_main_thread():
        logger.debug("Not in main thread; signal handlers not installed")
        return {}

    def _handler(signum, frame):
        token.cancel()

    previous = {}
    for sig in signals:
        previous[sig] = signal.signal(sig, _handler)
    return previous


def restore_handlers(previous: Dict[int, object]) -> None:
    """Reinstall handlers returned by install_flag_handler()."""
    if not _in_main_thread():
        return
    for sig, handler in previous.items():
        signal.signal(sig, handler if handler is not None else signal.SIG_DFL)


def ignore_signals(signals: Sequence[int] = HANDLED_SIGNALS) -> Dict[int, object]:
    """
    Ignore further interrupts (used while teardown runs).

    Returns:
        Previous handlers, for restore_handlers()
    """
    if not _in_main_thread():
        return {}
    previous = {}
    for sig in signals:
        previous[sig] = signal.signal(sig, signal.SIG_IGN)
    return previous


class StartupGate:
    """
    Absorbs interrupts that arrive before any container has started.

    Usage:
        with StartupGate() as gate:
            ... slow setup ...
            if not gate.proceed():
                ... remove files, start nothing ...
                return
            ... launch containers ...

    proceed() hands signal handling back to the previous disposition so a
    launch-phase handler can take over.
    """

    def __init__(
        self,
        token: Optional[CancellationToken] = None,
        signals: Sequence[int] = HANDLED_SIGNALS,
    ):
        self.token = token or CancellationToken()
        self.signals = tuple(signals)
        self._previous: Optional[Dict[int, object]] = None

    @property
    def interrupted(self) -> bool:
        return self.token.cancelled

    def install(self) -> "StartupGate":
        if self._previous is None:
            self._previous = install_flag_handler(self.token, self.signals)
        return self

    def release(self) -> None:
        """Restore the handlers that were active before install()."""
        if self._previous is not None:
            restore_handlers(self._previous)
            self._previous = None

    def proceed(self) -> bool:
        """
        Check the gate at the setup -> launch transition.

        Returns:
            False if an interrupt was recorded during setup (start nothing);
            True otherwise, after releasing the setup handlers
        """
        self.release()
        if self.token.cancelled:
            logger.info("Interrupt received during setup; no containers will be started")
            return False
        return True

    def __enter__(self) -> "StartupGate":
        return self.install()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


@contextmanager
def listen_for_shutdown(
    token: Optional[CancellationToken] = None,
    signals: Sequence[int] = HANDLED_SIGNALS,
) -> Iterator[CancellationToken]:
    """Install the running-phase handler for the duration of the block."""
    token = token or CancellationToken()
    previous = install_flag_handler(token, signals)
    try:
        yield token
    finally:
        restore_handlers(previous)
