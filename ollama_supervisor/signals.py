"""
Coordinated shutdown on SIGINT/SIGTERM.

The first signal sets a shutdown event that the supervisor's wait loop
observes, and asks both owned processes to stop. Later signals are only
counted. The handler never blocks and never logs: writing to a stream from
a signal handler can collide with a write already in progress, so the
supervisor reports what happened once it sees the event.
"""

import signal
import threading
from typing import Optional

from .process import CompanionProcessManager, ProcessRole, ServerProcessManager

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownCoordinator:
    """Turns termination signals into a shutdown request."""

    def __init__(
        self,
        server: ServerProcessManager,
        companion: CompanionProcessManager,
    ):
        self._server = server
        self._companion = companion
        self._event = threading.Event()
        self._signum: Optional[int] = None
        self._previous: dict[int, object] = {}
        self.repeated_signals = 0
        self.terminated: list[ProcessRole] = []
        self.errors: list[tuple[ProcessRole, Exception]] = []

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    @property
    def signal_name(self) -> Optional[str]:
        if self._signum is None:
            return None
        return signal.Signals(self._signum).name

    def install(self):
        """Register the handlers. Must be called from the main thread."""
        for sig in HANDLED_SIGNALS:
            self._previous[sig] = signal.signal(sig, self._handle_signal)

    def uninstall(self):
        """Restore the handlers that were active before install()."""
        for sig, previous in self._previous.items():
            signal.signal(sig, previous)
        self._previous.clear()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def request_shutdown(self, signum: Optional[int] = None):
        """Stop the companion and the server, and wake the supervisor."""
        if self._event.is_set():
            self.repeated_signals += 1
            return

        self._signum = signum
        self._event.set()

        for manager in (self._companion, self._server):
            try:
                if manager.terminate():
                    self.terminated.append(manager.role)
            except Exception as e:
                self.errors.append((manager.role, e))

    def _handle_signal(self, signum, frame):
        self.request_shutdown(signum)
