"""Shutdown context driven by OS termination signals."""

import logging
import os
import signal
import threading
from typing import Optional

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)

_signal_context = None
_setup_lock = threading.Lock()


class Context:
    """
    Cancellable token shared by every long-running component.

    Moves once from live to cancelled; it never goes back.
    """

    def __init__(self):
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait up to timeout seconds; return True if cancelled."""
        return self._cancelled.wait(timeout)

    def done(self) -> None:
        """Block until the context is cancelled."""
        while not self._cancelled.wait(1.0):
            pass


def setup_signal_context(force_exit=os._exit) -> Context:
    """
    Create the process shutdown context and install SIGINT/SIGTERM handlers.

    The first signal cancels the context. A second signal exits the process
    immediately with status 1. May only be called once per process.
    """
    global _signal_context

    with _setup_lock:
        if _signal_context is not None:
            raise RuntimeError("signal context already set up")
        ctx = Context()
        _signal_context = ctx

    def handler(signum, frame):
        if ctx.cancelled:
            logger.warning(f"Received signal {signum} again, forcing exit")
            force_exit(1)
            return
        logger.info(f"Received signal {signum}, shutting down")
        ctx.cancel()

    for sig in SHUTDOWN_SIGNALS:
        signal.signal(sig, handler)

    return ctx

