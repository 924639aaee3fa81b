"""Tests for the shutdown context."""

import signal
import threading

import pytest

from node_manager import signals
from node_manager.signals import Context, setup_signal_context


@pytest.fixture
def restore_signal_handlers():
    saved = {sig: signal.getsignal(sig) for sig in signals.SHUTDOWN_SIGNALS}
    signals._signal_context = None
    yield
    for sig, handler in saved.items():
        signal.signal(sig, handler)
    signals._signal_context = None


class TestContext:

    def test_starts_live(self):
        ctx = Context()
        assert ctx.cancelled is False
        assert ctx.wait(0) is False

    def test_cancel_is_one_way(self):
        ctx = Context()
        ctx.cancel()
        ctx.cancel()
        assert ctx.cancelled is True
        assert ctx.wait(0) is True

    def test_done_returns_after_cancel_from_another_thread(self):
        ctx = Context()
        timer = threading.Timer(0.05, ctx.cancel)
        timer.start()

        ctx.done()

        assert ctx.cancelled is True


class TestSetupSignalContext:

    def test_first_signal_cancels(self, restore_signal_handlers):
        exits = []
        ctx = setup_signal_context(force_exit=exits.append)

        signal.getsignal(signal.SIGTERM)(signal.SIGTERM, None)

        assert ctx.cancelled is True
        assert exits == []

    def test_second_signal_forces_exit(self, restore_signal_handlers):
        exits = []
        ctx = setup_signal_context(force_exit=exits.append)
        handler = signal.getsignal(signal.SIGINT)

        handler(signal.SIGINT, None)
        handler(signal.SIGINT, None)

        assert ctx.cancelled is True
        assert exits == [1]

    def test_only_one_context_per_process(self, restore_signal_handlers):
        setup_signal_context(force_exit=lambda code: None)

        with pytest.raises(RuntimeError):
            setup_signal_context(force_exit=lambda code: None)
