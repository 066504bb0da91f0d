"""SIGINT/SIGTERM wiring for cooperative cancellation of a run."""

import asyncio
import logging
import signal
from collections.abc import Callable

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def install_cancel_handlers(cancel_event: asyncio.Event) -> Callable[[], None]:
    """Set cancel_event when SIGTERM or SIGINT arrives.

    The first signal requests cancellation: no new listing or subscription
    starts, pending events are flushed. A second signal raises
    KeyboardInterrupt in the loop so the process stops immediately.

    On Unix, uses the event loop's add_signal_handler(). On Windows, falls
    back to signal.signal() since add_signal_handler() is not supported.

    Returns:
        Callable that restores default handling
    """
    loop = asyncio.get_running_loop()

    def _on_signal(signum: int) -> None:
        if cancel_event.is_set():
            logger.warning("Second signal received, aborting", extra={"stage": "shutdown"})
            raise KeyboardInterrupt
        logger.info(
            "Received signal %s, cancelling run",
            signal.Signals(signum).name,
            extra={"stage": "shutdown"},
        )
        cancel_event.set()

    try:
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, _on_signal, sig)
    except NotImplementedError:
        def _handler(signum, frame):
            loop.call_soon_threadsafe(_on_signal, signum)

        previous = {sig: signal.signal(sig, _handler) for sig in SHUTDOWN_SIGNALS}

        def _restore_signal() -> None:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        return _restore_signal

    def _restore_loop() -> None:
        for sig in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)

    return _restore_loop


__all__ = ["install_cancel_handlers", "SHUTDOWN_SIGNALS"]
